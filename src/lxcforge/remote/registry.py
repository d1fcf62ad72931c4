"""Selects how commands reach a container."""

import logging
from typing import Optional

from lxcforge.exceptions import RemoteConnectionError
from lxcforge.models.config import ForgeConfig
from lxcforge.remote.base import RemoteSession
from lxcforge.remote.pct import PctExecSession
from lxcforge.remote.ssh import SSHSettings, connect_with_retry


logger = logging.getLogger(__name__)


class SessionFactory:
    """Opens relayed or direct sessions according to execution.mode."""

    def __init__(self, config: ForgeConfig):
        """Initialize session factory."""
        self.mode = config.execution.mode
        self.ssh_config = config.ssh
        self.node_host = config.ssh.host or config.proxmox.host

    @property
    def is_relayed(self) -> bool:
        return self.mode == "relayed"

    def node_settings(self) -> SSHSettings:
        return SSHSettings.from_config(self.ssh_config, self.node_host)

    async def open(self, vmid: int, host: Optional[str] = None, password: Optional[str] = None) -> RemoteSession:
        """Open a session to container vmid.

        Relayed mode connects to the Proxmox node. Direct mode needs the
        container's own address and root password.
        """
        attempts = self.ssh_config.connect_attempts
        delay = self.ssh_config.connect_initial_delay
        if self.is_relayed:
            logger.debug(f"Opening relayed session for container {vmid} via {self.node_host}")
            return await PctExecSession.open(vmid, self.node_settings(), attempts, delay)

        if not host:
            raise RemoteConnectionError(f"No address known for container {vmid}, direct execution unavailable")
        logger.debug(f"Opening direct session to container {vmid} at {host}")
        settings = SSHSettings.from_config(self.ssh_config, host, password=password)
        return await connect_with_retry(settings, max_attempts=attempts, initial_delay=delay)
