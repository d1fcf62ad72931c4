"""Sessions relayed through the Proxmox node with `pct exec` / `pct push`."""

import logging
import shlex
import time
from typing import Optional, Union

from lxcforge.exceptions import RemoteCommandError
from lxcforge.remote.base import (
    ExecResult, LineCallback, RemoteSession, is_reconnectable_error, with_reconnect,
)
from lxcforge.remote.ssh import SSHSession, SSHSettings, connect_with_retry, open_session
from lxcforge.utils.templates import shell_quote_single


logger = logging.getLogger(__name__)


class PctExecSession(RemoteSession):
    """Runs commands inside container `vmid` via an SSH session to its node."""

    def __init__(self, vmid: int, node_session: RemoteSession, settings: Optional[SSHSettings] = None):
        """Initialize relayed session around an already connected node session."""
        self.vmid = vmid
        self.settings = settings
        self._node = node_session

    @classmethod
    async def open(
        cls,
        vmid: int,
        settings: SSHSettings,
        max_attempts: int = 5,
        initial_delay: float = 2.0,
    ) -> "PctExecSession":
        """Connect to the node with retry and wrap the session."""
        node = await connect_with_retry(settings, max_attempts=max_attempts, initial_delay=initial_delay)
        return cls(vmid, node, settings)

    @property
    def node_session(self) -> RemoteSession:
        return self._node

    def wrap_command(self, command: str) -> str:
        """Build the node-side command line for a container command."""
        return f"pct exec {self.vmid} -- bash -c '{shell_quote_single(command)}'"

    async def reconnect(self) -> None:
        """Replace the node session with a fresh, verified one."""
        try:
            await self._node.close()
        except Exception as e:
            logger.debug(f"Ignoring error closing stale session for {self.vmid}: {e}")
        if self.settings is None:
            raise RemoteCommandError(f"Cannot reconnect session for container {self.vmid}", -1)
        self._node = await open_session(self.settings)
        logger.info(f"Reconnected relayed session for container {self.vmid}")

    async def _with_reconnect(self, operation):
        return await with_reconnect(operation, is_reconnectable_error, self.reconnect)

    async def exec(self, command: str) -> ExecResult:
        wrapped = self.wrap_command(command)
        return await self._with_reconnect(lambda: self._node.exec(wrapped))

    async def exec_streaming(self, command: str, on_line: LineCallback) -> int:
        wrapped = self.wrap_command(command)
        return await self._with_reconnect(lambda: self._node.exec_streaming(wrapped, on_line))

    async def upload_file(self, content: Union[str, bytes], remote_path: str, mode: int = 0o644) -> None:
        """Stage content on the node, then push it into the container."""

        async def push():
            tmp_path = f"/tmp/.pct-upload-{self.vmid}-{int(time.time() * 1000)}"
            await self._node.upload_file(content, tmp_path, 0o600)
            try:
                result = await self._node.exec(
                    f"pct push {self.vmid} {tmp_path} {shlex.quote(remote_path)} --perms 0{mode:o}"
                )
                if result.exit_code != 0:
                    detail = result.stderr.strip() or result.stdout.strip()
                    raise RemoteCommandError(
                        f"pct push failed for {remote_path} (exit code {result.exit_code}): {detail}",
                        result.exit_code,
                    )
            finally:
                try:
                    await self._node.exec(f"rm -f {tmp_path}")
                except Exception as e:
                    logger.debug(f"Failed to remove staging file {tmp_path}: {e}")

        await self._with_reconnect(push)

    async def close(self) -> None:
        await self._node.close()
