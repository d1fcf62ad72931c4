"""Polling of asynchronous Proxmox tasks (UPIDs)."""

import asyncio
import logging
import time
from typing import Any, Dict, TYPE_CHECKING

from lxcforge.exceptions import TaskFailedError, TaskTimeoutError

if TYPE_CHECKING:
    from lxcforge.proxmox.client import ProxmoxClient

logger = logging.getLogger(__name__)


def is_task_success(exit_status: str) -> bool:
    """OK, or a run that only produced warnings."""
    return exit_status == "OK" or exit_status.startswith("WARNINGS")


async def wait_for_task(
    client: "ProxmoxClient",
    node: str,
    upid: str,
    interval: float = 2.0,
    timeout: float = 300.0,
) -> Dict[str, Any]:
    """Poll a task until it stops.

    Returns the final task status when the exit status is OK. Raises
    TaskFailedError for any other exit status and TaskTimeoutError when the
    task is still running after `timeout` seconds.
    """
    deadline = time.monotonic() + timeout
    while True:
        status = await client.get_task_status(node, upid)
        if status.get("status") == "stopped":
            exit_status = status.get("exitstatus") or "unknown"
            if is_task_success(exit_status):
                if exit_status != "OK":
                    logger.warning(f"Task {upid} finished with {exit_status}")
                return status
            raise TaskFailedError(upid, exit_status)

        if time.monotonic() >= deadline:
            raise TaskTimeoutError(upid, timeout)
        await asyncio.sleep(interval)
