"""Exception hierarchy shared by the agent, pipeline and clients."""

from typing import Optional


class LxcForgeError(Exception):
    """Base class for all lxcforge errors."""
    pass


class ValidationError(LxcForgeError):
    """Malformed input, rejected before any side effect."""
    pass


class LockContentionError(LxcForgeError):
    """Another lifecycle operation holds the container lock."""

    def __init__(self, key: str):
        self.key = key
        super().__init__("Another operation is in progress for this container. Try again shortly.")


class ProxmoxApiError(LxcForgeError):
    """Transport failure or non-2xx response from the Proxmox API."""

    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        prefix = f"Proxmox API error {status}" if status else "Proxmox API error"
        super().__init__(f"{prefix}: {message}")

    @property
    def not_found(self) -> bool:
        """Whether the error means the target does not exist."""
        if self.status == 404:
            return True
        return "does not exist" in self.message.lower()


class TaskError(LxcForgeError):
    """A hypervisor task did not complete successfully."""

    def __init__(self, upid: str, message: str):
        self.upid = upid
        super().__init__(message)


class TaskFailedError(TaskError):
    """Task stopped with a non-OK exit status."""

    def __init__(self, upid: str, exit_status: str):
        self.exit_status = exit_status
        super().__init__(upid, f"Task failed: {exit_status}")


class TaskTimeoutError(TaskError):
    """Task still running when the deadline passed."""

    def __init__(self, upid: str, timeout: float):
        self.timeout = timeout
        super().__init__(upid, f"Task timed out after {timeout:g}s: {upid}")


class RemoteExecError(LxcForgeError):
    """Remote command execution failed."""
    pass


class RemoteConnectionError(RemoteExecError):
    """Could not establish a remote session."""
    pass


class RemoteCommandError(RemoteExecError):
    """A remote helper command exited non-zero."""

    def __init__(self, message: str, exit_code: int):
        self.exit_code = exit_code
        super().__init__(message)


class ScriptFailedError(LxcForgeError):
    """A template script exited non-zero."""

    def __init__(self, script_name: str, exit_code: int):
        self.script_name = script_name
        self.exit_code = exit_code
        super().__init__(f'Script "{script_name}" failed with exit code {exit_code}')


class PipelineError(LxcForgeError):
    """Any other fatal condition inside the creation pipeline."""
    pass


class LifecycleError(LxcForgeError):
    """A lifecycle action was rejected or failed."""
    pass
