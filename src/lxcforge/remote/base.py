"""Remote session interface and the shared reconnect logic."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar, Union


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Called once per non-empty output line with (line, is_stderr)
LineCallback = Callable[[str, bool], Optional[Awaitable[None]]]

RECONNECTABLE_MARKERS = (
    "channel open failure",
    "channel open failed",
    "socket is closed",
    "not connected",
    "session not active",
    "connection reset",
    "broken pipe",
    "eof",
)


@dataclass
class ExecResult:
    """Result of a remote command."""
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteSession(ABC):
    """Command execution and file upload on a remote target."""

    @abstractmethod
    async def exec(self, command: str) -> ExecResult:
        """Run a command and collect its output."""
        pass

    @abstractmethod
    async def exec_streaming(self, command: str, on_line: LineCallback) -> int:
        """Run a command, passing each output line to on_line. Returns the exit code."""
        pass

    @abstractmethod
    async def upload_file(self, content: Union[str, bytes], remote_path: str, mode: int = 0o644) -> None:
        """Write content to remote_path with the given permission bits."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


def is_reconnectable_error(error: BaseException) -> bool:
    """Whether an error means the transport dropped and a fresh session may succeed."""
    if isinstance(error, EOFError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RECONNECTABLE_MARKERS)


async def with_reconnect(
    operation: Callable[[], Awaitable[T]],
    is_reconnectable: Callable[[BaseException], bool],
    reconnect: Callable[[], Awaitable[None]],
) -> T:
    """Run operation; on a reconnectable error reconnect once and retry exactly once."""
    try:
        return await operation()
    except Exception as e:
        if not is_reconnectable(e):
            raise
        logger.warning(f"Remote session dropped ({e}), reconnecting")
    await reconnect()
    return await operation()


async def retry_with_backoff(
    connect: Callable[[], Awaitable[T]],
    max_attempts: int = 5,
    initial_delay: float = 2.0,
    description: str = "connection",
) -> T:
    """Call connect until it succeeds, sleeping initial_delay * 2^(n-1) between attempts."""
    last_error: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await connect()
        except Exception as e:
            last_error = e
            if attempt == max_attempts:
                break
            delay = initial_delay * (2 ** (attempt - 1))
            logger.warning(
                f"{description} attempt {attempt}/{max_attempts} failed: {e}. Retrying in {delay:g}s"
            )
            await asyncio.sleep(delay)
    raise last_error
