"""Direct SSH sessions built on paramiko."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

import paramiko

from lxcforge.exceptions import RemoteConnectionError, RemoteExecError
from lxcforge.models.config import SSHConfig
from lxcforge.remote.base import ExecResult, LineCallback, RemoteSession, retry_with_backoff


logger = logging.getLogger(__name__)

_STREAM_DONE = object()
_READ_CHUNK = 32768


@dataclass
class SSHSettings:
    """Connection parameters for one SSH target."""
    host: str
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    key_filename: Optional[str] = None
    connect_timeout: float = 10.0
    keepalive_interval: int = 15

    @classmethod
    def from_config(cls, config: SSHConfig, host: str, password: Optional[str] = None) -> "SSHSettings":
        return cls(
            host=host,
            port=config.port,
            username=config.username,
            password=password if password is not None else config.password,
            key_filename=config.key_filename,
            connect_timeout=config.connect_timeout,
            keepalive_interval=config.keepalive_interval,
        )


class SSHSession(RemoteSession):
    """One paramiko client. Blocking calls run in worker threads."""

    def __init__(self, settings: SSHSettings):
        """Initialize SSH session."""
        self.settings = settings
        self._client: Optional[paramiko.SSHClient] = None

    @property
    def is_connected(self) -> bool:
        if not self._client:
            return False
        transport = self._client.get_transport()
        return bool(transport and transport.is_active())

    async def connect(self) -> None:
        """Open the connection."""
        s = self.settings
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            await asyncio.to_thread(
                client.connect,
                hostname=s.host,
                port=s.port,
                username=s.username,
                password=s.password,
                key_filename=s.key_filename,
                timeout=s.connect_timeout,
                banner_timeout=s.connect_timeout,
                auth_timeout=s.connect_timeout,
                look_for_keys=s.password is None and s.key_filename is None,
                allow_agent=False,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteConnectionError(f"SSH connection to {s.host}:{s.port} failed: {e}") from e

        transport = client.get_transport()
        if transport and s.keepalive_interval:
            transport.set_keepalive(s.keepalive_interval)
        self._client = client
        logger.debug(f"SSH connected to {s.username}@{s.host}:{s.port}")

    def _require_client(self) -> paramiko.SSHClient:
        if not self.is_connected:
            raise RemoteExecError("SSH session not connected")
        return self._client

    async def exec(self, command: str) -> ExecResult:
        """Run a command and collect stdout, stderr and the exit code."""
        return await asyncio.to_thread(self._exec_blocking, command)

    def _exec_blocking(self, command: str) -> ExecResult:
        chunks: Dict[bool, bytearray] = {False: bytearray(), True: bytearray()}

        def collect(is_stderr: bool, data: bytes):
            chunks[is_stderr].extend(data)

        exit_code = self._run_channel(command, collect)
        return ExecResult(
            stdout=chunks[False].decode(errors="replace"),
            stderr=chunks[True].decode(errors="replace"),
            exit_code=exit_code,
        )

    def _run_channel(self, command: str, sink: Callable[[bool, bytes], None]) -> int:
        """Run command on a fresh channel, draining stdout and stderr together."""
        transport = self._require_client().get_transport()
        channel = transport.open_session()
        try:
            channel.exec_command(command)
            while True:
                progressed = False
                if channel.recv_ready():
                    sink(False, channel.recv(_READ_CHUNK))
                    progressed = True
                if channel.recv_stderr_ready():
                    sink(True, channel.recv_stderr(_READ_CHUNK))
                    progressed = True
                if progressed:
                    continue
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                time.sleep(0.05)
            return channel.recv_exit_status()
        finally:
            channel.close()

    async def exec_streaming(self, command: str, on_line: LineCallback) -> int:
        """Run a command, calling on_line(line, is_stderr) as output arrives."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def emit(line: str, is_stderr: bool):
            loop.call_soon_threadsafe(queue.put_nowait, (line, is_stderr))

        task = asyncio.ensure_future(asyncio.to_thread(self._stream_blocking, command, emit))
        task.add_done_callback(lambda _: queue.put_nowait(_STREAM_DONE))

        while True:
            item = await queue.get()
            if item is _STREAM_DONE:
                break
            line, is_stderr = item
            if not line.strip():
                continue
            result = on_line(line, is_stderr)
            if inspect.isawaitable(result):
                await result

        return await task

    def _stream_blocking(self, command: str, emit: Callable[[str, bool], None]) -> int:
        pending: Dict[bool, bytes] = {False: b"", True: b""}

        def feed(is_stderr: bool, data: bytes):
            *lines, pending[is_stderr] = (pending[is_stderr] + data).split(b"\n")
            for raw in lines:
                emit(raw.decode(errors="replace").rstrip("\r"), is_stderr)

        exit_code = self._run_channel(command, feed)
        for is_stderr, rest in pending.items():
            if rest:
                emit(rest.decode(errors="replace").rstrip("\r"), is_stderr)
        return exit_code

    async def upload_file(self, content: Union[str, bytes], remote_path: str, mode: int = 0o644) -> None:
        """Write content over SFTP and apply mode."""
        data = content.encode() if isinstance(content, str) else content
        await asyncio.to_thread(self._upload_blocking, data, remote_path, mode)

    def _upload_blocking(self, data: bytes, remote_path: str, mode: int):
        sftp = self._require_client().open_sftp()
        try:
            with sftp.open(remote_path, "wb") as f:
                f.write(data)
            sftp.chmod(remote_path, mode)
        finally:
            sftp.close()

    async def close(self) -> None:
        """Close the connection."""
        if self._client:
            self._client.close()
            self._client = None


async def open_session(settings: SSHSettings) -> SSHSession:
    """Connect and verify a session with a trivial command."""
    session = SSHSession(settings)
    await session.connect()
    try:
        result = await session.exec("echo ok")
        if result.stdout.strip() != "ok":
            raise RemoteConnectionError(f"SSH session to {settings.host} failed verification")
    except Exception:
        await session.close()
        raise
    return session


async def connect_with_retry(
    settings: SSHSettings,
    max_attempts: int = 5,
    initial_delay: float = 2.0,
) -> SSHSession:
    """Open a verified session, backing off 2s, 4s, 8s... between attempts."""
    try:
        return await retry_with_backoff(
            lambda: open_session(settings),
            max_attempts=max_attempts,
            initial_delay=initial_delay,
            description=f"SSH connection to {settings.host}",
        )
    except Exception as e:
        raise RemoteConnectionError(f"SSH connection failed after {max_attempts} attempts: {e}") from e
