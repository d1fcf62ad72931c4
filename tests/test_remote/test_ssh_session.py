"""Tests for the paramiko-backed SSH session."""

from typing import List
from unittest.mock import MagicMock, Mock, patch

import paramiko
import pytest

from lxcforge.exceptions import RemoteConnectionError, RemoteExecError
from lxcforge.remote.ssh import SSHSession, SSHSettings, open_session


class FakeChannel:
    """Channel that hands out scripted stdout and stderr chunks."""

    def __init__(self, stdout: List[bytes], stderr: List[bytes] = None, exit_code: int = 0):
        self.stdout = list(stdout)
        self.stderr = list(stderr or [])
        self.exit_code = exit_code
        self.command = None
        self.closed = False

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self.stdout)

    def recv(self, size):
        return self.stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_stderr(self, size):
        return self.stderr.pop(0)

    def exit_status_ready(self):
        return True

    def recv_exit_status(self):
        return self.exit_code

    def close(self):
        self.closed = True


def _session(channel: FakeChannel = None) -> SSHSession:
    session = SSHSession(SSHSettings(host="10.0.0.5", password="pw"))
    transport = Mock()
    transport.is_active.return_value = True
    transport.open_session.return_value = channel
    client = Mock()
    client.get_transport.return_value = transport
    session._client = client
    return session


@pytest.mark.asyncio
async def test_exec_collects_both_streams():
    """Test stderr written before stdout is drained alongside it."""
    channel = FakeChannel(
        stdout=[b"hello ", b"world\n"],
        stderr=[b"warning: a\n" * 5000, b"warning: b\n"],
        exit_code=3,
    )
    session = _session(channel)

    result = await session.exec("do-things")

    assert channel.command == "do-things"
    assert result.stdout == "hello world\n"
    assert result.stderr.count("warning: a\n") == 5000
    assert result.stderr.endswith("warning: b\n")
    assert result.exit_code == 3
    assert channel.closed is True


@pytest.mark.asyncio
async def test_streaming_splits_lines_across_chunks():
    """Test partial lines are joined, CR stripped and the unterminated tail emitted."""
    channel = FakeChannel(stdout=[b"ab", b"c\nde", b"\r\n\nf"], stderr=[b"oops\n"], exit_code=0)
    session = _session(channel)
    lines = []

    async def on_line(line, is_stderr):
        lines.append((line, is_stderr))

    exit_code = await session.exec_streaming("bash /tmp/setup.sh", on_line)

    assert exit_code == 0
    assert [line for line, is_stderr in lines if not is_stderr] == ["abc", "de", "f"]
    assert [line for line, is_stderr in lines if is_stderr] == ["oops"]
    assert channel.closed is True


@pytest.mark.asyncio
async def test_streaming_returns_exit_code():
    session = _session(FakeChannel(stdout=[b"partial"], exit_code=7))
    lines = []

    exit_code = await session.exec_streaming("false", lambda line, is_stderr: lines.append(line))

    assert exit_code == 7
    assert lines == ["partial"]


@pytest.mark.asyncio
async def test_upload_writes_and_chmods():
    session = _session()
    sftp = Mock()
    remote_file = MagicMock()
    sftp.open.return_value = remote_file
    session._client.open_sftp.return_value = sftp

    await session.upload_file("#!/bin/bash\n", "/tmp/setup.sh", 0o755)

    sftp.open.assert_called_once_with("/tmp/setup.sh", "wb")
    remote_file.__enter__.return_value.write.assert_called_once_with(b"#!/bin/bash\n")
    sftp.chmod.assert_called_once_with("/tmp/setup.sh", 0o755)
    sftp.close.assert_called_once()


@pytest.mark.asyncio
async def test_exec_requires_connection():
    session = SSHSession(SSHSettings(host="10.0.0.5"))

    with pytest.raises(RemoteExecError, match="not connected"):
        await session.exec("true")


@pytest.mark.asyncio
async def test_connect_failure_is_wrapped():
    client = Mock()
    client.connect.side_effect = paramiko.AuthenticationException("bad password")

    with patch("lxcforge.remote.ssh.paramiko.SSHClient", return_value=client):
        session = SSHSession(SSHSettings(host="10.0.0.5", password="pw"))
        with pytest.raises(RemoteConnectionError, match="SSH connection to 10.0.0.5:22 failed"):
            await session.connect()

    client.close.assert_called_once()
    assert session.is_connected is False


@pytest.mark.asyncio
async def test_open_session_closes_on_failed_verification():
    client = Mock()
    client.get_transport.return_value.is_active.return_value = True
    client.get_transport.return_value.open_session.return_value = FakeChannel(stdout=[b"nope\n"])

    with patch("lxcforge.remote.ssh.paramiko.SSHClient", return_value=client):
        with pytest.raises(RemoteConnectionError, match="failed verification"):
            await open_session(SSHSettings(host="10.0.0.5", password="pw"))

    client.close.assert_called_once()
