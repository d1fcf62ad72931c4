"""Tests for relayed pct exec sessions."""

from unittest.mock import AsyncMock, patch

import pytest

from lxcforge.exceptions import RemoteCommandError
from lxcforge.remote.base import ExecResult
from lxcforge.remote.pct import PctExecSession
from lxcforge.remote.ssh import SSHSettings


def test_wrap_command_escapes_single_quotes(make_session):
    session = PctExecSession(105, make_session())

    wrapped = session.wrap_command("echo 'hello world'")

    assert wrapped == "pct exec 105 -- bash -c 'echo '\\''hello world'\\'''"


@pytest.mark.asyncio
async def test_exec_goes_through_node(make_session):
    node = make_session({"pct exec 105": ExecResult("ready\n", "", 0)})
    session = PctExecSession(105, node)

    result = await session.exec("test -d /etc/systemd/system && echo ready")

    assert result.stdout == "ready\n"
    assert node.commands == ["pct exec 105 -- bash -c 'test -d /etc/systemd/system && echo ready'"]


@pytest.mark.asyncio
async def test_upload_stages_and_pushes(make_session):
    """Test upload writes a staging file, pushes it and removes it."""
    node = make_session()
    session = PctExecSession(105, node)

    await session.upload_file("#!/bin/bash\necho hi\n", "/tmp/setup.sh", 0o755)

    staged_path, content, mode = node.uploads[0]
    assert staged_path.startswith("/tmp/.pct-upload-105-")
    assert content == "#!/bin/bash\necho hi\n"
    assert mode == 0o600
    assert node.commands[0] == f"pct push 105 {staged_path} /tmp/setup.sh --perms 0755"
    assert node.commands[1] == f"rm -f {staged_path}"


@pytest.mark.asyncio
async def test_upload_push_failure(make_session):
    """Test a failed push raises with the exit code and still cleans up."""
    node = make_session({"pct push": ExecResult("", "unable to open file", 2)})
    session = PctExecSession(105, node)

    with pytest.raises(RemoteCommandError) as exc_info:
        await session.upload_file("data", "/etc/app.conf")

    assert exc_info.value.exit_code == 2
    assert "pct push failed for /etc/app.conf (exit code 2)" in str(exc_info.value)
    assert "unable to open file" in str(exc_info.value)
    assert node.commands[-1].startswith("rm -f /tmp/.pct-upload-105-")


@pytest.mark.asyncio
async def test_exec_reconnects_once(make_session):
    """Test a dropped node session is replaced and the command retried."""
    calls = []

    def flaky(command):
        calls.append(command)
        if len(calls) == 1:
            raise EOFError()
        return ExecResult("ok", "", 0)

    stale = make_session(handler=flaky)
    fresh = make_session({"pct exec": ExecResult("after reconnect", "", 0)})
    session = PctExecSession(105, stale, SSHSettings(host="pve"))

    with patch("lxcforge.remote.pct.open_session", new=AsyncMock(return_value=fresh)) as mock_open:
        result = await session.exec("uptime")

    assert result.stdout == "after reconnect"
    mock_open.assert_awaited_once()
    assert stale.closed is True
    assert session.node_session is fresh


@pytest.mark.asyncio
async def test_exec_streaming_returns_exit_code(make_session):
    node = make_session({"pct exec": ExecResult("line one\n\nline two\n", "", 3)})
    session = PctExecSession(105, node)
    lines = []

    exit_code = await session.exec_streaming("run", lambda line, is_stderr: lines.append(line))

    assert exit_code == 3
    assert lines == ["line one", "line two"]
