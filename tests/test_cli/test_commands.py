"""Tests for CLI command implementations."""

import json
from unittest.mock import MagicMock

import pytest

from lxcforge.cli.client import AgentError
from lxcforge.cli.commands import create_container, follow_progress, lifecycle_action


class FakeStream:
    """Async context manager yielding canned WebSocket frames."""

    def __init__(self, messages):
        self.frames = [json.dumps(m) for m in messages]

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame


SUCCESS_STREAM = [
    {"event": "snapshot", "data": {"percent": 5, "events": [
        {"type": "step", "step": "creating", "percent": 5, "message": "Creating LXC container..."},
    ]}},
    {"event": "progress", "data": {"type": "log", "message": "Running script: setup.sh (1/1)"}},
    {"event": "progress", "data": {"type": "complete", "step": "finalizing", "percent": 100, "message": "Container ready!"}},
    {"event": "done", "data": {"success": True, "error": None}},
]


class TestFollowProgress:
    """Tests for the progress stream consumer."""

    def test_success(self):
        client = MagicMock()
        client.stream_connect.return_value = FakeStream(SUCCESS_STREAM)

        assert follow_progress(client, "c1") is True
        client.stream_connect.assert_called_once_with("/api/v1/stream/progress", {"id": "c1"})

    def test_failure(self):
        client = MagicMock()
        client.stream_connect.return_value = FakeStream([
            {"event": "snapshot", "data": {"percent": 65, "events": []}},
            {"event": "progress", "data": {"type": "error", "message": 'Script "setup.sh" failed with exit code 7'}},
            {"event": "done", "data": {"success": False, "error": 'Script "setup.sh" failed with exit code 7'}},
        ])

        assert follow_progress(client, "c1") is False

    def test_stream_closed_early(self):
        client = MagicMock()
        client.stream_connect.return_value = FakeStream([{"event": "snapshot", "data": {"percent": 5, "events": []}}])

        assert follow_progress(client, "c1") is False


class TestCommands:
    """Tests for request-based commands."""

    def test_create_without_follow(self):
        client = MagicMock()
        client.request.return_value = {"container_id": "c1", "job_id": "1", "vmid": 105}
        request = {"config": {"hostname": "web01", "vmid": 105}}

        assert create_container(client, request, follow=False) is True
        client.request.assert_called_once_with("create", request)
        client.stream_connect.assert_not_called()

    def test_create_follows(self):
        client = MagicMock()
        client.request.return_value = {"container_id": "c1", "job_id": "1", "vmid": 105}
        client.stream_connect.return_value = FakeStream(SUCCESS_STREAM)

        assert create_container(client, {"config": {"hostname": "web01"}}) is True
        client.stream_connect.assert_called_once()

    def test_lifecycle_action(self):
        client = MagicMock()
        client.request.return_value = {"container_id": "c1", "vmid": 105, "method": "forced"}

        response = lifecycle_action(client, "shutdown", "c1")

        assert response["method"] == "forced"
        client.request.assert_called_once_with("shutdown", {"id": "c1"})

    def test_lifecycle_contention_message(self):
        client = MagicMock()
        client.request.side_effect = AgentError("Agent error: busy", 409)

        with pytest.raises(AgentError) as exc_info:
            lifecycle_action(client, "stop", "c1")

        assert exc_info.value.is_contention is True
        assert "try again shortly" in str(exc_info.value)

    def test_other_errors_pass_through(self):
        client = MagicMock()
        client.request.side_effect = AgentError("Agent error: Container is already stopped", 400)

        with pytest.raises(AgentError, match="already stopped"):
            lifecycle_action(client, "stop", "c1")
