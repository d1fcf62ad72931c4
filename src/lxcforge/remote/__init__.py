"""Remote command execution on containers."""

from lxcforge.remote.base import (
    ExecResult, RemoteSession, is_reconnectable_error, with_reconnect, retry_with_backoff,
)
from lxcforge.remote.ssh import SSHSession, SSHSettings, connect_with_retry, open_session
from lxcforge.remote.pct import PctExecSession
from lxcforge.remote.registry import SessionFactory

__all__ = [
    "ExecResult",
    "RemoteSession",
    "is_reconnectable_error",
    "with_reconnect",
    "retry_with_backoff",
    "SSHSession",
    "SSHSettings",
    "connect_with_retry",
    "open_session",
    "PctExecSession",
    "SessionFactory",
]
