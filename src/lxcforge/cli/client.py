"""HTTP/WebSocket client for communicating with the agent."""

import urllib.parse
from pathlib import Path
from typing import Any, AsyncContextManager, Dict, Optional

import httpx
import websockets


class AgentError(Exception):
    """Communication error or a rejected command."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)

    @property
    def is_contention(self) -> bool:
        return self.status == 409


class AgentClient:
    """Client for the agent over its Unix socket or TCP."""

    def __init__(self, socket_path: Optional[str] = None, host: Optional[str] = None, timeout: float = 180.0):
        """Initialize agent client."""
        self.socket_path = Path(socket_path) if socket_path else None
        self.host = host
        self.timeout = timeout

        if not self.socket_path and not self.host:
            self.socket_path = Path("./state/lxcforge-agent.sock")

        if self.host:
            self.base_url = f"http://{self.host}"
            self.ws_base_url = f"ws://{self.host}"
            self.transport = None
        else:
            self.base_url = "http://localhost"
            self.ws_base_url = "ws://localhost"
            self.transport = httpx.HTTPTransport(uds=str(self.socket_path))

    def request(self, command: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a command and return its data, raising AgentError on failure."""
        if self.socket_path and not self.socket_path.exists() and not self.host:
            raise AgentError(f"Agent socket not found at {self.socket_path}")

        payload = {"command": command, "args": args or {}}
        try:
            with httpx.Client(transport=self.transport, base_url=self.base_url, timeout=self.timeout) as client:
                response = client.post("/api/v1/command", json=payload)
        except httpx.RequestError as e:
            raise AgentError(f"Connection error: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise AgentError(f"HTTP error {response.status_code}: {response.text}", response.status_code)

        if not data.get("success"):
            raise AgentError(f"Agent error: {data.get('error')}", response.status_code)
        return data.get("data") or {}

    def stream_connect(self, endpoint: str, params: Dict[str, Any]) -> AsyncContextManager:
        """Connect to a WebSocket endpoint."""
        query = urllib.parse.urlencode(params)
        url = f"{self.ws_base_url}{endpoint}?{query}"

        if self.socket_path and not self.host:
            return websockets.unix_connect(str(self.socket_path), uri=url)
        return websockets.connect(url)
