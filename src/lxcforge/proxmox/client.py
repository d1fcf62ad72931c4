"""Thin async client for the Proxmox VE HTTP API."""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from lxcforge.exceptions import ProxmoxApiError
from lxcforge.models.config import ProxmoxConfig
from lxcforge.models.job import ContainerConfig
from lxcforge.proxmox.tasks import wait_for_task
from lxcforge.proxmox.utils import to_form_value


logger = logging.getLogger(__name__)


class ProxmoxClient:
    """API-token authenticated client. Mutating calls return a task UPID."""

    def __init__(self, config: ProxmoxConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize Proxmox client."""
        self.config = config
        self.base_url = f"https://{config.host}:{config.port}/api2/json"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"PVEAPIToken={config.token_id}={config.token_secret}"},
            verify=config.verify_ssl,
            timeout=config.request_timeout,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        form = {k: to_form_value(v) for k, v in data.items()} if data else None
        try:
            response = await self._client.request(method, path, data=form, params=params)
        except httpx.HTTPError as e:
            raise ProxmoxApiError(None, f"{method} {path} failed: {e}") from e

        if not response.is_success:
            raise ProxmoxApiError(response.status_code, self._error_message(response))

        try:
            return response.json().get("data")
        except ValueError as e:
            raise ProxmoxApiError(response.status_code, f"Invalid JSON from {path}: {e}") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        # Proxmox puts the reason in the status line and field errors in the body
        message = response.reason_phrase or ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            if body.get("message"):
                message = str(body["message"]).strip()
            if body.get("errors"):
                details = ", ".join(f"{k}: {v}" for k, v in body["errors"].items())
                message = f"{message} ({details})" if message else details
        return message or response.text or f"HTTP {response.status_code}"

    async def create_container(self, node: str, config: ContainerConfig) -> str:
        logger.debug(f"Creating container {config.vmid} on {node}")
        return await self._request("POST", f"/nodes/{node}/lxc", data=config.create_params())

    async def start_container(self, node: str, vmid: int) -> str:
        return await self._request("POST", f"/nodes/{node}/lxc/{vmid}/status/start")

    async def stop_container(self, node: str, vmid: int) -> str:
        return await self._request("POST", f"/nodes/{node}/lxc/{vmid}/status/stop")

    async def shutdown_container(self, node: str, vmid: int, timeout: int = 30) -> str:
        return await self._request(
            "POST", f"/nodes/{node}/lxc/{vmid}/status/shutdown", data={"timeout": timeout}
        )

    async def delete_container(self, node: str, vmid: int, purge: bool = True) -> str:
        params = {"purge": 1} if purge else None
        return await self._request("DELETE", f"/nodes/{node}/lxc/{vmid}", params=params)

    async def get_container_status(self, node: str, vmid: int) -> Dict[str, Any]:
        return await self._request("GET", f"/nodes/{node}/lxc/{vmid}/status/current") or {}

    async def get_container_config(self, node: str, vmid: int) -> Dict[str, Any]:
        return await self._request("GET", f"/nodes/{node}/lxc/{vmid}/config") or {}

    async def list_containers(self, node: str) -> List[Dict[str, Any]]:
        return await self._request("GET", f"/nodes/{node}/lxc") or []

    async def get_task_status(self, node: str, upid: str) -> Dict[str, Any]:
        return await self._request("GET", f"/nodes/{node}/tasks/{quote(upid, safe='')}/status") or {}

    async def wait_for_task(
        self, node: str, upid: str, timeout: float = 300.0, interval: float = 2.0
    ) -> Dict[str, Any]:
        return await wait_for_task(self, node, upid, interval=interval, timeout=timeout)
