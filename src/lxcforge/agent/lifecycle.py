"""Lifecycle actions on existing containers, serialized by a per-container lock."""

import logging
from typing import Any, Dict, List, Optional

from lxcforge.agent.discovery import ServiceDiscovery, clear_cached_services, get_cached_services
from lxcforge.agent.pipeline import resolve_container_ip
from lxcforge.agent.progress import ProgressPublisher
from lxcforge.exceptions import LifecycleError, ProxmoxApiError, TaskError
from lxcforge.models.config import TimeoutsConfig
from lxcforge.models.container import ContainerEvent, ContainerRecord, EventType
from lxcforge.proxmox.client import ProxmoxClient
from lxcforge.proxmox.utils import extract_ip_from_net0
from lxcforge.remote.registry import SessionFactory
from lxcforge.store.lock import RedisLock, container_lock_key
from lxcforge.store.records import RecordStore
from lxcforge.store.vmid_cache import VmidCache


logger = logging.getLogger(__name__)


class LifecycleManager:
    """start, stop, shutdown, restart and delete, at most one in flight per container."""

    def __init__(
        self,
        proxmox: ProxmoxClient,
        records: RecordStore,
        lock: RedisLock,
        publisher: ProgressPublisher,
        vmid_cache: VmidCache,
        redis,
        timeouts: Optional[TimeoutsConfig] = None,
        sessions: Optional[SessionFactory] = None,
        discovery: Optional[ServiceDiscovery] = None,
    ):
        """Initialize lifecycle manager."""
        self.proxmox = proxmox
        self.records = records
        self.lock = lock
        self.publisher = publisher
        self.vmid_cache = vmid_cache
        self.redis = redis
        self.timeouts = timeouts or TimeoutsConfig()
        self.sessions = sessions
        self.discovery = discovery

    def _hold(self, container_id: str):
        return self.lock.hold(container_lock_key(container_id), self.timeouts.lock_ttl)

    async def _require_record(self, container_id: str) -> ContainerRecord:
        record = await self.records.get(container_id)
        if record is None:
            raise LifecycleError(f"Container {container_id} not found")
        return record

    async def _live_status(self, record: ContainerRecord) -> str:
        status = await self.proxmox.get_container_status(record.node_name, record.vmid)
        return status.get("status", "unknown")

    async def _wait(self, record: ContainerRecord, upid: str, timeout: float):
        await self.proxmox.wait_for_task(
            record.node_name, upid, timeout=timeout, interval=self.timeouts.task_poll_interval
        )

    async def _audit(self, container_id: str, event_type: EventType, message: str, **metadata):
        try:
            await self.records.add_event(ContainerEvent(
                container_id=container_id, type=event_type, message=message, metadata=metadata or None,
            ))
        except Exception as e:
            logger.warning(f"Failed to record {event_type.value} event for {container_id}: {e}")

    @staticmethod
    def _result(record: ContainerRecord, **extra) -> Dict[str, Any]:
        return {"container_id": record.id, "vmid": record.vmid, **extra}

    async def start(self, container_id: str) -> Dict[str, Any]:
        async with self._hold(container_id):
            record = await self._require_record(container_id)
            if await self._live_status(record) == "running":
                raise LifecycleError("Container is already running")

            logger.info(f"Starting container {container_id} (vmid {record.vmid})")
            upid = await self.proxmox.start_container(record.node_name, record.vmid)
            await self._wait(record, upid, self.timeouts.task_timeout)
            await self._audit(container_id, EventType.STARTED, "Container started")
            return self._result(record, status="running")

    async def stop(self, container_id: str) -> Dict[str, Any]:
        async with self._hold(container_id):
            record = await self._require_record(container_id)
            if await self._live_status(record) == "stopped":
                raise LifecycleError("Container is already stopped")

            logger.info(f"Stopping container {container_id} (vmid {record.vmid})")
            upid = await self.proxmox.stop_container(record.node_name, record.vmid)
            await self._wait(record, upid, self.timeouts.task_timeout)
            await self._audit(container_id, EventType.STOPPED, "Container stopped")
            return self._result(record, status="stopped")

    async def _graceful_or_forced(self, record: ContainerRecord) -> str:
        """Shut down cleanly, falling back to a hard stop. Returns the method used."""
        try:
            upid = await self.proxmox.shutdown_container(
                record.node_name, record.vmid, timeout=self.timeouts.shutdown_timeout
            )
            await self._wait(record, upid, self.timeouts.shutdown_wait)
            return "graceful"
        except (ProxmoxApiError, TaskError) as e:
            logger.warning(f"Graceful shutdown of {record.vmid} failed ({e}), forcing stop")

        upid = await self.proxmox.stop_container(record.node_name, record.vmid)
        await self._wait(record, upid, self.timeouts.task_timeout)
        return "forced"

    async def shutdown(self, container_id: str) -> Dict[str, Any]:
        async with self._hold(container_id):
            record = await self._require_record(container_id)
            if await self._live_status(record) == "stopped":
                raise LifecycleError("Container is already stopped")

            logger.info(f"Shutting down container {container_id} (vmid {record.vmid})")
            method = await self._graceful_or_forced(record)
            await self._audit(container_id, EventType.SHUTDOWN, f"Container shut down ({method})", method=method)
            return self._result(record, status="stopped", method=method)

    async def restart(self, container_id: str) -> Dict[str, Any]:
        async with self._hold(container_id):
            record = await self._require_record(container_id)
            if await self._live_status(record) == "stopped":
                raise LifecycleError("Container is stopped, start it instead")

            logger.info(f"Restarting container {container_id} (vmid {record.vmid})")
            method = await self._graceful_or_forced(record)
            upid = await self.proxmox.start_container(record.node_name, record.vmid)
            await self._wait(record, upid, self.timeouts.task_timeout)
            await self._audit(container_id, EventType.RESTARTED, f"Container restarted ({method} stop)", method=method)
            return self._result(record, status="running", method=method)

    async def delete(self, container_id: str) -> Dict[str, Any]:
        """Remove the container from the hypervisor and every local trace of it.

        A container the hypervisor no longer knows counts as deleted.
        """
        async with self._hold(container_id):
            record = await self._require_record(container_id)

            try:
                status = await self._live_status(record)
            except ProxmoxApiError as e:
                if not e.not_found:
                    raise
                status = "missing"

            if status == "running":
                logger.info(f"Force-stopping container {container_id} before delete")
                try:
                    upid = await self.proxmox.stop_container(record.node_name, record.vmid)
                    await self._wait(record, upid, self.timeouts.task_timeout)
                except ProxmoxApiError as e:
                    if not e.not_found:
                        raise

            already_gone = status == "missing"
            try:
                if not already_gone:
                    upid = await self.proxmox.delete_container(record.node_name, record.vmid, purge=True)
                    await self._wait(record, upid, self.timeouts.delete_timeout)
            except ProxmoxApiError as e:
                if not e.not_found:
                    raise
                already_gone = True
            finally:
                await self._cleanup(record)

            if already_gone:
                logger.info(f"Container {container_id} was already absent on {record.node_name}")
            logger.info(f"Deleted container {container_id} (vmid {record.vmid})")
            return self._result(record, deleted=True, already_absent=already_gone)

    async def _cleanup(self, record: ContainerRecord):
        """Drop service cache, progress buffer, record, events and the node's VMID cache."""
        steps = (
            ("service cache", clear_cached_services(self.redis, record.id)),
            ("progress buffer", self.publisher.clear(record.id)),
            ("record", self.records.delete(record.id)),
            ("vmid cache", self.vmid_cache.invalidate(record.node_id)),
        )
        for name, step in steps:
            try:
                await step
            except Exception as e:
                logger.error(f"Failed to clean up {name} for {record.id}: {e}")

    async def get_status(self, container_id: str) -> Dict[str, Any]:
        """Record merged with live state. The hypervisor wins whenever it answers."""
        record = await self._require_record(container_id)
        info: Dict[str, Any] = {
            "container_id": record.id,
            "vmid": record.vmid,
            "hostname": record.hostname,
            "node": record.node_name,
            "lifecycle": record.lifecycle.value,
            "template_id": record.template_id,
            "created_at": record.created_at.isoformat(),
        }
        try:
            live = await self.proxmox.get_container_status(record.node_name, record.vmid)
            info.update({
                "status": live.get("status", "unknown"),
                "source": "hypervisor",
                "uptime": live.get("uptime"),
                "cpu": live.get("cpu"),
                "mem": live.get("mem"),
                "maxmem": live.get("maxmem"),
            })
        except ProxmoxApiError as e:
            logger.warning(f"Live status unavailable for {container_id}: {e}")
            info.update({"status": record.lifecycle.value, "source": "record"})

        cache = await get_cached_services(self.redis, container_id)
        info["container_ip"] = cache.container_ip if cache else None
        info["services"] = len(cache.services) if cache else 0
        return info

    async def list_containers(self) -> List[Dict[str, Any]]:
        return [
            {
                "container_id": r.id,
                "vmid": r.vmid,
                "hostname": r.hostname,
                "node": r.node_name,
                "lifecycle": r.lifecycle.value,
            }
            for r in await self.records.list_records()
        ]

    async def rediscover(self, container_id: str) -> Dict[str, Any]:
        """Refresh the service cache of a running container."""
        if not self.sessions or not self.discovery:
            raise LifecycleError("Service discovery is not configured")

        async with self._hold(container_id):
            record = await self._require_record(container_id)
            if await self._live_status(record) != "running":
                raise LifecycleError("Container must be running to discover services")

            previous = await get_cached_services(self.redis, container_id)
            container_ip = previous.container_ip if previous else None
            if not container_ip:
                config = await self.proxmox.get_container_config(record.node_name, record.vmid)
                container_ip = extract_ip_from_net0(config.get("net0"))

            session = await self.sessions.open(record.vmid, host=container_ip)
            try:
                if not container_ip:
                    container_ip = await resolve_container_ip(
                        "dhcp", session, self.proxmox, record.node_name, record.vmid
                    )
                cache = await self.discovery.discover_and_cache(self.redis, container_id, session, container_ip)
            finally:
                await session.close()

            logger.info(f"Rediscovered {len(cache.services)} services on {container_id}")
            return {
                "container_id": container_id,
                "container_ip": cache.container_ip,
                "services": [s.name for s in cache.services],
            }
