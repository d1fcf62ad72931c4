"""Tests for container lifecycle actions."""

import pytest

from lxcforge.agent.discovery import ServiceDiscovery, get_cached_services, service_cache_key
from lxcforge.agent.lifecycle import LifecycleManager
from lxcforge.agent.progress import ProgressPublisher, log_buffer_key
from lxcforge.exceptions import LifecycleError, LockContentionError, ProxmoxApiError, TaskTimeoutError
from lxcforge.models.container import ContainerLifecycle, ContainerRecord, EventType
from lxcforge.models.progress import StepName
from lxcforge.remote.base import ExecResult
from lxcforge.store.lock import RedisLock, container_lock_key
from lxcforge.store.records import RecordStore
from lxcforge.store.vmid_cache import VmidCache
from lxcforge.utils.crypto import CredentialCipher


@pytest.fixture
def manager(fake_redis, mock_proxmox, relayed_sessions):
    records = RecordStore(fake_redis)
    return LifecycleManager(
        proxmox=mock_proxmox,
        records=records,
        lock=RedisLock(fake_redis),
        publisher=ProgressPublisher(fake_redis, records),
        vmid_cache=VmidCache(fake_redis),
        redis=fake_redis,
        sessions=relayed_sessions,
        discovery=ServiceDiscovery(CredentialCipher(None)),
    )


async def _save(manager, lifecycle=ContainerLifecycle.READY):
    await manager.records.save(ContainerRecord(
        id="c1", vmid=105, hostname="web01", node_id="n1", node_name="pve", lifecycle=lifecycle,
    ))


@pytest.mark.asyncio
class TestStartStop:
    """Test start, stop, shutdown and restart."""

    async def test_start(self, manager, mock_proxmox):
        await _save(manager)
        mock_proxmox.get_container_status.return_value = {"status": "stopped"}

        result = await manager.start("c1")

        assert result == {"container_id": "c1", "vmid": 105, "status": "running"}
        mock_proxmox.start_container.assert_awaited_once_with("pve", 105)
        events = await manager.records.list_events("c1")
        assert [e.type for e in events] == [EventType.STARTED]

    async def test_start_already_running(self, manager, mock_proxmox):
        await _save(manager)

        with pytest.raises(LifecycleError, match="already running"):
            await manager.start("c1")
        mock_proxmox.start_container.assert_not_awaited()

    async def test_unknown_container(self, manager):
        with pytest.raises(LifecycleError, match="not found"):
            await manager.stop("nope")

    async def test_lock_released_after_action(self, manager, fake_redis):
        await _save(manager)
        await manager.stop("c1")
        assert await fake_redis.get(container_lock_key("c1")) is None

    async def test_contention(self, manager, mock_proxmox):
        """Test a held lock rejects the action before touching the hypervisor."""
        await _save(manager)
        await manager.lock.acquire(container_lock_key("c1"))

        with pytest.raises(LockContentionError):
            await manager.stop("c1")
        mock_proxmox.get_container_status.assert_not_awaited()
        mock_proxmox.stop_container.assert_not_awaited()

    async def test_shutdown_graceful(self, manager, mock_proxmox):
        await _save(manager)

        result = await manager.shutdown("c1")

        assert result["method"] == "graceful"
        mock_proxmox.shutdown_container.assert_awaited_once_with("pve", 105, timeout=30)
        mock_proxmox.stop_container.assert_not_awaited()

    async def test_shutdown_falls_back_to_stop(self, manager, mock_proxmox):
        """Test a shutdown that does not finish is followed by a hard stop."""
        await _save(manager)
        mock_proxmox.wait_for_task.side_effect = [TaskTimeoutError("UPID:pve:shutdown", 45), {}]

        result = await manager.shutdown("c1")

        assert result["method"] == "forced"
        mock_proxmox.stop_container.assert_awaited_once_with("pve", 105)
        events = await manager.records.list_events("c1")
        assert events[-1].type == EventType.SHUTDOWN
        assert events[-1].metadata == {"method": "forced"}

    async def test_restart(self, manager, mock_proxmox):
        await _save(manager)

        result = await manager.restart("c1")

        assert result["status"] == "running"
        mock_proxmox.shutdown_container.assert_awaited_once()
        mock_proxmox.start_container.assert_awaited_once()

    async def test_restart_stopped(self, manager, mock_proxmox):
        await _save(manager)
        mock_proxmox.get_container_status.return_value = {"status": "stopped"}

        with pytest.raises(LifecycleError):
            await manager.restart("c1")


@pytest.mark.asyncio
class TestDelete:
    """Test delete and its local cleanup."""

    async def _seed_local_state(self, manager, fake_redis):
        await _save(manager)
        await fake_redis.set(service_cache_key("c1"), '{"services": []}')
        await manager.publisher.step("c1", StepName.CREATING, 5, "Creating LXC container...")
        await fake_redis.sadd("vmid-cache:n1", "105")

    def _assert_cleaned(self, fake_redis):
        assert fake_redis.strings.get("record:container:c1") is None
        assert fake_redis.strings.get(service_cache_key("c1")) is None
        assert log_buffer_key("c1") not in fake_redis.lists
        assert "vmid-cache:n1" not in fake_redis.sets
        assert "record:container:c1:events" not in fake_redis.lists

    async def test_delete_running(self, manager, mock_proxmox, fake_redis):
        await self._seed_local_state(manager, fake_redis)

        result = await manager.delete("c1")

        assert result == {"container_id": "c1", "vmid": 105, "deleted": True, "already_absent": False}
        mock_proxmox.stop_container.assert_awaited_once_with("pve", 105)
        mock_proxmox.delete_container.assert_awaited_once_with("pve", 105, purge=True)
        self._assert_cleaned(fake_redis)

    async def test_delete_stopped_skips_stop(self, manager, mock_proxmox, fake_redis):
        await self._seed_local_state(manager, fake_redis)
        mock_proxmox.get_container_status.return_value = {"status": "stopped"}

        await manager.delete("c1")

        mock_proxmox.stop_container.assert_not_awaited()
        mock_proxmox.delete_container.assert_awaited_once()

    async def test_delete_not_found_is_success(self, manager, mock_proxmox, fake_redis):
        """Test a container the hypervisor no longer knows is cleaned up locally."""
        await self._seed_local_state(manager, fake_redis)
        mock_proxmox.get_container_status.side_effect = ProxmoxApiError(
            500, "Configuration file 'nodes/pve/lxc/105.conf' does not exist"
        )

        result = await manager.delete("c1")

        assert result["already_absent"] is True
        mock_proxmox.delete_container.assert_not_awaited()
        self._assert_cleaned(fake_redis)

    async def test_delete_vanishes_during_delete(self, manager, mock_proxmox, fake_redis):
        await self._seed_local_state(manager, fake_redis)
        mock_proxmox.delete_container.side_effect = ProxmoxApiError(404, "Not Found")

        result = await manager.delete("c1")

        assert result["already_absent"] is True
        self._assert_cleaned(fake_redis)

    async def test_delete_failure_still_cleans_up(self, manager, mock_proxmox, fake_redis):
        await self._seed_local_state(manager, fake_redis)
        mock_proxmox.delete_container.side_effect = ProxmoxApiError(500, "storage is locked")

        with pytest.raises(ProxmoxApiError, match="storage is locked"):
            await manager.delete("c1")

        self._assert_cleaned(fake_redis)
        assert await fake_redis.get(container_lock_key("c1")) is None


@pytest.mark.asyncio
class TestStatus:
    """Test status queries and rediscovery."""

    async def test_status_from_hypervisor(self, manager, mock_proxmox):
        await _save(manager)
        mock_proxmox.get_container_status.return_value = {"status": "running", "uptime": 42}

        info = await manager.get_status("c1")

        assert info["status"] == "running"
        assert info["source"] == "hypervisor"
        assert info["uptime"] == 42
        assert info["lifecycle"] == "ready"

    async def test_status_falls_back_to_record(self, manager, mock_proxmox):
        await _save(manager, ContainerLifecycle.ERROR)
        mock_proxmox.get_container_status.side_effect = ProxmoxApiError(None, "connection refused")

        info = await manager.get_status("c1")

        assert info["status"] == "error"
        assert info["source"] == "record"

    async def test_list_containers(self, manager):
        await _save(manager)
        assert await manager.list_containers() == [{
            "container_id": "c1", "vmid": 105, "hostname": "web01", "node": "pve", "lifecycle": "ready",
        }]

    async def test_rediscover(self, manager, mock_proxmox, relayed_sessions, make_session, fake_redis):
        """Test rediscovery refreshes the cache using the address from net0."""
        await _save(manager)
        mock_proxmox.get_container_config.return_value = {"net0": "name=eth0,bridge=vmbr0,ip=10.0.0.9/24"}
        session = make_session({
            "ls /etc/infrahaus/credentials/": ExecResult("__EMPTY__", "", 0),
            "systemctl list-units": ExecResult("grafana-server.service\n", "", 0),
        })
        relayed_sessions.open.return_value = session

        result = await manager.rediscover("c1")

        assert result == {"container_id": "c1", "container_ip": "10.0.0.9", "services": ["grafana-server"]}
        assert session.closed is True
        cache = await get_cached_services(fake_redis, "c1")
        assert [s.name for s in cache.services] == ["grafana-server"]

    async def test_rediscover_requires_running(self, manager, mock_proxmox):
        await _save(manager)
        mock_proxmox.get_container_status.return_value = {"status": "stopped"}

        with pytest.raises(LifecycleError, match="must be running"):
            await manager.rediscover("c1")
