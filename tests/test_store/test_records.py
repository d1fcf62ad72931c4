"""Tests for container records and audit events."""

import pytest

from lxcforge.models.container import ContainerEvent, ContainerLifecycle, ContainerRecord, EventType
from lxcforge.store.records import MAX_EVENTS, RecordStore


def _record(container_id="c1", vmid=105, **kwargs):
    return ContainerRecord(id=container_id, vmid=vmid, hostname="web01", node_id="n1", node_name="pve", **kwargs)


@pytest.mark.asyncio
async def test_save_and_lookup(fake_redis):
    store = RecordStore(fake_redis)
    await store.save(_record())

    assert (await store.get("c1")).hostname == "web01"
    assert (await store.get_by_vmid(105)).id == "c1"
    assert await store.get("missing") is None
    assert await store.get_by_vmid(999) is None


@pytest.mark.asyncio
async def test_list_records(fake_redis):
    store = RecordStore(fake_redis)
    await store.save(_record("b", 101))
    await store.save(_record("a", 102))

    assert [r.id for r in await store.list_records()] == ["a", "b"]


@pytest.mark.asyncio
async def test_set_lifecycle(fake_redis):
    store = RecordStore(fake_redis)
    original = await store.save(_record())

    updated = await store.set_lifecycle("c1", ContainerLifecycle.READY)

    assert updated.lifecycle == ContainerLifecycle.READY
    assert updated.updated_at >= original.updated_at
    assert (await store.get("c1")).lifecycle == ContainerLifecycle.READY
    assert await store.set_lifecycle("missing", ContainerLifecycle.ERROR) is None


@pytest.mark.asyncio
async def test_delete_cascades(fake_redis):
    """Test delete removes the record, the vmid index entry and the events."""
    store = RecordStore(fake_redis)
    await store.save(_record())
    await store.add_event(ContainerEvent(container_id="c1", type=EventType.STARTED, message="Container started"))

    await store.delete("c1")

    assert await store.get("c1") is None
    assert await store.get_by_vmid(105) is None
    assert await store.list_events("c1") == []
    assert await store.list_records() == []


@pytest.mark.asyncio
async def test_events_are_capped(fake_redis):
    store = RecordStore(fake_redis)
    for i in range(MAX_EVENTS + 5):
        await store.add_event(ContainerEvent(container_id="c1", type=EventType.STARTED, message=f"e{i}"))

    assert await fake_redis.llen("record:container:c1:events") == MAX_EVENTS
    latest = await store.list_events("c1", limit=2)
    assert [e.message for e in latest] == [f"e{MAX_EVENTS + 3}", f"e{MAX_EVENTS + 4}"]
