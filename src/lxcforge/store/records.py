"""Container records and audit events kept in Redis."""

import logging
from typing import List, Optional

from lxcforge.models.container import ContainerEvent, ContainerLifecycle, ContainerRecord
from lxcforge.models.job import utcnow


logger = logging.getLogger(__name__)

RECORD_PREFIX = "record:container:"
RECORD_INDEX = "record:containers"
VMID_INDEX = "record:vmid-index"
MAX_EVENTS = 1000


class RecordStore:
    """Key-value record store keyed by container id."""

    def __init__(self, redis):
        """Initialize record store."""
        self.redis = redis

    @staticmethod
    def _key(container_id: str) -> str:
        return f"{RECORD_PREFIX}{container_id}"

    @staticmethod
    def _events_key(container_id: str) -> str:
        return f"{RECORD_PREFIX}{container_id}:events"

    async def save(self, record: ContainerRecord) -> ContainerRecord:
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(self._key(record.id), record.model_dump_json())
        pipe.sadd(RECORD_INDEX, record.id)
        pipe.hset(VMID_INDEX, str(record.vmid), record.id)
        await pipe.execute()
        return record

    async def get(self, container_id: str) -> Optional[ContainerRecord]:
        raw = await self.redis.get(self._key(container_id))
        if raw is None:
            return None
        return ContainerRecord.model_validate_json(raw)

    async def get_by_vmid(self, vmid: int) -> Optional[ContainerRecord]:
        container_id = await self.redis.hget(VMID_INDEX, str(vmid))
        if not container_id:
            return None
        return await self.get(container_id)

    async def list_records(self) -> List[ContainerRecord]:
        ids = sorted(await self.redis.smembers(RECORD_INDEX))
        records = []
        for container_id in ids:
            record = await self.get(container_id)
            if record:
                records.append(record)
        return records

    async def set_lifecycle(self, container_id: str, lifecycle: ContainerLifecycle) -> Optional[ContainerRecord]:
        """Update the lifecycle field. Returns None if the record is gone."""
        record = await self.get(container_id)
        if record is None:
            logger.warning(f"Cannot set lifecycle {lifecycle.value}: container {container_id} not found")
            return None
        updated = record.model_copy(update={"lifecycle": lifecycle, "updated_at": utcnow()})
        await self.redis.set(self._key(container_id), updated.model_dump_json())
        return updated

    async def delete(self, container_id: str) -> None:
        """Remove the record, its index entries and its audit events."""
        record = await self.get(container_id)
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(self._key(container_id))
        pipe.delete(self._events_key(container_id))
        pipe.srem(RECORD_INDEX, container_id)
        if record:
            pipe.hdel(VMID_INDEX, str(record.vmid))
        await pipe.execute()

    async def add_event(self, event: ContainerEvent) -> None:
        key = self._events_key(event.container_id)
        pipe = self.redis.pipeline(transaction=False)
        pipe.rpush(key, event.model_dump_json())
        pipe.ltrim(key, -MAX_EVENTS, -1)
        await pipe.execute()

    async def list_events(self, container_id: str, limit: int = 50) -> List[ContainerEvent]:
        raw = await self.redis.lrange(self._events_key(container_id), -limit, -1)
        return [ContainerEvent.model_validate_json(item) for item in raw]
