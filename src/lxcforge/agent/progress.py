"""Progress publishing: live pub/sub channel plus a capped replay buffer."""

import logging
from typing import Iterable, List, Optional

from lxcforge.models.container import ContainerEvent, EventType
from lxcforge.models.progress import (
    ProgressEvent, ProgressEventType, ProgressSnapshot, STEP_ORDER, StepName,
)
from lxcforge.store.records import RecordStore


logger = logging.getLogger(__name__)

LOG_BUFFER_MAX = 500
LOG_BUFFER_TTL = 3600

# Audit event written for each non-log progress event
STEP_EVENT_TYPES = {
    StepName.CREATING.value: EventType.CREATED,
    StepName.STARTING.value: EventType.STARTED,
    StepName.DEPLOYING.value: EventType.SERVICE_READY,
    StepName.SYNCING.value: EventType.SCRIPT_COMPLETED,
    StepName.FINALIZING.value: EventType.SERVICE_READY,
}


def progress_channel(container_id: str) -> str:
    return f"container:{container_id}:progress"


def log_buffer_key(container_id: str) -> str:
    return f"container:{container_id}:logs"


def audit_type_for(event: ProgressEvent) -> Optional[EventType]:
    if event.type == ProgressEventType.COMPLETE.value:
        return EventType.CREATED
    if event.type == ProgressEventType.ERROR.value:
        return EventType.ERROR
    if event.type == ProgressEventType.STEP.value and event.step:
        return STEP_EVENT_TYPES.get(event.step)
    return None


class ProgressPublisher:
    """Writes each event to the live channel and the replay buffer independently."""

    def __init__(self, redis, records: Optional[RecordStore] = None):
        """Initialize progress publisher."""
        self.redis = redis
        self.records = records

    async def publish(self, container_id: str, event: ProgressEvent) -> None:
        """Publish an event. Sink failures are logged, never raised."""
        payload = event.model_dump_json(exclude_none=True)

        try:
            await self.redis.publish(progress_channel(container_id), payload)
        except Exception as e:
            logger.warning(f"Failed to publish progress for {container_id}: {e}")

        key = log_buffer_key(container_id)
        try:
            pipe = self.redis.pipeline(transaction=False)
            pipe.rpush(key, payload)
            pipe.ltrim(key, -LOG_BUFFER_MAX, -1)
            pipe.expire(key, LOG_BUFFER_TTL)
            await pipe.execute()
        except Exception as e:
            logger.warning(f"Failed to buffer progress for {container_id}: {e}")

        audit_type = audit_type_for(event)
        if audit_type and self.records:
            try:
                metadata = {k: v for k, v in (("step", event.step), ("percent", event.percent)) if v is not None}
                await self.records.add_event(ContainerEvent(
                    container_id=container_id,
                    type=audit_type,
                    message=event.message,
                    metadata=metadata or None,
                ))
            except Exception as e:
                logger.warning(f"Failed to record event for {container_id}: {e}")

    async def step(self, container_id: str, step: StepName, percent: int, message: str, **extra) -> None:
        await self.publish(container_id, ProgressEvent(
            type=ProgressEventType.STEP, step=step, percent=percent, message=message, **extra
        ))

    async def log(self, container_id: str, message: str, step: Optional[StepName] = None, **extra) -> None:
        await self.publish(container_id, ProgressEvent(
            type=ProgressEventType.LOG, step=step, message=message, **extra
        ))

    async def complete(self, container_id: str, message: str) -> None:
        await self.publish(container_id, ProgressEvent(
            type=ProgressEventType.COMPLETE, step=StepName.FINALIZING, percent=100, message=message
        ))

    async def error(self, container_id: str, message: str) -> None:
        await self.publish(container_id, ProgressEvent(type=ProgressEventType.ERROR, message=message))

    async def get_events(self, container_id: str) -> List[ProgressEvent]:
        """Replay buffer contents, oldest first. Unreadable entries are skipped."""
        raw = await self.redis.lrange(log_buffer_key(container_id), 0, -1)
        events = []
        for item in raw:
            try:
                events.append(ProgressEvent.model_validate_json(item))
            except ValueError as e:
                logger.debug(f"Skipping malformed progress entry for {container_id}: {e}")
        return events

    async def get_snapshot(self, container_id: str) -> ProgressSnapshot:
        return fold_snapshot(await self.get_events(container_id))

    async def clear(self, container_id: str) -> None:
        await self.redis.delete(log_buffer_key(container_id))


def fold_snapshot(events: Iterable[ProgressEvent]) -> ProgressSnapshot:
    """Fold buffered events into the state a late subscriber needs."""
    snap = ProgressSnapshot()
    seen = set()
    completed: List[str] = []

    for event in events:
        if event.type == ProgressEventType.STEP.value:
            if event.step:
                snap.step = event.step
                seen.add(event.step)
            if event.percent is not None:
                snap.percent = event.percent
            if event.script_names:
                snap.script_names = list(event.script_names)
            if event.script_total is not None:
                snap.script_total = event.script_total
            if event.script_name and event.step == StepName.SYNCING.value:
                if event.script_name not in completed:
                    completed.append(event.script_name)
                if snap.active_script == event.script_name:
                    snap.active_script = None
        elif event.type == ProgressEventType.LOG.value:
            if event.script_name:
                snap.active_script = event.script_name
            if event.script_total is not None:
                snap.script_total = event.script_total
        elif event.type == ProgressEventType.COMPLETE.value:
            snap.is_complete = True
            snap.percent = 100
            seen.update(STEP_ORDER)
            snap.active_script = None
        elif event.type == ProgressEventType.ERROR.value:
            snap.is_error = True
            snap.error_message = event.message

    snap.seen_steps = [s for s in STEP_ORDER if s in seen]
    snap.completed_scripts = completed
    if snap.script_total is None and snap.script_names:
        snap.script_total = len(snap.script_names)
    return snap
