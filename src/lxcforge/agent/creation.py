"""Validation and submission of container creation requests."""

import logging
import uuid
from typing import Any, Dict, TYPE_CHECKING

from pydantic import ValidationError as PydanticValidationError

from lxcforge.agent.discovery import clear_cached_services
from lxcforge.agent.progress import ProgressPublisher
from lxcforge.agent.queue import JobQueue
from lxcforge.exceptions import ValidationError
from lxcforge.models.container import ContainerLifecycle, ContainerRecord
from lxcforge.models.job import ContainerJob
from lxcforge.store.records import RecordStore
from lxcforge.store.vmid_cache import VmidCache

if TYPE_CHECKING:
    from lxcforge.agent.config import ConfigManager

logger = logging.getLogger(__name__)

# Records in these states may be left behind by a crashed or failed creation
STALE_LIFECYCLES = (ContainerLifecycle.ERROR, ContainerLifecycle.CREATING)


class CreationService:
    """Turns a request into a record plus a queued job. Rejects before any side effect."""

    def __init__(
        self,
        records: RecordStore,
        queue: JobQueue,
        vmid_cache: VmidCache,
        publisher: ProgressPublisher,
        config_manager: "ConfigManager",
        redis,
    ):
        """Initialize creation service."""
        self.records = records
        self.queue = queue
        self.vmid_cache = vmid_cache
        self.publisher = publisher
        self.config_manager = config_manager
        self.redis = redis

    def build_job(self, payload: Dict[str, Any]) -> ContainerJob:
        data = dict(payload)
        data["container_id"] = data.get("container_id") or str(uuid.uuid4())
        try:
            job = ContainerJob.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid creation request: {e}") from e

        if job.template_id and not self.config_manager.get_template(job.template_id):
            raise ValidationError(f"Template not found: {job.template_id}")
        return job

    async def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate, write the creating record and enqueue the job."""
        job = self.build_job(payload)
        vmid = job.config.vmid

        if await self.records.get(job.container_id):
            raise ValidationError(f"Container {job.container_id} already exists")

        existing = await self.records.get_by_vmid(vmid)
        if existing:
            if existing.lifecycle not in STALE_LIFECYCLES:
                raise ValidationError(f"VMID {vmid} is already in use by container {existing.id}")
            logger.warning(
                f"Discarding stale {existing.lifecycle.value} record {existing.id} holding VMID {vmid}"
            )
            await self._discard(existing)
        elif await self.vmid_cache.is_taken(job.node_id, vmid):
            raise ValidationError(f"VMID {vmid} is already in use on node {job.node_name}")

        await self.records.save(ContainerRecord(
            id=job.container_id,
            vmid=vmid,
            hostname=job.config.hostname,
            lifecycle=ContainerLifecycle.CREATING,
            node_id=job.node_id,
            node_name=job.node_name,
            template_id=job.template_id,
        ))
        job_id = await self.queue.enqueue(f"create-{job.config.hostname}", job)
        return {"container_id": job.container_id, "job_id": job_id, "vmid": vmid}

    async def _discard(self, record: ContainerRecord):
        await clear_cached_services(self.redis, record.id)
        await self.publisher.clear(record.id)
        await self.records.delete(record.id)
