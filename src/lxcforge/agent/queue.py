"""Redis list-backed job queue for container creation."""

import logging
from typing import Dict, List, Optional

from lxcforge.models.job import ContainerJob, JobResult, JobState, QueuedJob, utcnow


logger = logging.getLogger(__name__)

CONTAINER_CREATION_QUEUE = "container-creation"
KEEP_COMPLETED = 100
KEEP_FAILED = 500


class JobQueue:
    """FIFO queue: wait -> active -> completed | failed.

    Jobs are pushed on the left of the wait list and moved atomically from its
    right end to the active list, so a crashed worker leaves them in active
    where recover_stalled finds them.
    """

    def __init__(
        self,
        redis,
        name: str = CONTAINER_CREATION_QUEUE,
        keep_completed: int = KEEP_COMPLETED,
        keep_failed: int = KEEP_FAILED,
    ):
        """Initialize job queue."""
        self.redis = redis
        self.name = name
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        prefix = f"queue:{name}"
        self.wait_key = f"{prefix}:wait"
        self.active_key = f"{prefix}:active"
        self.completed_key = f"{prefix}:completed"
        self.failed_key = f"{prefix}:failed"
        self.id_key = f"{prefix}:id"
        self._job_prefix = f"{prefix}:job:"

    def _job_key(self, job_id: str) -> str:
        return f"{self._job_prefix}{job_id}"

    async def _save(self, job: QueuedJob):
        await self.redis.set(self._job_key(job.id), job.model_dump_json())

    async def get_job(self, job_id: str) -> Optional[QueuedJob]:
        raw = await self.redis.get(self._job_key(job_id))
        if raw is None:
            return None
        return QueuedJob.model_validate_json(raw)

    async def enqueue(self, name: str, job: ContainerJob) -> str:
        """Add a job and return its id."""
        job_id = str(await self.redis.incr(self.id_key))
        await self._save(QueuedJob(id=job_id, name=name, data=job))
        await self.redis.lpush(self.wait_key, job_id)
        logger.info(f"Enqueued job {job_id} ({name}) for container {job.container_id}")
        return job_id

    async def dequeue(self, timeout: float = 5.0) -> Optional[QueuedJob]:
        """Claim the oldest waiting job, blocking up to timeout seconds."""
        job_id = await self.redis.blmove(self.wait_key, self.active_key, timeout, "RIGHT", "LEFT")
        if job_id is None:
            return None

        job = await self.get_job(job_id)
        if job is None:
            logger.warning(f"Job {job_id} has no payload, dropping it")
            await self.redis.lrem(self.active_key, 0, job_id)
            return None

        job = job.model_copy(update={"state": JobState.ACTIVE, "started_at": utcnow()})
        await self._save(job)
        return job

    async def complete(self, job_id: str, result: JobResult) -> None:
        await self._finish(job_id, JobState.COMPLETED, self.completed_key, self.keep_completed, result=result)

    async def fail(self, job_id: str, error: str, result: Optional[JobResult] = None) -> None:
        await self._finish(job_id, JobState.FAILED, self.failed_key, self.keep_failed, result=result, error=error)

    async def _finish(
        self,
        job_id: str,
        state: JobState,
        history_key: str,
        keep: int,
        result: Optional[JobResult] = None,
        error: Optional[str] = None,
    ):
        job = await self.get_job(job_id)
        if job is not None:
            await self._save(job.model_copy(update={
                "state": state,
                "result": result,
                "error": error,
                "finished_at": utcnow(),
            }))

        await self.redis.lrem(self.active_key, 0, job_id)
        await self.redis.lpush(history_key, job_id)

        expired = await self.redis.lrange(history_key, keep, -1)
        if expired:
            await self.redis.delete(*[self._job_key(old) for old in expired])
            await self.redis.ltrim(history_key, 0, keep - 1)

    async def counts(self) -> Dict[str, int]:
        return {
            JobState.WAITING.value: await self.redis.llen(self.wait_key),
            JobState.ACTIVE.value: await self.redis.llen(self.active_key),
            JobState.COMPLETED.value: await self.redis.llen(self.completed_key),
            JobState.FAILED.value: await self.redis.llen(self.failed_key),
        }

    async def list_jobs(self, state: JobState, limit: int = 20) -> List[QueuedJob]:
        key = {
            JobState.WAITING: self.wait_key,
            JobState.ACTIVE: self.active_key,
            JobState.COMPLETED: self.completed_key,
            JobState.FAILED: self.failed_key,
        }[state]
        jobs = []
        for job_id in await self.redis.lrange(key, 0, limit - 1):
            job = await self.get_job(job_id)
            if job:
                jobs.append(job)
        return jobs

    async def recover_stalled(self) -> List[str]:
        """Put jobs left active by a dead worker back at the head of the wait list."""
        recovered = []
        while True:
            job_id = await self.redis.lmove(self.active_key, self.wait_key, "LEFT", "RIGHT")
            if job_id is None:
                break
            job = await self.get_job(job_id)
            if job:
                await self._save(job.model_copy(update={"state": JobState.WAITING, "started_at": None}))
            recovered.append(job_id)

        if recovered:
            logger.warning(f"Re-queued {len(recovered)} stalled jobs: {', '.join(recovered)}")
        return recovered
