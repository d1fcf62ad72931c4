"""Worker pool consuming the creation queue."""

import asyncio
import logging
from typing import Dict, List

from lxcforge.agent.pipeline import CreationPipeline
from lxcforge.agent.queue import JobQueue
from lxcforge.models.job import QueuedJob


logger = logging.getLogger(__name__)


class CreationWorker:
    """Fixed pool of slots, each running one job at a time."""

    def __init__(self, queue: JobQueue, pipeline: CreationPipeline, concurrency: int = 2, dequeue_timeout: float = 5.0):
        """Initialize creation worker."""
        self.queue = queue
        self.pipeline = pipeline
        self.concurrency = concurrency
        self.dequeue_timeout = dequeue_timeout
        self._stopping = asyncio.Event()
        self._slots: List[asyncio.Task] = []
        self.active_jobs: Dict[int, str] = {}

    async def start(self):
        """Re-queue stalled jobs and start the slots."""
        await self.queue.recover_stalled()
        self._stopping.clear()
        for index in range(self.concurrency):
            self._slots.append(asyncio.create_task(self._slot(index), name=f"creation-worker-{index}"))
        logger.info(f"Creation worker started with {self.concurrency} slots")

    async def stop(self):
        """Stop taking new jobs and wait for running ones to finish."""
        self._stopping.set()
        if self._slots:
            await asyncio.gather(*self._slots, return_exceptions=True)
        self._slots = []
        logger.info("Creation worker stopped")

    async def _slot(self, index: int):
        while not self._stopping.is_set():
            try:
                queued = await self.queue.dequeue(timeout=self.dequeue_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker slot {index} failed to dequeue: {e}")
                await asyncio.sleep(1)
                continue

            if queued is None:
                continue
            self.active_jobs[index] = queued.id
            try:
                await self.process(queued)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Job stays in the active list until the next start recovers it
                logger.error(f"Worker slot {index} failed to file job {queued.id}: {e}", exc_info=True)
            finally:
                self.active_jobs.pop(index, None)

    async def process(self, queued: QueuedJob) -> bool:
        """Run one job and file its outcome. Returns whether the container came up."""
        job = queued.data
        logger.info(f"Processing job {queued.id} for container {job.container_id}")
        try:
            result = await self.pipeline.run(job)
        except Exception as e:
            logger.error(f"Job {queued.id} failed unexpectedly: {e}", exc_info=True)
            await self.queue.fail(queued.id, str(e))
            return False

        if result.success:
            await self.queue.complete(queued.id, result)
            logger.info(
                f"Container created: hostname={job.config.hostname} vmid={result.vmid} node={job.node_name}"
            )
        else:
            await self.queue.fail(queued.id, result.error or "unknown error", result)
            logger.error(
                f"Container creation failed: hostname={job.config.hostname} vmid={result.vmid} error={result.error}"
            )
        return result.success
