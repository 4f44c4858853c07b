"""Background execution of sync jobs as asyncio tasks."""

import asyncio
from typing import Optional

from receiptsync.config.settings import SyncConfig, settings
from receiptsync.services.sync_orchestrator import SyncOrchestrator
from receiptsync.services.sync_store import SyncStore
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)


class SyncWorker:
    """
    Sync job runner.

    Each job runs as one asyncio task keyed by job id. A semaphore bounds
    how many jobs talk to mail providers at once; queued jobs stay
    ``pending`` until a slot frees up.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        store: SyncStore,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.config = config or settings.sync
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_jobs)
        self._tasks: dict[str, asyncio.Task] = {}
        logger.info("Sync worker initialized", max_concurrent_jobs=self.config.max_concurrent_jobs)

    @property
    def running_jobs(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    def submit(self, job_id: str) -> asyncio.Task:
        """Schedule a pending job; returns immediately."""
        task = asyncio.create_task(self._run(job_id), name=f"sync-job:{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        logger.info("Sync job submitted", sync_job_id=job_id)
        return task

    async def _run(self, job_id: str) -> None:
        try:
            await self._semaphore.acquire()
        except asyncio.CancelledError:
            await self.orchestrator.fail_job(job_id, "Sync cancelled before it started")
            raise

        try:
            await self.orchestrator.run(job_id)
        finally:
            self._semaphore.release()

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """
        Wait for a job's task to finish.

        Returns:
            True when no task is running for the job (anymore)
        """
        task = self._tasks.get(job_id)
        if task is None:
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return task in done

    async def cancel(self, job_id: str) -> None:
        """Hard-cancel a job's task and wait for it to unwind."""
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.warning("Sync job task cancelled", sync_job_id=job_id)

    async def shutdown(self) -> None:
        """Cancel every running job; interrupted jobs end up ``failed``."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Sync worker stopped", interrupted=len(tasks))

    async def recover_interrupted_jobs(self) -> int:
        """
        Fail jobs left non-terminal by a previous process.

        Returns:
            Number of jobs marked failed
        """
        recovered = 0
        async for provider_id, job_id in self.store.iter_active_jobs():
            if job_id in self._tasks:
                continue
            job = await self.orchestrator.fail_job(job_id, "Sync interrupted by a service restart")
            if job is None:
                await self.store.release_active_job(provider_id, job_id)
            recovered += 1

        if recovered:
            logger.warning("Recovered interrupted sync jobs", count=recovered)
        return recovered
