"""
Lecture Notes Backend — Job Runner
====================================

What:  Runs pipeline jobs as background asyncio tasks inside the API process.
How:   `submit(job_id)` schedules `pipeline.run(job_id)` behind a semaphore
       of `max_concurrent_jobs`. At startup every non-terminal job is
       resubmitted, which is what makes an interrupted job resume. At
       shutdown running tasks are given a grace period, then cancelled;
       a cancelled task leaves its job non-terminal for the next start.
Who:   Created in the app lifespan (main.py); routes call `submit()`.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy import select

from lecturenotes.config import settings
from lecturenotes.database import async_session_factory
from lecturenotes.models.job import Job
from lecturenotes.services.pipeline import JobPipeline, Stage

logger = logging.getLogger(__name__)

TERMINAL_STAGES = (Stage.COMPLETED.value, Stage.FAILED.value)


class JobRunner:
    def __init__(
        self,
        pipeline: JobPipeline,
        session_factory=None,
        max_concurrent: Optional[int] = None,
    ):
        self.pipeline = pipeline
        self.session_factory = session_factory or async_session_factory
        self.semaphore = asyncio.Semaphore(max_concurrent or settings.max_concurrent_jobs)
        self.tasks: Dict[uuid.UUID, asyncio.Task] = {}

    @property
    def active_jobs(self) -> int:
        return len(self.tasks)

    def submit(self, job_id: uuid.UUID) -> asyncio.Task:
        """Schedule a job; a job already scheduled is not started twice."""
        existing = self.tasks.get(job_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._run(job_id), name=f"job-{job_id}")
        self.tasks[job_id] = task
        task.add_done_callback(lambda t: self._forget(job_id, t))
        return task

    def _forget(self, job_id: uuid.UUID, task: asyncio.Task) -> None:
        if self.tasks.get(job_id) is task:
            del self.tasks[job_id]

    async def _run(self, job_id: uuid.UUID) -> Optional[Stage]:
        async with self.semaphore:
            try:
                stage = await self.pipeline.run(job_id)
            except Exception as e:
                # Infrastructure failure (database down): the job stays
                # non-terminal and is picked up again by resume_pending().
                logger.error("Job %s aborted: %s", job_id, str(e), exc_info=True)
                return None
            logger.info("Job %s finished as %s", job_id, stage.value)
            return stage

    async def resume_pending(self) -> List[uuid.UUID]:
        """Resubmit every job that has not reached a terminal stage."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.id)
                .where(Job.current_stage.not_in(TERMINAL_STAGES))
                .order_by(Job.created_at)
            )
            job_ids = list(result.scalars().all())
        for job_id in job_ids:
            self.submit(job_id)
        if job_ids:
            logger.info("Resumed %d unfinished job(s)", len(job_ids))
        return job_ids

    async def shutdown(self, timeout: float = 10.0) -> None:
        tasks = list(self.tasks.values())
        if not tasks:
            return
        logger.info("Waiting up to %.0fs for %d running job(s)", timeout, len(tasks))
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d job(s) at shutdown; they resume on next start", len(pending))
