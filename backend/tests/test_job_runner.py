"""
Lecture Notes Backend — Job Runner Tests
==========================================

What we test:
    ✅ Submitted jobs run to completion in the background
    ✅ A job already running is not started twice
    ✅ resume_pending() picks up every non-terminal job
    ✅ A pipeline crash is logged and leaves the job for the next start
    ✅ shutdown() cancels tasks that outlive the grace period
"""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from lecturenotes.models.job import Job
from lecturenotes.services.job_runner import JobRunner
from lecturenotes.services.job_service import JobService
from lecturenotes.services.pipeline import JobPipeline, Stage


@pytest.fixture
def pipeline(transcriber, extractor, synthesizer, renderer, files, tracker, session_factory, clock):
    return JobPipeline(
        transcriber=transcriber,
        extractor=extractor,
        synthesizer=synthesizer,
        renderer=renderer,
        files=files,
        tracker=tracker,
        session_factory=session_factory,
        clock=clock,
        stage_timeout=5,
        retry_attempts=1,
    )


async def queue_job(session_factory, clock, files, account_id) -> uuid.UUID:
    service = JobService(files=files, clock=clock)
    async with session_factory() as db:
        job, _ = await service.submit_job(
            db, account_id=account_id, size_mb=10, title="Lecture", audio_ref="a.mp3"
        )
        await db.commit()
        return job.id


class TestJobRunner:
    @pytest.mark.asyncio
    async def test_submit_runs_job(self, pipeline, session_factory, clock, files, make_account):
        account = await make_account()
        job_id = await queue_job(session_factory, clock, files, account.id)
        runner = JobRunner(pipeline, session_factory=session_factory, max_concurrent=2)

        task = runner.submit(job_id)
        assert runner.active_jobs == 1
        assert await task == Stage.COMPLETED

        await asyncio.sleep(0)
        assert runner.active_jobs == 0

    @pytest.mark.asyncio
    async def test_duplicate_submit_reuses_task(self):
        gate = asyncio.Event()
        pipeline = MagicMock()

        async def slow_run(job_id):
            await gate.wait()
            return Stage.COMPLETED

        pipeline.run = AsyncMock(side_effect=slow_run)
        runner = JobRunner(pipeline, session_factory=MagicMock(), max_concurrent=1)
        job_id = uuid.uuid4()

        first = runner.submit(job_id)
        second = runner.submit(job_id)
        gate.set()
        await first

        assert first is second
        pipeline.run.assert_awaited_once_with(job_id)

    @pytest.mark.asyncio
    async def test_resume_pending(self, pipeline, session_factory, clock, files, make_account):
        account = await make_account(tier="student")
        pending = await queue_job(session_factory, clock, files, account.id)
        done = await queue_job(session_factory, clock, files, account.id)
        await pipeline.run(done)

        runner = JobRunner(pipeline, session_factory=session_factory)
        resumed = await runner.resume_pending()

        assert resumed == [pending]
        await asyncio.gather(*runner.tasks.values())
        async with session_factory() as db:
            assert (await db.get(Job, pending)).current_stage == "completed"

    @pytest.mark.asyncio
    async def test_pipeline_crash_is_contained(self):
        pipeline = MagicMock()
        pipeline.run = AsyncMock(side_effect=ConnectionError("database went away"))
        runner = JobRunner(pipeline, session_factory=MagicMock(), max_concurrent=1)

        assert await runner.submit(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_shutdown_cancels_stragglers(self):
        async def hang(job_id):
            await asyncio.sleep(3600)

        pipeline = MagicMock()
        pipeline.run = AsyncMock(side_effect=hang)
        runner = JobRunner(pipeline, session_factory=MagicMock(), max_concurrent=1)
        task = runner.submit(uuid.uuid4())
        await asyncio.sleep(0)

        await runner.shutdown(timeout=0.01)

        assert task.cancelled()
