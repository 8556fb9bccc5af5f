"""
Lecture Notes Backend — Job Pipeline Tests
============================================

What:  Drives real jobs through JobPipeline against a temp SQLite database,
       with in-memory collaborators from conftest.

What we test:
    ✅ Stage plans per input shape (audio, document, both)
    ✅ Document-only job never records a transcribing stage
    ✅ Retryable errors retried at the stage boundary; fatal errors not
    ✅ A stage that overruns its timeout is retried as unavailable
    ✅ Unexpected exceptions end as internal_error
    ✅ Resume skips succeeded stages and redoes an interrupted one
    ✅ Rendering resume only renders missing formats
    ✅ Cancellation while queued and between stages
    ✅ Losing the commit race fails the job and discards artifacts
    ✅ Output formats frozen at admission survive a downgrade
"""

import asyncio
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

from lecturenotes.exceptions import (
    AuthFailed,
    ConflictError,
    NotFoundError,
    RateLimited,
    ServiceUnavailable,
)
from lecturenotes.models.account import Account
from lecturenotes.models.job import Job, JobArtifact, JobStageEvent
from lecturenotes.models.usage import UsageCommit, UsagePeriod
from lecturenotes.services.job_service import JobService
from lecturenotes.services.pipeline import (
    JobPipeline,
    Stage,
    StageOutcome,
    can_transition,
    plan_stages,
)
from lecturenotes.services.quota_ledger import QuotaLedger
from lecturenotes.services.subscription_service import (
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionService,
)
from lecturenotes.services.plans import Tier

from conftest import FakeExtractor, FakeTranscriber


@pytest.fixture
def job_service(clock, files):
    return JobService(
        ledger=QuotaLedger(clock=clock),
        subscriptions=SubscriptionService(clock=clock),
        files=files,
        clock=clock,
    )


@pytest.fixture
def make_pipeline(transcriber, extractor, synthesizer, renderer, files, tracker, session_factory, clock):
    def _make(**overrides) -> JobPipeline:
        kwargs = dict(
            transcriber=transcriber,
            extractor=extractor,
            synthesizer=synthesizer,
            renderer=renderer,
            files=files,
            tracker=tracker,
            session_factory=session_factory,
            clock=clock,
            stage_timeout=5,
            retry_attempts=3,
            retry_min_wait=0,
            retry_max_wait=0,
        )
        kwargs.update(overrides)
        return JobPipeline(**kwargs)

    return _make


@pytest.fixture
def submit(job_service, session_factory):
    async def _submit(account_id, size_mb=30, audio_ref="lectures/week1.mp3", document_ref=None):
        async with session_factory() as db:
            job, _ = await job_service.submit_job(
                db,
                account_id=account_id,
                size_mb=size_mb,
                title="Thermodynamics I",
                audio_ref=audio_ref,
                document_ref=document_ref,
                subject="Physics",
            )
            await db.commit()
            return job.id

    return _submit


async def reload(session_factory, job_id) -> Job:
    async with session_factory() as db:
        return await db.get(Job, job_id)


def stages_of(job: Job):
    return [e.stage for e in job.stage_events]


class TestStagePlan:
    def test_audio_only(self):
        job = SimpleNamespace(id=1, audio_ref="a.mp3", document_ref=None)
        assert plan_stages(job) == [Stage.TRANSCRIBING, Stage.SYNTHESIZING, Stage.RENDERING]

    def test_audio_and_document(self):
        job = SimpleNamespace(id=1, audio_ref="a.mp3", document_ref="d.pdf")
        assert plan_stages(job) == [
            Stage.TRANSCRIBING,
            Stage.EXTRACTING_SUPPLEMENT,
            Stage.SYNTHESIZING,
            Stage.RENDERING,
        ]

    def test_document_only(self):
        job = SimpleNamespace(id=1, audio_ref=None, document_ref="d.pdf")
        assert plan_stages(job) == [
            Stage.EXTRACTING_SUPPLEMENT,
            Stage.SYNTHESIZING,
            Stage.RENDERING,
        ]

    def test_transition_table(self):
        assert can_transition(Stage.QUEUED, Stage.EXTRACTING_SUPPLEMENT)
        assert can_transition(Stage.TRANSCRIBING, Stage.SYNTHESIZING)
        assert not can_transition(Stage.QUEUED, Stage.RENDERING)
        assert not can_transition(Stage.COMPLETED, Stage.FAILED)
        assert Stage.FAILED.is_terminal and not Stage.RENDERING.is_terminal


class TestPipelineHappyPath:
    @pytest.mark.asyncio
    async def test_audio_job_completes_and_charges_usage(
        self, make_pipeline, submit, make_account, session_factory, files
    ):
        account = await make_account(tier="free")
        job_id = await submit(account.id, size_mb=30)

        assert await make_pipeline().run(job_id) == Stage.COMPLETED

        job = await reload(session_factory, job_id)
        assert stages_of(job) == ["queued", "transcribing", "synthesizing", "rendering", "completed"]
        assert all(e.outcome for e in job.stage_events)
        assert job.structured_notes["title"] == "Thermodynamics I"
        assert [a.format for a in job.artifacts] == ["pdf"]
        assert files.resolve_ref(job.artifacts[0].storage_ref).read_bytes() == b"pdf:Thermodynamics I"
        assert job.completed_at is not None
        assert job.grace_month == date(2025, 3, 1)
        async with session_factory() as db:
            assert await db.get(UsageCommit, job_id) is not None

    @pytest.mark.asyncio
    async def test_document_only_job_skips_transcription(
        self, make_pipeline, submit, make_account, session_factory, transcriber, synthesizer
    ):
        account = await make_account(tier="student")
        job_id = await submit(account.id, audio_ref=None, document_ref="slides/week1.pdf")

        assert await make_pipeline().run(job_id) == Stage.COMPLETED

        job = await reload(session_factory, job_id)
        assert "transcribing" not in stages_of(job)
        assert stages_of(job) == [
            "queued", "extracting_supplement", "synthesizing", "rendering", "completed",
        ]
        assert transcriber.calls == 0
        assert job.transcript is None
        # Extracted text is the primary source; no separate supplement
        primary, supplement, _, _ = synthesizer.calls[0]
        assert primary == "Slide 1: The first law. Slide 2: Entropy."
        assert supplement is None

    @pytest.mark.asyncio
    async def test_audio_with_supplement(
        self, make_pipeline, submit, make_account, session_factory, synthesizer
    ):
        account = await make_account(tier="student")
        job_id = await submit(account.id, document_ref="slides/week1.md")

        await make_pipeline().run(job_id)

        job = await reload(session_factory, job_id)
        assert [a.format for a in sorted(job.artifacts, key=lambda a: a.id)] == ["txt", "md", "pdf"]
        primary, supplement, title, subject = synthesizer.calls[0]
        assert primary.startswith("Today we cover")
        assert supplement.startswith("Slide 1")
        assert (title, subject) == ("Thermodynamics I", "Physics")


class TestPipelineErrors:
    @pytest.mark.asyncio
    async def test_retryable_error_is_retried(self, make_pipeline, submit, make_account, session_factory):
        account = await make_account(tier="free")
        job_id = await submit(account.id)
        transcriber = FakeTranscriber(errors=[ServiceUnavailable(message="503 from upstream")])

        assert await make_pipeline(transcriber=transcriber).run(job_id) == Stage.COMPLETED

        job = await reload(session_factory, job_id)
        event = next(e for e in job.stage_events if e.stage == "transcribing")
        assert event.attempts == 2
        assert transcriber.calls == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_pipeline, submit, make_account, session_factory, files):
        account = await make_account(tier="free")
        job_id = await submit(account.id)
        transcriber = FakeTranscriber(errors=[RateLimited(message="slow down")] * 3)

        assert await make_pipeline(transcriber=transcriber).run(job_id) == Stage.FAILED

        job = await reload(session_factory, job_id)
        assert job.failure_stage == "transcribing"
        assert job.failure_code == "rate_limited"
        assert transcriber.calls == 3
        assert job.stage_events[-1].stage == "failed"
        async with session_factory() as db:
            assert await db.get(UsageCommit, job_id) is None

    @pytest.mark.asyncio
    async def test_stage_timeout_is_retried_then_fails(
        self, make_pipeline, submit, make_account, session_factory
    ):
        class HangingTranscriber(FakeTranscriber):
            async def transcribe(self, audio_ref):
                self.calls += 1
                await asyncio.sleep(10)
                return self.text

        account = await make_account(tier="free")
        job_id = await submit(account.id)
        transcriber = HangingTranscriber()

        pipeline = make_pipeline(transcriber=transcriber, stage_timeout=0.05, retry_attempts=3)
        assert await pipeline.run(job_id) == Stage.FAILED

        job = await reload(session_factory, job_id)
        assert job.failure_stage == "transcribing"
        assert job.failure_code == "unavailable"
        assert "timed out" in job.failure_reason
        assert transcriber.calls == 3
        event = next(e for e in job.stage_events if e.stage == "transcribing")
        assert event.outcome == StageOutcome.FAILED.value
        assert event.attempts == 3

    @pytest.mark.asyncio
    async def test_stage_timeout_recovers_on_retry(
        self, make_pipeline, submit, make_account, session_factory
    ):
        class SlowOnceTranscriber(FakeTranscriber):
            async def transcribe(self, audio_ref):
                self.calls += 1
                if self.calls == 1:
                    await asyncio.sleep(10)
                return self.text

        account = await make_account(tier="free")
        job_id = await submit(account.id)
        transcriber = SlowOnceTranscriber()

        pipeline = make_pipeline(transcriber=transcriber, stage_timeout=0.05)
        assert await pipeline.run(job_id) == Stage.COMPLETED

        job = await reload(session_factory, job_id)
        event = next(e for e in job.stage_events if e.stage == "transcribing")
        assert event.attempts == 2

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self, make_pipeline, submit, make_account, session_factory, synthesizer):
        account = await make_account(tier="free")
        job_id = await submit(account.id)
        transcriber = FakeTranscriber(errors=[AuthFailed(message="bad key")])

        await make_pipeline(transcriber=transcriber).run(job_id)

        job = await reload(session_factory, job_id)
        assert job.failure_code == "auth_failed"
        assert transcriber.calls == 1
        assert synthesizer.calls == []
        failed_stage = next(e for e in job.stage_events if e.stage == "transcribing")
        assert failed_stage.outcome == StageOutcome.FAILED.value

    @pytest.mark.asyncio
    async def test_empty_transcript(self, make_pipeline, submit, make_account, session_factory):
        account = await make_account(tier="free")
        job_id = await submit(account.id)

        await make_pipeline(transcriber=FakeTranscriber(text="   ")).run(job_id)

        job = await reload(session_factory, job_id)
        assert job.failure_code == "empty_result"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_internal_error(
        self, make_pipeline, submit, make_account, session_factory
    ):
        account = await make_account(tier="free")
        job_id = await submit(account.id, audio_ref=None, document_ref="notes.pdf")
        extractor = FakeExtractor(errors=[RuntimeError("boom")])

        assert await make_pipeline(extractor=extractor).run(job_id) == Stage.FAILED

        job = await reload(session_factory, job_id)
        assert job.failure_code == "internal_error"
        assert job.failure_stage == "extracting_supplement"
        assert "RuntimeError" in job.failure_reason

    @pytest.mark.asyncio
    async def test_unknown_job(self, make_pipeline):
        with pytest.raises(NotFoundError):
            await make_pipeline().run(uuid.uuid4())


class TestPipelineResume:
    @pytest.mark.asyncio
    async def test_resume_skips_done_stages_and_redoes_interrupted(
        self, make_pipeline, submit, make_account, session_factory, transcriber, synthesizer, clock
    ):
        account = await make_account(tier="free")
        job_id = await submit(account.id)

        # Simulate a crash during synthesis
        async with session_factory() as db:
            async with db.begin():
                job = await db.get(Job, job_id)
                job.transcript = "Recovered transcript"
                job.current_stage = Stage.SYNTHESIZING.value
                job.stage_events.append(JobStageEvent(
                    sequence=2, stage="transcribing", outcome="succeeded", attempts=1,
                    started_at=clock(), finished_at=clock(),
                ))
                job.stage_events.append(JobStageEvent(
                    sequence=3, stage="synthesizing", outcome=None, attempts=0, started_at=clock(),
                ))

        assert await make_pipeline().run(job_id) == Stage.COMPLETED

        job = await reload(session_factory, job_id)
        assert transcriber.calls == 0
        assert synthesizer.calls[0][0] == "Recovered transcript"
        assert stages_of(job) == ["queued", "transcribing", "synthesizing", "rendering", "completed"]
        resumed = job.stage_events[2]
        assert resumed.outcome == "succeeded"
        assert resumed.detail == "resumed after interruption"

    @pytest.mark.asyncio
    async def test_rendering_resume_renders_only_missing_formats(
        self, make_pipeline, submit, make_account, session_factory, renderer, clock
    ):
        account = await make_account(tier="student")
        job_id = await submit(account.id)

        # Crash after the txt artifact was persisted
        async with session_factory() as db:
            async with db.begin():
                job = await db.get(Job, job_id)
                job.transcript = "t"
                job.structured_notes = {
                    "title": "Thermodynamics I",
                    "summary": "s",
                    "sections": [{"heading": "h", "cues": [], "notes": ["n"]}],
                }
                job.current_stage = Stage.RENDERING.value
                for seq, stage in ((2, "transcribing"), (3, "synthesizing")):
                    job.stage_events.append(JobStageEvent(
                        sequence=seq, stage=stage, outcome="succeeded", attempts=1,
                        started_at=clock(), finished_at=clock(),
                    ))
                job.stage_events.append(JobStageEvent(
                    sequence=4, stage="rendering", outcome=None, started_at=clock(),
                ))
                db.add(JobArtifact(
                    job_id=job_id, format="txt", storage_ref=f"artifacts/{job_id}/notes.txt", size_bytes=3,
                ))

        assert await make_pipeline().run(job_id) == Stage.COMPLETED
        assert renderer.rendered == ["md", "pdf"]

    @pytest.mark.asyncio
    async def test_terminal_job_is_not_rerun(self, make_pipeline, submit, make_account, transcriber):
        account = await make_account(tier="free")
        job_id = await submit(account.id)
        pipeline = make_pipeline()

        await pipeline.run(job_id)
        calls = transcriber.calls
        assert await pipeline.run(job_id) == Stage.COMPLETED
        assert transcriber.calls == calls


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, make_pipeline, submit, make_account, session_factory, transcriber):
        account = await make_account(tier="free")
        job_id = await submit(account.id)
        pipeline = make_pipeline()

        async with session_factory() as db:
            await pipeline.request_cancel(db, job_id)
            await db.commit()

        assert await pipeline.run(job_id) == Stage.FAILED
        job = await reload(session_factory, job_id)
        assert job.failure_code == "cancelled"
        assert job.failure_stage == "queued"
        assert job.stage_events[-1].outcome == StageOutcome.CANCELLED.value
        assert transcriber.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_between_stages(self, make_pipeline, submit, make_account, session_factory, synthesizer):
        account = await make_account(tier="free")
        job_id = await submit(account.id)
        holder = {}

        class CancellingTranscriber(FakeTranscriber):
            async def transcribe(self, audio_ref):
                async with session_factory() as db:
                    await holder["pipeline"].request_cancel(db, job_id)
                    await db.commit()
                return await super().transcribe(audio_ref)

        pipeline = make_pipeline(transcriber=CancellingTranscriber())
        holder["pipeline"] = pipeline

        assert await pipeline.run(job_id) == Stage.FAILED

        job = await reload(session_factory, job_id)
        assert job.failure_code == "cancelled"
        assert job.failure_stage == "transcribing"
        # The in-flight call finished and its outcome was kept
        assert job.transcript is not None
        assert next(e for e in job.stage_events if e.stage == "transcribing").outcome == "succeeded"
        assert synthesizer.calls == []

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_conflicts(self, make_pipeline, submit, make_account, session_factory):
        account = await make_account(tier="free")
        job_id = await submit(account.id)
        pipeline = make_pipeline()
        await pipeline.run(job_id)

        async with session_factory() as db:
            with pytest.raises(ConflictError):
                await pipeline.request_cancel(db, job_id)


class TestCommitAtCompletion:
    @pytest.mark.asyncio
    async def test_losing_the_race_fails_job_and_discards_artifacts(
        self, make_pipeline, submit, make_account, session_factory, files
    ):
        account = await make_account(tier="student")
        async with session_factory() as db:
            async with db.begin():
                db.add(UsagePeriod(account_id=account.id, period_key="2025-03-01", consumed_amount=690))

        # Both admitted against consumed=690
        first = await submit(account.id, size_mb=30)
        second = await submit(account.id, size_mb=10)
        pipeline = make_pipeline()

        assert await pipeline.run(first) == Stage.COMPLETED
        assert await pipeline.run(second) == Stage.FAILED

        job = await reload(session_factory, second)
        assert job.failure_code == "quota_exceeded_at_commit"
        assert job.failure_stage == "rendering"
        assert job.artifacts == []
        assert not (Path(files.storage_root) / "artifacts" / str(second)).exists()
        async with session_factory() as db:
            stored = await db.get(Account, account.id)
            assert stored.grace_consumed == 20
            assert stored.over_quota_rejections == 1

    @pytest.mark.asyncio
    async def test_formats_frozen_across_downgrade(
        self, make_pipeline, submit, make_account, session_factory, clock
    ):
        account = await make_account(tier="student")
        job_id = await submit(account.id, size_mb=200)

        async with session_factory() as db:
            async with db.begin():
                await SubscriptionService(clock=clock).apply_event(
                    db,
                    SubscriptionEvent(
                        event_id="evt_downgrade",
                        account_id=account.id,
                        type=SubscriptionEventType.UPDATED,
                        tier=Tier.FREE,
                        effective_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
                    ),
                )

        assert await make_pipeline().run(job_id) == Stage.COMPLETED
        job = await reload(session_factory, job_id)
        assert job.output_formats == ["txt", "md", "pdf"]
        assert len(job.artifacts) == 3
