"""
Lecture Notes Backend — Job Pipeline
======================================

What:  Drives one job through its processing stages, from `queued` to
       `completed` or `failed`.
Who:   JobRunner schedules `run(job_id)` as an asyncio task per job.

State Machine:
    queued ─┬─▶ transcribing ─┬─▶ extracting_supplement ─▶ synthesizing ─▶ rendering ─▶ completed
            │                 └──────────────────────────▶ synthesizing
            └─▶ extracting_supplement (document-only jobs)
    Every non-terminal stage may go to `failed`.

Which stages run is decided up front by `plan_stages()` from the job's
inputs. A stage that does not apply never appears in the history, so a
document-only job has no `transcribing` entry at all.

Per-stage contract:
    1. Persist a history row with outcome NULL (in flight) and advance
       current_stage, in its own transaction
    2. Call exactly one collaborator; each attempt is bounded by
       `stage_timeout_seconds`, and retryable errors (unavailable,
       rate_limited) are retried with exponential backoff + jitter
    3. Persist the stage output and outcome, in its own transaction
    Fatal errors (auth_failed, bad_input, empty_result) and anything
    unexpected (internal_error) fail the job straight away.

Resume:
    `run()` on a job that was interrupted skips stages whose history row
    says `succeeded` and re-executes a stage left in flight. Rendering
    persists each format's artifact as soon as it exists, so a resumed job
    only renders the formats still missing.

Completion:
    Usage is committed through UsageTracker as part of reaching
    `completed`. A commit rejected by the per-account race check fails the
    job with `quota_exceeded_at_commit` and discards its artifacts.

Cancellation:
    Queued jobs fail at once with code `cancelled`. Running jobs get
    `cancel_requested`, checked between stages; an in-flight collaborator
    call always finishes first.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from lecturenotes.config import settings
from lecturenotes.database import async_session_factory
from lecturenotes.exceptions import (
    CollaboratorError,
    ConflictError,
    EmptyResult,
    NotFoundError,
    QuotaCommitRejected,
    ServiceUnavailable,
)
from lecturenotes.models.job import Job, JobArtifact, JobStageEvent
from lecturenotes.models.usage import UsageCommit
from lecturenotes.services.collaborators import (
    DocumentRenderingService,
    NoteSynthesisService,
    StructuredNotes,
    TextExtractionService,
    TranscriptionService,
)
from lecturenotes.services.file_service import FileService, file_service
from lecturenotes.services.plans import ordered_formats, parse_tier
from lecturenotes.services.usage_tracker import UsageTracker

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    QUEUED = "queued"
    TRANSCRIBING = "transcribing"
    EXTRACTING_SUPPLEMENT = "extracting_supplement"
    SYNTHESIZING = "synthesizing"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.FAILED)


class StageOutcome(str, Enum):
    ACCEPTED = "accepted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TRANSITIONS: Dict[Stage, Set[Stage]] = {
    Stage.QUEUED: {Stage.TRANSCRIBING, Stage.EXTRACTING_SUPPLEMENT, Stage.FAILED},
    Stage.TRANSCRIBING: {Stage.EXTRACTING_SUPPLEMENT, Stage.SYNTHESIZING, Stage.FAILED},
    Stage.EXTRACTING_SUPPLEMENT: {Stage.SYNTHESIZING, Stage.FAILED},
    Stage.SYNTHESIZING: {Stage.RENDERING, Stage.FAILED},
    Stage.RENDERING: {Stage.COMPLETED, Stage.FAILED},
    Stage.COMPLETED: set(),
    Stage.FAILED: set(),
}

CANCELLED_CODE = "cancelled"
INTERNAL_ERROR_CODE = "internal_error"


def can_transition(current: Stage, target: Stage) -> bool:
    return target in TRANSITIONS[current]


def plan_stages(job) -> List[Stage]:
    """Ordered work stages for a job's inputs (terminal stages excluded)."""
    stages: List[Stage] = []
    if job.audio_ref:
        stages.append(Stage.TRANSCRIBING)
    if job.document_ref:
        stages.append(Stage.EXTRACTING_SUPPLEMENT)
    if not stages:
        raise ValueError(f"Job {job.id} has neither audio nor document input")
    stages += [Stage.SYNTHESIZING, Stage.RENDERING]
    return stages


def stage_succeeded(job: Job, stage: Stage) -> bool:
    return any(
        e.stage == stage.value and e.outcome == StageOutcome.SUCCEEDED.value
        for e in job.stage_events
    )


class StageFailed(Exception):
    """Internal signal: a stage ended the job. Never leaves this module."""

    def __init__(self, stage: Stage, code: str, reason: str, attempts: int = 0):
        super().__init__(reason)
        self.stage = stage
        self.code = code
        self.reason = reason
        self.attempts = attempts


class JobPipeline:
    """
    Runs jobs to a terminal stage.

    Stateless between calls apart from its collaborators; many `run()`
    tasks may share one instance.
    """

    def __init__(
        self,
        transcriber: TranscriptionService,
        extractor: TextExtractionService,
        synthesizer: NoteSynthesisService,
        renderer: DocumentRenderingService,
        files: Optional[FileService] = None,
        tracker: Optional[UsageTracker] = None,
        session_factory=None,
        clock: Optional[Callable[[], datetime]] = None,
        stage_timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_min_wait: Optional[float] = None,
        retry_max_wait: Optional[float] = None,
    ):
        self.transcriber = transcriber
        self.extractor = extractor
        self.synthesizer = synthesizer
        self.renderer = renderer
        self.files = files or file_service
        self.session_factory = session_factory or async_session_factory
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tracker = tracker or UsageTracker(
            session_factory=self.session_factory, clock=self.clock
        )
        self.stage_timeout = stage_timeout or settings.stage_timeout_seconds
        self.retry_attempts = retry_attempts or settings.stage_retry_attempts
        self.retry_min_wait = (
            settings.stage_retry_min_wait if retry_min_wait is None else retry_min_wait
        )
        self.retry_max_wait = (
            settings.stage_retry_max_wait if retry_max_wait is None else retry_max_wait
        )

    # ══════════════════════════════════════════════════════════════════════
    # Driver
    # ══════════════════════════════════════════════════════════════════════

    async def run(self, job_id: uuid.UUID) -> Stage:
        """
        Drive `job_id` until it is terminal and return the final stage.

        Safe to call again on an interrupted or already-terminal job.
        Collaborator errors never escape: they end the job as `failed`.
        """
        job = await self._load(job_id)
        if job is None:
            raise NotFoundError(resource="job", resource_id=str(job_id))
        if Stage(job.current_stage).is_terminal:
            logger.info("Job %s already %s, nothing to run", job_id, job.current_stage)
            return Stage(job.current_stage)

        active = Stage(job.current_stage)
        try:
            for stage in plan_stages(job):
                if stage_succeeded(job, stage):
                    logger.debug("Job %s: %s already done, skipping", job_id, stage.value)
                    continue
                job = await self._load(job_id)
                if Stage(job.current_stage).is_terminal:
                    return Stage(job.current_stage)
                if job.cancel_requested:
                    raise StageFailed(Stage(job.current_stage), CANCELLED_CODE, "Cancelled by user")
                active = stage
                job = await self._run_stage(job, stage)

            job = await self._load(job_id)
            if job.cancel_requested:
                raise StageFailed(Stage(job.current_stage), CANCELLED_CODE, "Cancelled by user")
            return await self._complete(job)

        except StageFailed as failure:
            await self._fail(job_id, failure)
            return Stage.FAILED
        except Exception as e:
            logger.error("Job %s: unexpected pipeline error: %s", job_id, str(e), exc_info=True)
            if await self._usage_committed(job_id):
                # Charged but not yet marked completed: leave it for resume
                raise
            await self._fail(
                job_id,
                StageFailed(active, INTERNAL_ERROR_CODE, f"{type(e).__name__}: {e}"),
            )
            return Stage.FAILED

    async def _run_stage(self, job: Job, stage: Stage) -> Job:
        job = await self._begin_stage(job.id, stage)
        attempts = [0]

        try:
            if stage == Stage.TRANSCRIBING:
                transcript = await self._call(
                    stage, attempts, lambda: self.transcriber.transcribe(job.audio_ref)
                )
                require_text(transcript, "transcriber", "Transcript is empty")
                return await self._finish_stage(job.id, stage, attempts[0], transcript=transcript)

            if stage == Stage.EXTRACTING_SUPPLEMENT:
                text = await self._call(
                    stage, attempts, lambda: self.extractor.extract(job.document_ref)
                )
                require_text(text, "extractor", "Document text is empty")
                return await self._finish_stage(job.id, stage, attempts[0], supplement_text=text)

            if stage == Stage.SYNTHESIZING:
                # Document-only jobs: the extracted text is the primary source
                primary = job.transcript or job.supplement_text
                supplement = job.supplement_text if job.transcript else None
                notes = await self._call(
                    stage,
                    attempts,
                    lambda: self.synthesizer.synthesize(primary, supplement, job.title, job.subject),
                )
                if notes is None:
                    raise EmptyResult(message="Synthesis returned no notes", service="synthesizer")
                return await self._finish_stage(
                    job.id, stage, attempts[0], structured_notes=notes.model_dump()
                )

            if stage == Stage.RENDERING:
                await self._render_missing(job, attempts)
                return await self._finish_stage(job.id, stage, attempts[0])

        except CollaboratorError as e:
            logger.warning(
                "Job %s: %s failed with %s after %d attempt(s): %s",
                job.id,
                stage.value,
                e.code,
                attempts[0],
                e.message,
            )
            raise StageFailed(stage, e.code, e.message, attempts[0])

        raise ValueError(f"No handler for stage {stage.value}")

    async def _render_missing(self, job: Job, attempts: List[int]) -> None:
        notes = StructuredNotes.model_validate(job.structured_notes)
        done = {a.format for a in job.artifacts}
        for fmt in ordered_formats(job.output_formats):
            if fmt in done:
                logger.debug("Job %s: %s artifact exists, skipping", job.id, fmt)
                continue
            content = await self._call(
                Stage.RENDERING, attempts, lambda: self.renderer.render(notes, fmt)
            )
            if not content:
                raise EmptyResult(message=f"Rendered {fmt} is empty", service="renderer")
            ref = await self.files.store_artifact(job.id, fmt, content)
            await self._add_artifact(job.id, fmt, ref, len(content))

    # ══════════════════════════════════════════════════════════════════════
    # Collaborator calls: timeout + retry at the stage boundary
    # ══════════════════════════════════════════════════════════════════════

    async def _call(self, stage: Stage, attempts: List[int], call: Callable[[], Awaitable]):
        async def attempt():
            attempts[0] += 1
            try:
                return await asyncio.wait_for(call(), timeout=self.stage_timeout)
            except asyncio.TimeoutError:
                raise ServiceUnavailable(
                    message=f"{stage.value} timed out after {self.stage_timeout:.0f}s",
                    service=stage.value,
                )

        retrying = AsyncRetrying(
            retry=retry_if_exception(
                lambda e: isinstance(e, CollaboratorError) and e.retryable
            ),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential_jitter(
                initial=self.retry_min_wait,
                max=self.retry_max_wait,
                jitter=self.retry_min_wait,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return await retrying(attempt)

    # ══════════════════════════════════════════════════════════════════════
    # Persistence: one short transaction per transition
    # ══════════════════════════════════════════════════════════════════════

    async def _load(self, job_id: uuid.UUID) -> Optional[Job]:
        async with self.session_factory() as db:
            return await db.get(Job, job_id)

    async def _usage_committed(self, job_id: uuid.UUID) -> bool:
        async with self.session_factory() as db:
            return await db.get(UsageCommit, job_id) is not None

    async def _begin_stage(self, job_id: uuid.UUID, stage: Stage) -> Job:
        now = self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                job = await db.get(Job, job_id, with_for_update=True)
                current = Stage(job.current_stage)
                if current.is_terminal:
                    # Cancelled while queued after this run loaded it
                    raise StageFailed(current, CANCELLED_CODE, "Job already terminal")
                in_flight = next(
                    (
                        e
                        for e in job.stage_events
                        if e.stage == stage.value and e.outcome is None
                    ),
                    None,
                )
                if in_flight is not None:
                    # Interrupted earlier: redo the call under the same row
                    in_flight.started_at = now
                    in_flight.detail = "resumed after interruption"
                    logger.info("Job %s: resuming interrupted %s", job_id, stage.value)
                elif current != stage and not can_transition(current, stage):
                    raise ValueError(
                        f"Illegal transition {current.value} → {stage.value} for job {job_id}"
                    )
                else:
                    job.stage_events.append(
                        JobStageEvent(
                            sequence=len(job.stage_events) + 1,
                            stage=stage.value,
                            outcome=None,
                            attempts=0,
                            started_at=now,
                        )
                    )
                job.current_stage = stage.value
                job.updated_at = now
        logger.info("Job %s: %s started", job_id, stage.value)
        return job

    async def _finish_stage(self, job_id: uuid.UUID, stage: Stage, attempts: int, **outputs) -> Job:
        now = self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                job = await db.get(Job, job_id, with_for_update=True)
                for name, value in outputs.items():
                    setattr(job, name, value)
                event = _open_event(job, stage)
                event.outcome = StageOutcome.SUCCEEDED.value
                event.attempts += attempts
                event.finished_at = now
                job.updated_at = now
        logger.info("Job %s: %s succeeded after %d attempt(s)", job_id, stage.value, attempts)
        return job

    async def _add_artifact(self, job_id: uuid.UUID, fmt: str, ref: str, size: int) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                db.add(
                    JobArtifact(
                        job_id=job_id,
                        format=fmt,
                        storage_ref=ref,
                        size_bytes=size,
                        created_at=self.clock(),
                    )
                )

    async def _complete(self, job: Job) -> Stage:
        try:
            await self.tracker.commit(
                account_id=job.account_id,
                period_key=job.period_key,
                consumed_amount=job.requested_amount,
                grace_overflow_amount=job.admitted_grace_overflow,
                job_id=job.id,
                file_counted=job.file_counted,
                tier=parse_tier(job.tier_at_submission),
                grace_month=job.grace_month,
            )
        except QuotaCommitRejected as e:
            raise StageFailed(Stage.RENDERING, e.code, e.message)

        now = self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                job = await db.get(Job, job.id, with_for_update=True)
                job.stage_events.append(
                    JobStageEvent(
                        sequence=len(job.stage_events) + 1,
                        stage=Stage.COMPLETED.value,
                        outcome=StageOutcome.SUCCEEDED.value,
                        started_at=now,
                        finished_at=now,
                    )
                )
                job.current_stage = Stage.COMPLETED.value
                job.completed_at = now
                job.updated_at = now
        logger.info(
            "Job %s completed: %d artifact(s), %dMB charged",
            job.id,
            len(job.artifacts),
            job.requested_amount,
        )
        return Stage.COMPLETED

    async def _fail(self, job_id: uuid.UUID, failure: StageFailed) -> None:
        now = self.clock()
        outcome = (
            StageOutcome.CANCELLED if failure.code == CANCELLED_CODE else StageOutcome.FAILED
        )
        async with self.session_factory() as db:
            async with db.begin():
                job = await db.get(Job, job_id, with_for_update=True)
                if job is None or Stage(job.current_stage).is_terminal:
                    return
                mark_failed(job, failure.stage, failure.code, failure.reason, outcome, now, failure.attempts)
        await self.files.delete_artifacts(job_id)
        logger.warning(
            "Job %s failed at %s: %s (%s)",
            job_id,
            failure.stage.value,
            failure.code,
            failure.reason,
        )

    # ══════════════════════════════════════════════════════════════════════
    # Cancellation
    # ══════════════════════════════════════════════════════════════════════

    async def request_cancel(self, db: AsyncSession, job_id: uuid.UUID) -> Job:
        """
        Cancel a job inside the caller's transaction.

        Raises:
            NotFoundError: unknown job
            ConflictError: job already completed or failed
        """
        job = await db.get(Job, job_id, with_for_update=True)
        if job is None:
            raise NotFoundError(resource="job", resource_id=str(job_id))
        stage = Stage(job.current_stage)
        if stage.is_terminal:
            raise ConflictError(
                message=f"Job is already {stage.value} and cannot be cancelled",
                context={"job_id": str(job_id), "stage": stage.value},
            )

        if stage == Stage.QUEUED:
            mark_failed(
                job, Stage.QUEUED, CANCELLED_CODE, "Cancelled before processing started",
                StageOutcome.CANCELLED, self.clock(),
            )
            logger.info("Job %s cancelled while queued", job_id)
        else:
            job.cancel_requested = True
            job.updated_at = self.clock()
            logger.info("Job %s: cancellation requested during %s", job_id, stage.value)
        await db.flush()
        return job


# ── Helpers ───────────────────────────────────────────────────────────────

def require_text(value: Optional[str], service: str, message: str) -> None:
    if not value or not value.strip():
        raise EmptyResult(message=message, service=service)


def _open_event(job: Job, stage: Stage) -> JobStageEvent:
    for event in reversed(job.stage_events):
        if event.stage == stage.value and event.outcome is None:
            return event
    raise ValueError(f"Job {job.id} has no in-flight {stage.value} event")


def mark_failed(
    job: Job,
    stage: Stage,
    code: str,
    reason: str,
    outcome: StageOutcome,
    now: datetime,
    attempts: int = 0,
) -> None:
    """Move `job` to `failed`, closing any in-flight stage row."""
    for event in job.stage_events:
        if event.outcome is None:
            event.outcome = outcome.value
            event.attempts += attempts
            event.detail = code
            event.finished_at = now
    job.stage_events.append(
        JobStageEvent(
            sequence=len(job.stage_events) + 1,
            stage=Stage.FAILED.value,
            outcome=outcome.value,
            detail=reason[:1000],
            started_at=now,
            finished_at=now,
        )
    )
    job.artifacts.clear()
    job.current_stage = Stage.FAILED.value
    job.failure_stage = stage.value
    job.failure_code = code
    job.failure_reason = reason
    job.updated_at = now
