"""
Lecture Notes Backend — Job Service (Submission Orchestrator)
===============================================================

What:  The operations the HTTP layer exposes: submit a job, read its
       status, read an account's usage, cancel a job.
Why:   Keeps admission rules in one place, independent of HTTP concerns.
How:   Composes FileService (input checks), SubscriptionService (account
       lookup), QuotaLedger (admission) and JobPipeline (cancellation).

Submission Flow (POST /api/jobs):
    ┌───────────┐    ┌──────────────┐    ┌──────────────┐    ┌──────────┐
    │ Validate  │───▶│ Effective    │───▶│ QuotaLedger  │───▶│ Job row  │
    │ input     │    │ tier         │    │ .evaluate    │    │ (queued) │
    └───────────┘    └──────────────┘    └──────────────┘    └──────────┘

    A quota rejection raises before the Job row exists, so rejected
    submissions leave no trace. Nothing is charged here; the charge happens
    once, when the pipeline completes the job.

JobService is stateless: every call receives the request's db session.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from lecturenotes.exceptions import NotFoundError, ValidationError
from lecturenotes.models.account import Account
from lecturenotes.models.job import Job, JobStageEvent
from lecturenotes.services.file_service import FileService, file_service
from lecturenotes.services.pipeline import JobPipeline, Stage, StageOutcome
from lecturenotes.services.periods import month_start
from lecturenotes.services.plans import BASE_TIER, ordered_formats
from lecturenotes.services.quota_ledger import QuotaDecision, QuotaLedger, UsageSummary
from lecturenotes.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200
SUBJECT_MAX_LENGTH = 100


class JobService:
    def __init__(
        self,
        ledger: Optional[QuotaLedger] = None,
        subscriptions: Optional[SubscriptionService] = None,
        files: Optional[FileService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.ledger = ledger or QuotaLedger(clock=self.clock)
        self.subscriptions = subscriptions or SubscriptionService(clock=self.clock)
        self.files = files or file_service

    async def submit_job(
        self,
        db: AsyncSession,
        account_id: uuid.UUID,
        size_mb: int,
        title: str,
        audio_ref: Optional[str] = None,
        document_ref: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> Tuple[Job, QuotaDecision]:
        """
        Admit a new job and record it as `queued`.

        Returns:
            (Job, QuotaDecision). The caller commits, then hands the job id
            to the JobRunner.

        Raises:
            ValidationError: malformed input descriptor
            PerFileLimitExceeded, FileCountExceeded, QuotaExceeded
        """
        now = self.clock()
        title, subject = self._validate_text(title, subject)
        if not (audio_ref or document_ref):
            raise ValidationError(
                message="Provide an audio file, a document, or both", field="audio_ref"
            )
        if audio_ref:
            audio_ref = self.files.validate_audio_ref(audio_ref)
        if document_ref:
            document_ref = self.files.validate_document_ref(document_ref)
        if size_mb is None or size_mb < 1:
            raise ValidationError(message="Upload size must be at least 1MB", field="size_mb")

        account = await self.subscriptions.ensure_account(db, account_id)
        decision: QuotaDecision = await self.ledger.evaluate(db, account, size_mb, now=now)

        # Frozen for the job's lifetime: a later downgrade changes neither
        # the formats produced nor the terms the commit re-checks.
        formats = ordered_formats(decision.plan.output_formats)
        job = Job(
            account_id=account_id,
            audio_ref=audio_ref,
            document_ref=document_ref,
            title=title,
            subject=subject,
            requested_amount=size_mb,
            tier_at_submission=decision.tier.value,
            period_key=decision.period_key,
            admitted_grace_overflow=decision.grace_overflow,
            grace_month=month_start(now.date()),
            file_counted=decision.file_counted,
            output_formats=formats,
            current_stage=Stage.QUEUED.value,
            cancel_requested=False,
            artifacts=[],
            created_at=now,
            updated_at=now,
        )
        job.stage_events.append(
            JobStageEvent(
                sequence=1,
                stage=Stage.QUEUED.value,
                outcome=StageOutcome.ACCEPTED.value,
                attempts=0,
                detail="admitted using grace" if decision.uses_grace else None,
                started_at=now,
                finished_at=now,
            )
        )
        db.add(job)
        await db.flush()

        logger.info(
            "Job %s queued for account %s: %dMB, tier=%s, formats=%s%s",
            job.id,
            account_id,
            size_mb,
            decision.tier.value,
            ",".join(formats),
            " (grace)" if decision.uses_grace else "",
        )
        return job, decision

    async def get_job_status(self, db: AsyncSession, job_id: uuid.UUID) -> Job:
        job = await db.get(Job, job_id)
        if job is None:
            raise NotFoundError(resource="job", resource_id=str(job_id))
        return job

    async def get_usage_summary(self, db: AsyncSession, account_id: uuid.UUID) -> UsageSummary:
        account = await db.get(Account, account_id)
        if account is None:
            # Never subscribed and never submitted: report an empty base-tier
            # period without creating the account on a read.
            account = Account(
                id=account_id,
                current_tier=BASE_TIER.value,
                grace_consumed=0,
                grace_reset_date=self.clock().date(),
            )
        return await self.ledger.usage_summary(db, account)

    async def cancel_job(
        self, db: AsyncSession, pipeline: JobPipeline, job_id: uuid.UUID
    ) -> Job:
        return await pipeline.request_cancel(db, job_id)

    @staticmethod
    def _validate_text(title: str, subject: Optional[str]):
        title = (title or "").strip()
        if not title or len(title) > TITLE_MAX_LENGTH:
            raise ValidationError(
                message=f"Title must be 1 to {TITLE_MAX_LENGTH} characters",
                field="title",
            )
        subject = (subject or "").strip() or None
        if subject is not None and len(subject) > SUBJECT_MAX_LENGTH:
            raise ValidationError(
                message=f"Subject must be at most {SUBJECT_MAX_LENGTH} characters",
                field="subject",
            )
        return title, subject


job_service = JobService()
