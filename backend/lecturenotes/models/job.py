"""
Lecture Notes Backend — Job SQLAlchemy Models
===============================================

What:  `jobs`, `job_stage_events` (ordered stage history) and
       `job_artifacts` (one rendered file per output format).
Who:   Created by JobService.submit_job; mutated only by JobPipeline.

Table Design Rationale:
    - Intermediate outputs (transcript, supplement_text, structured_notes)
      are stored on the job so an interrupted pipeline resumes from the last
      persisted stage instead of paying for the external calls again.
    - output_formats is frozen at submission. A downgrade mid-job must not
      change which artifacts the job produces.
    - The admission figures (period_key, admitted_grace_overflow,
      grace_month, file_counted) are frozen too; the commit re-validates them.
    - Stage history is a child table rather than a JSON blob so each stage
      outcome is its own small write, persisted before the pipeline advances.
"""

import uuid
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lecturenotes.database import Base, UTCDateTime, utcnow


class Job(Base):
    """
    One upload being turned into study notes.

    Lifecycle:
        queued → [transcribing] → [extracting_supplement] → synthesizing
        → rendering → completed, or failed from any non-terminal stage.
        Immutable once completed or failed.
    """

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # ── Input descriptor ──────────────────────────────────────────────────
    audio_ref: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    document_ref: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    requested_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # ── Frozen at admission ───────────────────────────────────────────────
    tier_at_submission: Mapped[str] = mapped_column(String(20), nullable=False)
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)
    admitted_grace_overflow: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # What: Calendar month whose grace absorbs this job's overflow
    grace_month: Mapped[date] = mapped_column(Date, nullable=False)
    file_counted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    output_formats: Mapped[list] = mapped_column(JSON, nullable=False)

    # ── Progress ──────────────────────────────────────────────────────────
    current_stage: Mapped[str] = mapped_column(String(32), nullable=False, default="queued")
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    failure_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # ── Persisted stage outputs (resume points) ───────────────────────────
    transcript: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    supplement_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    structured_notes: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    stage_events: Mapped[List["JobStageEvent"]] = relationship(
        back_populates="job",
        order_by="JobStageEvent.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    artifacts: Mapped[List["JobArtifact"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_jobs_account_created", "account_id", "created_at"),
        Index("idx_jobs_current_stage", "current_stage"),
    )

    def __repr__(self) -> str:
        return f"<Job(id={self.id}, stage='{self.current_stage}')>"


class JobStageEvent(Base):
    """
    One entry of a job's stage history.

    outcome is NULL while the stage's external call is in flight; a NULL
    outcome found on resume means the call was interrupted and must be redone.
    """

    __tablename__ = "job_stage_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    outcome: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    job: Mapped[Job] = relationship(back_populates="stage_events")

    __table_args__ = (
        UniqueConstraint("job_id", "sequence", name="uq_job_stage_events_sequence"),
    )


class JobArtifact(Base):
    __tablename__ = "job_artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    format: Mapped[str] = mapped_column(String(10), nullable=False)
    storage_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    job: Mapped[Job] = relationship(back_populates="artifacts")

    __table_args__ = (
        UniqueConstraint("job_id", "format", name="uq_job_artifacts_format"),
    )
