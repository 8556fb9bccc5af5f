"""
Lecture Notes Backend — Usage SQLAlchemy Models
=================================================

What:  `usage_periods` (consumption aggregate per account and period) and
       `usage_commits` (one row per committed job).
Why:   Consumption is an explicit aggregate mutated only by
       UsageTracker.commit. The commit ledger makes that call idempotent:
       a job id can be charged at most once.

Period keys are the ISO date of the period start ("2025-03-01" for a
calendar month, "2025-03-15" for a billing month anchored on the 15th).
Rows are created lazily and superseded at rollover, never deleted.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from lecturenotes.database import Base, UTCDateTime, utcnow


class UsagePeriod(Base):
    __tablename__ = "usage_periods"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)
    consumed_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consumed_file_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("account_id", "period_key", name="uq_usage_periods_account_period"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsagePeriod(account={self.account_id}, period='{self.period_key}', "
            f"consumed={self.consumed_amount}, files={self.consumed_file_count})>"
        )


class UsageCommit(Base):
    """Proof that a job's consumption was charged. Primary key = job id."""

    __tablename__ = "usage_commits"

    job_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    grace_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file_counted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    committed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_usage_commits_account_period", "account_id", "period_key"),
    )
