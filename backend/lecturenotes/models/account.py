"""
Lecture Notes Backend — Account SQLAlchemy Models
===================================================

What:  ORM models for `accounts` (subscription state + grace counter) and
       `subscription_events` (processed provider webhook ids).
Who:   Mutated only by SubscriptionService (tier changes) and UsageTracker
       (grace counter); read by the tier resolver and the quota ledger.

Table Design Rationale:
    - current_tier / previous_tier / pending_downgrade_effective_at:
      a scheduled downgrade is recorded immediately, but the higher
      previous_tier keeps governing until the effective date passes.
    - grace_consumed / grace_reset_date: the overflow buffer lives on the
      account row, so the same row lock that serializes commits also
      guards grace.
    - version: optimistic concurrency column. Two workers committing for the
      same account cannot both win; the loser gets StaleDataError and retries
      against fresh totals.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import Date, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from lecturenotes.database import Base, UTCDateTime, utcnow


class Account(Base):
    """
    Subscription state for one user.

    Lifecycle:
        1. Created on first subscription event or first submission (tier = free)
        2. Tier fields change only through subscription provider events
        3. grace_consumed changes only through UsageTracker.commit
    """

    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # What: Tier recorded by the provider. During a pending downgrade this
    # already holds the LOWER tier; use the tier resolver, never this field.
    current_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")

    # What: Tier that keeps governing until pending_downgrade_effective_at
    previous_tier: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    pending_downgrade_effective_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    # What: Start of the paid subscription; paid usage periods are monthly
    # windows counted from this instant.
    billing_anchor: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    grace_consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grace_reset_date: Mapped[date] = mapped_column(
        Date, nullable=False, default=lambda: utcnow().date()
    )

    # What: Commits rejected because a concurrent job won the race.
    # Audit only; it does not throttle admission.
    over_quota_rejections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Account(id={self.id}, tier='{self.current_tier}', "
            f"pending_downgrade={self.pending_downgrade_effective_at})>"
        )


class SubscriptionEventRecord(Base):
    """A provider event that has already been applied (idempotency ledger)."""

    __tablename__ = "subscription_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    effective_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
