"""
Lecture Notes Backend — Quota Ledger
======================================

What:  Admission check for a prospective upload against the effective
       tier's per-file, file-count and per-period limits plus grace.
Why:   Rejections must happen synchronously at submission, before any job
       (and any external spend) exists, with enough numbers for precise
       upgrade messaging.
How:   `evaluate_snapshot()` is the pure decision over already-loaded
       figures. `QuotaLedger.evaluate()` loads the figures and calls it.
       Neither writes anything: evaluate may be called any number of times
       without effect. Charging happens separately, once, in UsageTracker.

Decision order:
    1. Resolve effective tier → plan
    2. requested > per_file_limit              → PerFileLimitExceeded (no grace)
    3. finite file limit reached (new files)   → FileCountExceeded
    4. consumed + requested ≤ per_period_limit → accept (base allotment)
    5. grace enabled and overflow fits         → accept using grace
    6. otherwise                               → QuotaExceeded

Overflow is the part of this upload that lands beyond the base allotment:
    overflow = projected - max(consumed, per_period_limit)
Once an account is already past its limit, earlier overflow has been
charged to grace and is not counted a second time.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lecturenotes.exceptions import (
    FileCountExceeded,
    PerFileLimitExceeded,
    QuotaExceeded,
    ValidationError,
)
from lecturenotes.models.usage import UsagePeriod
from lecturenotes.services.grace import GraceAllowance
from lecturenotes.services.periods import period_key as compute_period_key
from lecturenotes.services.plans import PlanDefinition, Tier, get_plan
from lecturenotes.services.tier_resolver import resolve_effective_tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageSnapshot:
    consumed: int = 0
    file_count: int = 0


@dataclass(frozen=True)
class QuotaDecision:
    """An accepted admission and the figures frozen onto the job."""

    tier: Tier
    plan: PlanDefinition
    period_key: str
    requested: int
    consumed: int
    file_count: int
    projected: int
    uses_grace: bool
    grace_overflow: int
    grace_remaining: int
    file_counted: bool


@dataclass(frozen=True)
class UsageSummary:
    consumed: int
    limit: int
    grace_remaining: int
    grace_allowance: int
    effective_tier: Tier
    files_this_period: int
    file_limit: Optional[int]
    period_key: str


def overflow_beyond_limit(consumed: int, requested: int, limit: int) -> int:
    projected = consumed + requested
    return max(0, projected - max(consumed, limit))


def evaluate_snapshot(
    plan: PlanDefinition,
    period_key: str,
    usage: UsageSnapshot,
    grace: GraceAllowance,
    requested: int,
    is_new_file: bool = True,
) -> QuotaDecision:
    """Pure admission decision. Returns a QuotaDecision or raises a QuotaError."""
    if requested < 0:
        raise ValidationError(message="Requested amount cannot be negative", field="size_mb")

    tier = plan.tier
    common = dict(
        tier=tier.value,
        current_usage=usage.consumed,
        grace_remaining=grace.remaining,
        requested=requested,
        files_this_period=usage.file_count,
        file_limit=plan.max_files_per_period,
    )

    if requested > plan.per_file_limit:
        raise PerFileLimitExceeded(
            message=(
                f"File size {requested}MB exceeds limit of {plan.per_file_limit}MB "
                f"for {tier.value} tier"
            ),
            limit=plan.per_file_limit,
            **common,
        )

    if (
        is_new_file
        and plan.has_file_limit
        and usage.file_count >= plan.max_files_per_period
    ):
        raise FileCountExceeded(
            message=f"Monthly limit of {plan.max_files_per_period} files reached",
            limit=plan.max_files_per_period,
            **common,
        )

    projected = usage.consumed + requested
    decision = dict(
        tier=tier,
        plan=plan,
        period_key=period_key,
        requested=requested,
        consumed=usage.consumed,
        file_count=usage.file_count,
        projected=projected,
        file_counted=is_new_file,
    )

    if projected <= plan.per_period_limit:
        return QuotaDecision(
            uses_grace=False, grace_overflow=0, grace_remaining=grace.remaining, **decision
        )

    overflow = overflow_beyond_limit(usage.consumed, requested, plan.per_period_limit)
    if grace.enabled and grace.can_absorb(overflow):
        return QuotaDecision(
            uses_grace=True,
            grace_overflow=overflow,
            grace_remaining=grace.remaining - overflow,
            **decision,
        )

    # Grace that cannot cover the whole overflow is reported as 0 remaining
    # for this request: it is never partially consumed.
    common["grace_remaining"] = 0
    raise QuotaExceeded(
        message=(
            f"Adding {requested}MB would exceed monthly limit of {plan.per_period_limit}MB "
            f"({usage.consumed}MB used)"
        ),
        limit=plan.per_period_limit,
        **common,
    )


class QuotaLedger:
    """
    Read side of usage accounting.

    Stateless apart from the clock, which tests replace to move through
    months and downgrade dates.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def load_usage(
        self, db: AsyncSession, account_id: uuid.UUID, period_key: str
    ) -> UsageSnapshot:
        result = await db.execute(
            select(UsagePeriod).where(
                UsagePeriod.account_id == account_id,
                UsagePeriod.period_key == period_key,
            )
        )
        period = result.scalar_one_or_none()
        if period is None:
            return UsageSnapshot()
        return UsageSnapshot(
            consumed=period.consumed_amount, file_count=period.consumed_file_count
        )

    async def evaluate(
        self,
        db: AsyncSession,
        account,
        requested_amount: int,
        is_new_file: bool = True,
        now: Optional[datetime] = None,
    ) -> QuotaDecision:
        """
        Check whether `account` may submit an upload of `requested_amount`.

        Raises:
            PerFileLimitExceeded, FileCountExceeded, QuotaExceeded
        """
        now = now or self.clock()
        tier = resolve_effective_tier(account, now)
        plan = get_plan(tier)
        key = compute_period_key(tier, account.billing_anchor, now)
        usage = await self.load_usage(db, account.id, key)
        grace = GraceAllowance.current(account, plan, now.date())

        decision = evaluate_snapshot(plan, key, usage, grace, requested_amount, is_new_file)
        logger.info(
            "Quota accepted for account %s: tier=%s period=%s projected=%d/%d grace_overflow=%d",
            account.id,
            tier.value,
            key,
            decision.projected,
            plan.per_period_limit,
            decision.grace_overflow,
        )
        return decision

    async def usage_summary(
        self, db: AsyncSession, account, now: Optional[datetime] = None
    ) -> UsageSummary:
        now = now or self.clock()
        tier = resolve_effective_tier(account, now)
        plan = get_plan(tier)
        key = compute_period_key(tier, account.billing_anchor, now)
        usage = await self.load_usage(db, account.id, key)
        grace = GraceAllowance.current(account, plan, now.date())
        return UsageSummary(
            consumed=usage.consumed,
            limit=plan.per_period_limit,
            grace_remaining=grace.remaining,
            grace_allowance=plan.grace_allowance,
            effective_tier=tier,
            files_this_period=usage.file_count,
            file_limit=plan.max_files_per_period,
            period_key=key,
        )
