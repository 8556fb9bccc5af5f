"""
Lecture Notes Backend — Usage Tracker
=======================================

What:  Charges a completed job's consumption to its usage period and the
       account's grace counter, exactly once.
Who:   Called only by JobPipeline as the last step before `completed`.

Concurrency:
    Two jobs for the same account can both pass admission (a pure read)
    before either commits. Commits are serialized per account in three
    layers:
        1. an asyncio.Lock per account id (single writer per process)
        2. SELECT ... FOR UPDATE on the account row (PostgreSQL)
        3. the account's optimistic `version` column; a StaleDataError means
           another process won and the whole commit is retried with tenacity
    Inside the serialized section the admission arithmetic is recomputed
    against the locked totals.

Race policy: reject-on-commit.
    A commit that no longer fits (period overflow beyond remaining grace, or
    the file count already used up) raises QuotaCommitRejected and writes
    nothing except `over_quota_rejections += 1` on the account. The pipeline
    turns that into a failed job and discards its artifacts. Hence
    `consumed <= per_period_limit + grace_consumed` holds after every commit.

    Overflow is charged to the grace of the calendar month the job was
    admitted in. A job admitted in one month and committed in the next is
    checked against the earlier month's counter while the account row still
    holds it, and rejected once that counter has been reset.

Idempotency:
    A `usage_commits` row keyed by job id is written in the same transaction
    as the increments. A repeated commit for the same job finds it and
    returns `already_committed=True` without touching any totals.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import AsyncIterator, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from lecturenotes.config import settings
from lecturenotes.database import async_session_factory
from lecturenotes.exceptions import NotFoundError, QuotaCommitRejected
from lecturenotes.models.account import Account
from lecturenotes.models.usage import UsageCommit, UsagePeriod
from lecturenotes.services.grace import GraceAllowance, allowance_for_month, apply_reset
from lecturenotes.services.periods import month_start
from lecturenotes.services.plans import Tier, get_plan
from lecturenotes.services.quota_ledger import overflow_beyond_limit
from lecturenotes.services.tier_resolver import resolve_effective_tier

logger = logging.getLogger(__name__)


class AccountLocks:
    """
    asyncio.Lock per account id, held in memory only while a commit holds or
    waits on it.
    """

    def __init__(self):
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._users: Dict[uuid.UUID, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def for_account(self, account_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        self._users[account_id] = self._users.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[account_id] -= 1
            if not self._users[account_id]:
                del self._users[account_id]
                del self._locks[account_id]


@dataclass(frozen=True)
class CommitResult:
    job_id: uuid.UUID
    period_key: str
    amount: int
    grace_amount: int
    already_committed: bool
    period_consumed: int
    grace_consumed: int


class UsageTracker:
    """Write side of usage accounting."""

    def __init__(
        self,
        session_factory=None,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[AccountLocks] = None,
        retry_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.locks = locks if locks is not None else AccountLocks()
        self.retry_attempts = retry_attempts or settings.commit_retry_attempts

    def _retrying(self) -> AsyncRetrying:
        # IntegrityError: a concurrent commit for the same job inserted the
        # ledger row first; the retry then sees it and returns a no-op.
        return AsyncRetrying(
            retry=retry_if_exception_type((StaleDataError, IntegrityError)),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential_jitter(initial=0.05, max=1.0, jitter=0.1),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def commit(
        self,
        account_id: uuid.UUID,
        period_key: str,
        consumed_amount: int,
        grace_overflow_amount: int,
        job_id: uuid.UUID,
        file_counted: bool = True,
        tier: Optional[Tier] = None,
        now: Optional[datetime] = None,
        grace_month: Optional[date] = None,
    ) -> CommitResult:
        """
        Charge `consumed_amount` for `job_id` to `period_key`.

        `grace_overflow_amount` is the overflow predicted at admission. It is
        recomputed against the locked totals; a mismatch is logged and the
        recomputed figure is charged. `tier` is the tier the job was admitted
        under; when omitted the tier effective at commit time is used.
        `grace_month` is the calendar month the job was admitted in; overflow
        is charged to that month's grace, defaulting to the commit month.

        Raises:
            QuotaCommitRejected: the locked totals no longer fit this job
            NotFoundError: unknown account
        """
        now = now or self.clock()
        async with self.locks.for_account(account_id):
            try:
                async for attempt in self._retrying():
                    with attempt:
                        return await self._commit_once(
                            account_id,
                            period_key,
                            consumed_amount,
                            grace_overflow_amount,
                            job_id,
                            file_counted,
                            tier,
                            now,
                            grace_month,
                        )
            except QuotaCommitRejected as exc:
                logger.warning(
                    "Usage commit rejected for job %s (account %s): %s",
                    job_id,
                    account_id,
                    exc.message,
                )
                await self._record_rejection(account_id)
                raise

    async def _commit_once(
        self,
        account_id: uuid.UUID,
        period_key: str,
        consumed_amount: int,
        grace_overflow_amount: int,
        job_id: uuid.UUID,
        file_counted: bool,
        tier: Optional[Tier],
        now: datetime,
        grace_month: Optional[date],
    ) -> CommitResult:
        async with self.session_factory() as db:
            async with db.begin():
                existing = await db.get(UsageCommit, job_id)
                if existing is not None:
                    logger.info("Usage for job %s already committed, skipping", job_id)
                    period = await self._locked_period(db, account_id, existing.period_key)
                    account = await db.get(Account, account_id)
                    return CommitResult(
                        job_id=job_id,
                        period_key=existing.period_key,
                        amount=existing.amount,
                        grace_amount=existing.grace_amount,
                        already_committed=True,
                        period_consumed=period.consumed_amount if period else 0,
                        grace_consumed=account.grace_consumed if account else 0,
                    )

                result = await db.execute(
                    select(Account).where(Account.id == account_id).with_for_update()
                )
                account = result.scalar_one_or_none()
                if account is None:
                    raise NotFoundError(resource="account", resource_id=str(account_id))

                plan = get_plan(tier or resolve_effective_tier(account, now))
                current_month = month_start(now.date())
                job_month = min(grace_month or current_month, current_month)
                grace = allowance_for_month(account, plan, job_month)
                grace_gone = grace is None
                if grace_gone:
                    # That month's counter was reset by a later commit; no
                    # overflow can be charged to it any more.
                    grace = GraceAllowance(
                        allowance=plan.grace_allowance, consumed=plan.grace_allowance
                    )

                period = await self._locked_period(db, account_id, period_key)
                consumed = period.consumed_amount if period else 0
                files = period.consumed_file_count if period else 0

                if file_counted and plan.has_file_limit and files >= plan.max_files_per_period:
                    raise QuotaCommitRejected(
                        message=f"Monthly limit of {plan.max_files_per_period} files reached",
                        tier=plan.tier.value,
                        current_usage=consumed,
                        limit=plan.max_files_per_period,
                        grace_remaining=grace.remaining,
                        requested=consumed_amount,
                        files_this_period=files,
                        file_limit=plan.max_files_per_period,
                    )

                overflow = overflow_beyond_limit(consumed, consumed_amount, plan.per_period_limit)
                if not grace.can_absorb(overflow):
                    if grace_gone:
                        message = (
                            f"Grace for {job_month.isoformat()} was reset before this job "
                            f"completed; {overflow}MB over the monthly limit cannot be charged"
                        )
                    else:
                        message = (
                            f"Adding {consumed_amount}MB would exceed monthly limit of "
                            f"{plan.per_period_limit}MB plus grace ({consumed}MB used)"
                        )
                    raise QuotaCommitRejected(
                        message=message,
                        tier=plan.tier.value,
                        current_usage=consumed,
                        limit=plan.per_period_limit,
                        grace_remaining=grace.remaining,
                        requested=consumed_amount,
                        files_this_period=files,
                        file_limit=plan.max_files_per_period,
                    )
                if overflow != grace_overflow_amount:
                    logger.info(
                        "Grace overflow for job %s recomputed at commit: admitted=%d charged=%d",
                        job_id,
                        grace_overflow_amount,
                        overflow,
                    )

                if period is None:
                    period = UsagePeriod(
                        account_id=account_id,
                        period_key=period_key,
                        consumed_amount=0,
                        consumed_file_count=0,
                    )
                    db.add(period)
                period.consumed_amount = consumed + consumed_amount
                if file_counted:
                    period.consumed_file_count = files + 1
                charged = grace.consume(overflow)
                apply_reset(account, now.date())
                if job_month == current_month:
                    account.grace_consumed = charged.consumed
                # Touch the account so its version moves with every commit
                account.updated_at = now

                db.add(
                    UsageCommit(
                        job_id=job_id,
                        account_id=account_id,
                        period_key=period_key,
                        amount=consumed_amount,
                        grace_amount=overflow,
                        file_counted=file_counted,
                        committed_at=now,
                    )
                )

        logger.info(
            "Committed %dMB (grace %dMB) for job %s: account %s period %s now %dMB, grace %d/%d",
            consumed_amount,
            overflow,
            job_id,
            account_id,
            period_key,
            period.consumed_amount,
            account.grace_consumed,
            plan.grace_allowance,
        )
        return CommitResult(
            job_id=job_id,
            period_key=period_key,
            amount=consumed_amount,
            grace_amount=overflow,
            already_committed=False,
            period_consumed=period.consumed_amount,
            grace_consumed=account.grace_consumed,
        )

    @staticmethod
    async def _locked_period(db, account_id: uuid.UUID, period_key: str) -> Optional[UsagePeriod]:
        result = await db.execute(
            select(UsagePeriod)
            .where(
                UsagePeriod.account_id == account_id,
                UsagePeriod.period_key == period_key,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _record_rejection(self, account_id: uuid.UUID) -> None:
        async for attempt in self._retrying():
            with attempt:
                async with self.session_factory() as db:
                    async with db.begin():
                        account = await db.get(Account, account_id, with_for_update=True)
                        if account is not None:
                            account.over_quota_rejections += 1
