"""
Lecture Notes Backend — Subscription State
============================================

What:  Applies subscription provider events to account tier state.
Why:   Tier fields are owned by the provider. This is the only code that
       writes current_tier, previous_tier, pending_downgrade_effective_at
       and billing_anchor.
How:   Each event is recorded by its provider id in `subscription_events`
       inside the same transaction as the account change, so redelivered
       webhooks are no-ops.

Event handling:
    rank rises                      → upgrade now, clear any pending downgrade
    rank falls, effective_at > now  → schedule: previous = effective tier,
                                      current = new tier, pending = effective_at
    rank falls, effective_at <= now → downgrade now, clear pending
    same tier                       → renewal, cancels a scheduled downgrade
    cancelled                       → downgrade to the base tier at effective_at
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from lecturenotes.exceptions import ValidationError
from lecturenotes.models.account import Account, SubscriptionEventRecord
from lecturenotes.services.periods import as_utc
from lecturenotes.services.plans import BASE_TIER, Tier, parse_tier
from lecturenotes.services.tier_resolver import resolve_effective_tier

logger = logging.getLogger(__name__)


class SubscriptionEventType(str, Enum):
    ACTIVATED = "activated"
    UPDATED = "updated"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SubscriptionEvent:
    event_id: str
    account_id: uuid.UUID
    type: SubscriptionEventType
    tier: Tier
    effective_at: Optional[datetime] = None
    billing_anchor: Optional[datetime] = None


@dataclass(frozen=True)
class ApplyResult:
    applied: bool
    account: Account
    action: str


class SubscriptionService:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def ensure_account(self, db: AsyncSession, account_id: uuid.UUID) -> Account:
        """Return the account, creating it on the base tier if unknown."""
        account = await db.get(Account, account_id)
        if account is None:
            account = Account(
                id=account_id,
                current_tier=BASE_TIER.value,
                grace_consumed=0,
                grace_reset_date=self.clock().date(),
            )
            db.add(account)
            await db.flush()
            logger.info("Created account %s on %s tier", account_id, BASE_TIER.value)
        return account

    async def apply_event(
        self, db: AsyncSession, event: SubscriptionEvent, now: Optional[datetime] = None
    ) -> ApplyResult:
        now = now or self.clock()

        if await db.get(SubscriptionEventRecord, event.event_id) is not None:
            logger.info("Subscription event %s already processed, ignoring", event.event_id)
            account = await self.ensure_account(db, event.account_id)
            return ApplyResult(applied=False, account=account, action="duplicate")

        account = await self.ensure_account(db, event.account_id)
        new_tier = BASE_TIER if event.type == SubscriptionEventType.CANCELLED else event.tier
        effective_at = event.effective_at or now
        effective_tier = resolve_effective_tier(account, now)

        if new_tier.rank > effective_tier.rank:
            action = "upgraded"
            account.current_tier = new_tier.value
            account.previous_tier = None
            account.pending_downgrade_effective_at = None
            account.billing_anchor = event.billing_anchor or effective_at
        elif new_tier.rank < effective_tier.rank:
            account.current_tier = new_tier.value
            if effective_at > now:
                action = "downgrade_scheduled"
                account.previous_tier = effective_tier.value
                account.pending_downgrade_effective_at = effective_at
            else:
                action = "downgraded"
                account.previous_tier = None
                account.pending_downgrade_effective_at = None
        else:
            # Same effective tier: a renewal, or a re-subscribe that
            # cancels a scheduled downgrade.
            action = "renewed"
            account.current_tier = new_tier.value
            account.previous_tier = None
            account.pending_downgrade_effective_at = None
            if new_tier.is_paid and event.billing_anchor is not None:
                account.billing_anchor = event.billing_anchor

        db.add(
            SubscriptionEventRecord(
                event_id=event.event_id,
                account_id=event.account_id,
                event_type=event.type.value,
                tier=new_tier.value,
                effective_at=event.effective_at,
                received_at=now,
            )
        )
        await db.flush()

        logger.info(
            "Subscription event %s (%s) for account %s: %s %s → %s",
            event.event_id,
            event.type.value,
            event.account_id,
            action,
            effective_tier.value,
            new_tier.value,
        )
        return ApplyResult(applied=True, account=account, action=action)

    async def expire_pending_downgrades(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> int:
        """
        Clear pending-downgrade markers whose effective date has passed.

        The resolver already ignores elapsed markers, so this sweep only keeps
        the stored state tidy. Returns the number of accounts updated.
        """
        now = now or self.clock()
        result = await db.execute(
            update(Account)
            .where(
                Account.pending_downgrade_effective_at.is_not(None),
                Account.pending_downgrade_effective_at <= now,
            )
            .values(
                previous_tier=None,
                pending_downgrade_effective_at=None,
                version=Account.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            logger.info("Expired %d elapsed pending downgrades", count)
        return count


def parse_event(
    event_id: str,
    account_id: uuid.UUID,
    event_type: str,
    tier: Optional[str],
    effective_at: Optional[datetime] = None,
    billing_anchor: Optional[datetime] = None,
) -> SubscriptionEvent:
    """Build a SubscriptionEvent from raw webhook fields."""
    try:
        kind = SubscriptionEventType(event_type)
    except ValueError:
        raise ValidationError(
            message=f"Unknown subscription event type '{event_type}'", field="type"
        )
    try:
        parsed_tier = parse_tier(tier)
    except ValueError:
        raise ValidationError(message=f"Unknown tier '{tier}'", field="tier")
    return SubscriptionEvent(
        event_id=event_id,
        account_id=account_id,
        type=kind,
        tier=parsed_tier,
        effective_at=as_utc(effective_at),
        billing_anchor=as_utc(billing_anchor),
    )


subscription_service = SubscriptionService()
