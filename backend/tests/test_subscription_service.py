"""
Lecture Notes Backend — Subscription State Tests
==================================================

What we test:
    ✅ Upgrade applies immediately and sets the billing anchor
    ✅ Downgrade effective later is scheduled, earlier-or-now applies now
    ✅ Cancellation schedules a drop to the base tier
    ✅ Renewal clears a scheduled downgrade
    ✅ Redelivered events are no-ops
    ✅ parse_event rejects unknown types and tiers, reads offset-less times as UTC
    ✅ Elapsed pending-downgrade markers are swept
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from lecturenotes.exceptions import ValidationError
from lecturenotes.models.account import Account
from lecturenotes.services.plans import Tier
from lecturenotes.services.subscription_service import (
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionService,
    parse_event,
)
from lecturenotes.services.tier_resolver import resolve_effective_tier


def event(account_id, type_="updated", tier=Tier.STUDENT, effective_at=None, event_id=None, anchor=None):
    return SubscriptionEvent(
        event_id=event_id or f"evt_{uuid.uuid4().hex[:12]}",
        account_id=account_id,
        type=SubscriptionEventType(type_),
        tier=tier,
        effective_at=effective_at,
        billing_anchor=anchor,
    )


@pytest.fixture
def service(clock):
    return SubscriptionService(clock=clock)


class TestApplyEvent:
    @pytest.mark.asyncio
    async def test_upgrade_creates_account_and_applies_now(self, db, service, clock):
        account_id = uuid.uuid4()

        result = await service.apply_event(db, event(account_id, "activated"))
        await db.commit()

        assert result.applied
        assert result.action == "upgraded"
        assert result.account.current_tier == "student"
        assert result.account.billing_anchor == clock()
        assert resolve_effective_tier(result.account, clock()) == Tier.STUDENT

    @pytest.mark.asyncio
    async def test_upgrade_keeps_provider_anchor(self, db, service, make_account):
        account = await make_account(tier="free")
        anchor = datetime(2025, 1, 31, tzinfo=timezone.utc)

        result = await service.apply_event(db, event(account.id, anchor=anchor))
        assert result.account.billing_anchor == anchor

    @pytest.mark.asyncio
    async def test_future_downgrade_is_scheduled(self, db, service, make_account, clock):
        account = await make_account(tier="student")
        ends = clock() + timedelta(days=12)

        result = await service.apply_event(db, event(account.id, tier=Tier.FREE, effective_at=ends))

        stored = result.account
        assert result.action == "downgrade_scheduled"
        assert stored.current_tier == "free"
        assert stored.previous_tier == "student"
        assert stored.pending_downgrade_effective_at == ends
        assert resolve_effective_tier(stored, clock()) == Tier.STUDENT
        assert resolve_effective_tier(stored, ends) == Tier.FREE

    @pytest.mark.asyncio
    async def test_past_downgrade_applies_now(self, db, service, make_account, clock):
        account = await make_account(tier="student")

        result = await service.apply_event(
            db, event(account.id, tier=Tier.FREE, effective_at=clock() - timedelta(hours=1))
        )

        assert result.action == "downgraded"
        assert result.account.previous_tier is None
        assert result.account.pending_downgrade_effective_at is None

    @pytest.mark.asyncio
    async def test_cancellation_drops_to_base_tier(self, db, service, make_account, clock):
        account = await make_account(tier="student")
        ends = clock() + timedelta(days=3)

        result = await service.apply_event(
            db, event(account.id, "cancelled", tier=Tier.STUDENT, effective_at=ends)
        )

        assert result.action == "downgrade_scheduled"
        assert result.account.current_tier == "free"
        assert result.account.previous_tier == "student"

    @pytest.mark.asyncio
    async def test_renewal_clears_scheduled_downgrade(self, db, service, make_account, clock):
        account = await make_account(
            tier="free",
            previous_tier="student",
            pending_downgrade_effective_at=clock() + timedelta(days=3),
        )

        result = await service.apply_event(db, event(account.id, tier=Tier.STUDENT))

        assert result.action == "renewed"
        assert result.account.current_tier == "student"
        assert result.account.pending_downgrade_effective_at is None

    @pytest.mark.asyncio
    async def test_redelivered_event_is_noop(self, db, service, make_account, clock):
        account = await make_account(tier="student")
        downgrade = event(
            account.id, tier=Tier.FREE, effective_at=clock() + timedelta(days=2), event_id="evt_1"
        )
        await service.apply_event(db, downgrade)
        await db.commit()

        # A later upgrade, then the old downgrade redelivered
        await service.apply_event(db, event(account.id, tier=Tier.STUDENT, event_id="evt_2"))
        again = await service.apply_event(db, downgrade)
        await db.commit()

        assert not again.applied
        assert again.action == "duplicate"
        assert again.account.current_tier == "student"
        assert again.account.pending_downgrade_effective_at is None


class TestParseEvent:
    def test_valid_event(self):
        account_id = uuid.uuid4()
        parsed = parse_event("evt_1", account_id, "activated", "student")
        assert parsed.type == SubscriptionEventType.ACTIVATED
        assert parsed.tier == Tier.STUDENT

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_event("evt_1", uuid.uuid4(), "paused", "student")

    def test_unknown_tier(self):
        with pytest.raises(ValidationError):
            parse_event("evt_1", uuid.uuid4(), "updated", "platinum")

    def test_offsetless_datetimes_are_utc(self):
        parsed = parse_event(
            "evt_1", uuid.uuid4(), "cancelled", "student",
            effective_at=datetime(2099, 1, 1), billing_anchor=datetime(2025, 1, 31, 8, 30),
        )
        assert parsed.effective_at == datetime(2099, 1, 1, tzinfo=timezone.utc)
        assert parsed.billing_anchor.tzinfo == timezone.utc

    @pytest.mark.asyncio
    async def test_offsetless_cancellation_is_scheduled(self, db, service, make_account):
        account = await make_account(tier="student")
        parsed = parse_event(
            "evt_1", account.id, "cancelled", "student", effective_at=datetime(2099, 1, 1)
        )

        result = await service.apply_event(db, parsed)

        assert result.action == "downgrade_scheduled"
        assert result.account.previous_tier == "student"


class TestExpirePendingDowngrades:
    @pytest.mark.asyncio
    async def test_sweeps_only_elapsed_markers(self, db, service, make_account, clock):
        elapsed = await make_account(
            tier="free", previous_tier="student",
            pending_downgrade_effective_at=clock() - timedelta(days=1),
        )
        pending = await make_account(
            tier="free", previous_tier="student",
            pending_downgrade_effective_at=clock() + timedelta(days=1),
        )

        assert await service.expire_pending_downgrades(db) == 1
        await db.commit()

        db.expire_all()
        swept = await db.get(Account, elapsed.id)
        kept = await db.get(Account, pending.id)
        assert swept.previous_tier is None
        assert swept.pending_downgrade_effective_at is None
        assert kept.previous_tier == "student"
