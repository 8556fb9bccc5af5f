"""
Lecture Notes Backend — Effective Tier Resolver
=================================================

What:  Maps (account snapshot, now) to the tier that currently gates access.
Why:   A downgrade is recorded the moment the provider reports it, but the
       user already paid for the rest of the period. Until the effective
       date passes, the previous (higher) tier keeps governing limits and
       output formats.
How:   Pure function of its inputs. No storage access, no caching; callers
       resolve again on every admission check, so the answer flips exactly
       when the effective date passes.

    pending_downgrade_effective_at   now                 effective tier
    ───────────────────────────────  ──────────────────  ───────────────
    None                             any                 current_tier
    T                                now <  T            previous_tier
    T                                now >= T            current_tier
"""

from datetime import datetime
from typing import Optional, Protocol

from lecturenotes.services.plans import PlanDefinition, Tier, get_plan, parse_tier


class TierSnapshot(Protocol):
    """Anything shaped like an Account row (ORM object or test double)."""

    current_tier: str
    previous_tier: Optional[str]
    pending_downgrade_effective_at: Optional[datetime]


def downgrade_pending(account: TierSnapshot, now: datetime) -> bool:
    effective_at = account.pending_downgrade_effective_at
    return effective_at is not None and now < effective_at


def resolve_effective_tier(account: TierSnapshot, now: datetime) -> Tier:
    """Return the tier governing `account` at instant `now`."""
    current = parse_tier(account.current_tier)
    if downgrade_pending(account, now) and account.previous_tier:
        return parse_tier(account.previous_tier)
    return current


def plan_for(account: TierSnapshot, now: datetime) -> PlanDefinition:
    return get_plan(resolve_effective_tier(account, now))
