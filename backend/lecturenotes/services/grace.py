"""
Lecture Notes Backend — Grace Allowance
=========================================

What:  The small overflow buffer paying tiers may dip into once their base
       period allotment is exhausted.
Rules:
    - Only tiers with grace_allowance > 0 may consume it.
    - Scoped to the CALENDAR month, independent of the billing-anchor
      period: grace is a courtesy buffer, not a paid entitlement.
    - Consumption is monotonic within a month, never negative, and an
      overdraw fails as a whole (no partial consumption).

Reading is pure: `GraceAllowance.current()` reports zero consumption when
the stored reset date is from an earlier month, without writing. The reset
is persisted by `apply_reset()`, which only UsageTracker.commit calls.
"""

from dataclasses import dataclass, replace
from datetime import date
from typing import Optional

from lecturenotes.exceptions import GraceOverdrawError
from lecturenotes.services.periods import month_start
from lecturenotes.services.plans import PlanDefinition


def needs_reset(grace_reset_date: date, today: date) -> bool:
    return grace_reset_date < month_start(today)


@dataclass(frozen=True)
class GraceAllowance:
    allowance: int
    consumed: int

    @classmethod
    def current(cls, account, plan: PlanDefinition, today: date) -> "GraceAllowance":
        consumed = 0 if needs_reset(account.grace_reset_date, today) else account.grace_consumed
        return cls(allowance=plan.grace_allowance, consumed=consumed)

    @property
    def enabled(self) -> bool:
        return self.allowance > 0

    @property
    def remaining(self) -> int:
        # A downgrade can leave consumption above the new, smaller allowance
        return max(0, self.allowance - self.consumed)

    def can_absorb(self, amount: int) -> bool:
        if amount <= 0:
            return amount == 0
        return self.enabled and self.consumed + amount <= self.allowance

    def consume(self, amount: int) -> "GraceAllowance":
        """Return the allowance after consuming `amount`, or raise."""
        if amount < 0:
            raise GraceOverdrawError(
                message="Grace consumption cannot be negative",
                context={"amount": amount},
            )
        if not self.can_absorb(amount):
            raise GraceOverdrawError(
                message="Grace allowance would be overdrawn",
                context={
                    "amount": amount,
                    "consumed": self.consumed,
                    "allowance": self.allowance,
                },
            )
        return replace(self, consumed=self.consumed + amount)


def apply_reset(account, today: date) -> bool:
    """Persistently reset the account's grace counter at month rollover."""
    if not needs_reset(account.grace_reset_date, today):
        return False
    account.grace_consumed = 0
    account.grace_reset_date = today
    return True


def allowance_for_month(account, plan: PlanDefinition, month: date) -> Optional[GraceAllowance]:
    """
    Grace state for calendar `month` as the account row still records it.

    The account keeps one counter: the month of `grace_reset_date`. An
    earlier month reads as untouched; a month whose counter has already
    been reset away returns None.
    """
    stored = month_start(account.grace_reset_date)
    if stored > month:
        return None
    consumed = account.grace_consumed if stored == month else 0
    return GraceAllowance(allowance=plan.grace_allowance, consumed=consumed)
