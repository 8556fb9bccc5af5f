"""
Lecture Notes Backend — Usage Period Arithmetic
=================================================

What:  Which usage period an instant belongs to, for a given tier.
How:
    - Base tier (or a paid tier with no billing anchor): calendar month.
    - Paid tier: monthly windows counted from the billing anchor. The n-th
      window starts at anchor + n calendar months, with the day clamped to
      the month length (anchor on the 31st → Feb 28/29, then Mar 31).
      Each boundary is computed from the anchor itself, so clamping never
      drifts the anchor day.

Period keys are the ISO date of the window start.
"""

import calendar
from datetime import date, datetime, timezone
from typing import Optional

from lecturenotes.services.plans import Tier


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Offset-less instants from callers are taken to be UTC."""
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def month_start(day: date) -> date:
    return day.replace(day=1)


def add_months(moment: datetime, months: int) -> datetime:
    """Shift `moment` by whole calendar months, clamping the day."""
    total = moment.month - 1 + months
    year = moment.year + total // 12
    month = total % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


def anchored_period_start(anchor: datetime, now: datetime) -> datetime:
    """Start of the billing month containing `now`."""
    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    start = add_months(anchor, months)
    if start > now:
        start = add_months(anchor, months - 1)
    return start


def period_start(tier: Tier, billing_anchor: Optional[datetime], now: datetime) -> date:
    if not tier.is_paid or billing_anchor is None or billing_anchor > now:
        return month_start(now.date())
    return anchored_period_start(billing_anchor, now).date()


def period_key(tier: Tier, billing_anchor: Optional[datetime], now: datetime) -> str:
    return period_start(tier, billing_anchor, now).isoformat()
