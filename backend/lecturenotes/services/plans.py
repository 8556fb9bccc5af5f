"""
Lecture Notes Backend — Subscription Plan Catalog
===================================================

What:  The tiers a user can be on and the limits each tier grants.
Why:   One authoritative table of limits. Admission, commit and the usage
       summary all read from here, so a limit can never disagree between
       the check and the charge.

Units: megabytes of uploaded source material (audio or document size, rounded
up to whole MB by the uploader).

    ┌─────────┬──────────┬────────────┬──────────────┬───────┬──────────────┐
    │ tier    │ per file │ per period │ files/period │ grace │ formats      │
    ├─────────┼──────────┼────────────┼──────────────┼───────┼──────────────┤
    │ free    │ 60       │ 120        │ 2            │ 0     │ pdf          │
    │ student │ 300      │ 700        │ unlimited    │ 25    │ txt, md, pdf │
    └─────────┴──────────┴────────────┴──────────────┴───────┴──────────────┘
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional


class Tier(str, Enum):
    """Subscription tiers, lowest first."""

    FREE = "free"
    STUDENT = "student"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @property
    def is_paid(self) -> bool:
        return self is not Tier.FREE


_TIER_RANK = {Tier.FREE: 0, Tier.STUDENT: 1}

BASE_TIER = Tier.FREE


class OutputFormat(str, Enum):
    TXT = "txt"
    MD = "md"
    PDF = "pdf"


@dataclass(frozen=True)
class PlanDefinition:
    """
    Limits granted by one tier.

    max_files_per_period of None means unlimited.
    """

    tier: Tier
    per_file_limit: int
    per_period_limit: int
    max_files_per_period: Optional[int]
    grace_allowance: int
    output_formats: FrozenSet[OutputFormat]

    @property
    def grace_enabled(self) -> bool:
        return self.grace_allowance > 0

    @property
    def has_file_limit(self) -> bool:
        return self.max_files_per_period is not None


PLAN_CATALOG = {
    Tier.FREE: PlanDefinition(
        tier=Tier.FREE,
        per_file_limit=60,
        per_period_limit=120,
        max_files_per_period=2,
        grace_allowance=0,
        output_formats=frozenset({OutputFormat.PDF}),
    ),
    Tier.STUDENT: PlanDefinition(
        tier=Tier.STUDENT,
        per_file_limit=300,
        per_period_limit=700,
        max_files_per_period=None,
        grace_allowance=25,
        output_formats=frozenset({OutputFormat.TXT, OutputFormat.MD, OutputFormat.PDF}),
    ),
}

# Rendering order for a job's artifacts: local formats before Gotenberg.
FORMAT_ORDER = (OutputFormat.TXT, OutputFormat.MD, OutputFormat.PDF)


def get_plan(tier: Tier) -> PlanDefinition:
    return PLAN_CATALOG[Tier(tier)]


def parse_tier(value: Optional[str]) -> Tier:
    """Coerce a stored tier string; missing values mean the base tier."""
    if not value:
        return BASE_TIER
    return Tier(value)


def ordered_formats(formats) -> list:
    """Sort a collection of formats (enum or str) into rendering order."""
    wanted = {OutputFormat(f) for f in formats}
    return [f.value for f in FORMAT_ORDER if f in wanted]
