"""
Lecture Notes Backend — Account Usage Route
=============================================

What:  GET /api/accounts/{id}/usage — the numbers behind the usage meter
       and upgrade prompts.
How:   Read-only; an account that never subscribed or submitted gets an
       empty free-tier summary and is not created.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from lecturenotes.database import get_db_session
from lecturenotes.schemas.job import UsageSummaryResponse
from lecturenotes.services.job_service import job_service

router = APIRouter(prefix="/api/accounts", tags=["Accounts"])


@router.get(
    "/{account_id}/usage",
    response_model=UsageSummaryResponse,
    summary="Current period usage for an account",
)
async def get_usage(
    account_id: UUID,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
) -> UsageSummaryResponse:
    summary = await job_service.get_usage_summary(db=db, account_id=account_id)

    # Usage moves with every completed job
    response.headers["Cache-Control"] = "no-store"

    return UsageSummaryResponse(
        consumed=summary.consumed,
        limit=summary.limit,
        grace_remaining=summary.grace_remaining,
        grace_allowance=summary.grace_allowance,
        effective_tier=summary.effective_tier.value,
        files_this_period=summary.files_this_period,
        file_limit=summary.file_limit,
        period_key=summary.period_key,
    )
