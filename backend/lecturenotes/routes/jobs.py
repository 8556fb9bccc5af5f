"""
Lecture Notes Backend — Job Route Handlers
============================================

What:  POST /api/jobs (submit), GET /api/jobs/{id} (status),
       POST /api/jobs/{id}/cancel (cancel).
How:   Thin handlers: validate the body, delegate to JobService, hand the
       admitted job to the JobRunner held on app.state.
Who:   Called by the upload front end after it stored the input files.

Submission Flow:
    1. JobCreateRequest validates shape (ids, size, title length)
    2. JobService admits or rejects (quota errors → 402, before any Job row)
    3. The transaction is committed HERE, before scheduling, so the
       background task can never look up a job that is not yet visible
    4. 202 Accepted; the client polls GET /api/jobs/{id}
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from lecturenotes.database import get_db_session
from lecturenotes.schemas.job import (
    ErrorResponse,
    JobAcceptedResponse,
    JobCreateRequest,
    JobStatusResponse,
)
from lecturenotes.services.job_runner import JobRunner
from lecturenotes.services.job_service import job_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Jobs"])


def get_job_runner(request: Request) -> JobRunner:
    """The process-wide runner created in the app lifespan."""
    return request.app.state.job_runner


@router.post(
    "/jobs",
    status_code=202,
    response_model=JobAcceptedResponse,
    responses={
        202: {"description": "Job admitted and queued", "model": JobAcceptedResponse},
        400: {"description": "Invalid input descriptor", "model": ErrorResponse},
        402: {"description": "Quota, per-file or file-count limit hit", "model": ErrorResponse},
    },
    summary="Submit a lecture for note generation",
)
async def submit_job(
    body: JobCreateRequest,
    db: AsyncSession = Depends(get_db_session),
    runner: JobRunner = Depends(get_job_runner),
) -> JobAcceptedResponse:
    job, decision = await job_service.submit_job(
        db=db,
        account_id=body.account_id,
        size_mb=body.size_mb,
        title=body.title,
        audio_ref=body.audio_ref,
        document_ref=body.document_ref,
        subject=body.subject,
    )
    await db.commit()
    runner.submit(job.id)

    return JobAcceptedResponse(
        job_id=job.id,
        stage=job.current_stage,
        output_formats=list(job.output_formats),
        uses_grace=decision.uses_grace,
    )


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    responses={404: {"description": "Job not found", "model": ErrorResponse}},
    summary="Get a job's stage, history and artifacts",
)
async def get_job(
    job_id: UUID,
    db: AsyncSession = Depends(get_db_session),
) -> JobStatusResponse:
    job = await job_service.get_job_status(db=db, job_id=job_id)
    return JobStatusResponse.model_validate(job)


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=JobStatusResponse,
    responses={
        404: {"description": "Job not found", "model": ErrorResponse},
        409: {"description": "Job already completed or failed", "model": ErrorResponse},
    },
    summary="Cancel a job",
    description=(
        "A queued job fails at once with code 'cancelled'. A running job is "
        "flagged and stops at the next stage boundary; the stage in progress "
        "finishes first."
    ),
)
async def cancel_job(
    job_id: UUID,
    db: AsyncSession = Depends(get_db_session),
    runner: JobRunner = Depends(get_job_runner),
) -> JobStatusResponse:
    job = await job_service.cancel_job(db=db, pipeline=runner.pipeline, job_id=job_id)
    await db.commit()
    return JobStatusResponse.model_validate(job)
