"""
Lecture Notes Backend — Pydantic Request/Response Schemas
===========================================================

What:  Pydantic models defining the HTTP contract for jobs, usage and
       subscription webhooks.
Why:   Strict input validation, automatic serialization, and OpenAPI doc
       generation.
How:   FastAPI validates request bodies against these models and serializes
       responses from ORM objects (`from_attributes`) or service results.

Schemas stay separate from the SQLAlchemy models: the stage history and
failure fields are exposed, while admission internals (grace overflow,
file_counted) are not.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from lecturenotes.services.periods import as_utc


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class JobCreateRequest(BaseModel):
    """
    What:  Input descriptor for a new notes job.
    Who:   Sent to POST /api/jobs by the upload front end after it stored
           the files under the shared storage root.

    size_mb is the combined upload size rounded up to whole megabytes; it is
    the amount charged against the account's quota.
    """
    account_id: uuid.UUID = Field(description="Account submitting the upload")
    audio_ref: Optional[str] = Field(default=None, description="Stored audio file ref")
    document_ref: Optional[str] = Field(default=None, description="Stored document ref")
    size_mb: int = Field(ge=1, description="Upload size in whole MB")
    title: str = Field(min_length=1, max_length=200)
    subject: Optional[str] = Field(default=None, max_length=100)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title must not be blank")
        return v

    @model_validator(mode="after")
    def require_input(self) -> "JobCreateRequest":
        if not (self.audio_ref or self.document_ref):
            raise ValueError("Provide audio_ref, document_ref, or both")
        return self


class SubscriptionWebhookRequest(BaseModel):
    """
    What:  A tier-change event relayed from the subscription provider.

    type: activated | updated | cancelled
    effective_at: when a downgrade takes effect (end of the paid period);
                  omitted means "now"
    """
    event_id: str = Field(min_length=1, max_length=255)
    account_id: uuid.UUID
    type: str
    tier: Optional[str] = None
    effective_at: Optional[datetime] = None
    billing_anchor: Optional[datetime] = None

    @field_validator("effective_at", "billing_anchor")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class JobAcceptedResponse(BaseModel):
    """Returned by POST /api/jobs with HTTP 202 Accepted."""
    job_id: uuid.UUID
    stage: str
    output_formats: List[str]
    uses_grace: bool = Field(description="Admitted only thanks to the grace allowance")


class StageEventResponse(BaseModel):
    sequence: int
    stage: str
    outcome: Optional[str] = Field(default=None, description="Null while in flight")
    attempts: int
    detail: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ArtifactResponse(BaseModel):
    format: str
    storage_ref: str
    size_bytes: int

    model_config = {"from_attributes": True}


class JobStatusResponse(BaseModel):
    """
    What:  Current stage, ordered history, artifacts and failure of one job.
    Who:   Returned by GET /api/jobs/{id}; polled by the front end.
    """
    id: uuid.UUID
    account_id: uuid.UUID
    title: str
    subject: Optional[str] = None
    stage: str = Field(validation_alias="current_stage")
    output_formats: List[str]
    history: List[StageEventResponse] = Field(validation_alias="stage_events")
    artifacts: List[ArtifactResponse]
    failure_stage: Optional[str] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    cancel_requested: bool
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "populate_by_name": True}


class UsageSummaryResponse(BaseModel):
    """Returned by GET /api/accounts/{id}/usage. Amounts in MB."""
    consumed: int
    limit: int
    grace_remaining: int
    grace_allowance: int
    effective_tier: str
    files_this_period: int
    file_limit: Optional[int] = Field(description="Null means unlimited")
    period_key: str


class SubscriptionWebhookResponse(BaseModel):
    event_id: str
    applied: bool = Field(description="False when the event was a duplicate")
    action: str
    current_tier: str
    effective_tier: str


# ══════════════════════════════════════════════════════════════════════════
# Error / Health Models
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Example (quota rejection, HTTP 402):
        {
            "error": "quota_exceeded",
            "message": "Adding 30MB would exceed monthly limit of 700MB (690MB used)",
            "details": {"tier": "student", "current_usage": 690, "limit": 700,
                        "grace_remaining": 0, "requested": 30},
            "request_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    gemini: str = Field(description="Gemini API status: available, unavailable, circuit_open")
    active_jobs: int = Field(description="Pipeline tasks running in this process")
    uptime_seconds: float = Field(description="Seconds since service started")
