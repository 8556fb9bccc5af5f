"""Create quota accounting and job pipeline tables

Revision ID: 001
Revises: None
Create Date: 2025-03-01 00:00:00.000000+00:00

What:  accounts, subscription_events, usage_periods, usage_commits, jobs,
       job_stage_events, job_artifacts.
How:   PostgreSQL types: UUID keys, TIMESTAMP WITH TIME ZONE, JSONB for the
       frozen output formats and the structured notes.

Rollback: downgrade() drops every table (destructive, all data lost).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # ── accounts ──────────────────────────────────────────────────────────
    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "current_tier",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'free'"),
            comment="Tier recorded by the provider; lower tier during a pending downgrade",
        ),
        sa.Column(
            "previous_tier",
            sa.String(20),
            nullable=True,
            comment="Tier that governs until pending_downgrade_effective_at",
        ),
        sa.Column("pending_downgrade_effective_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("billing_anchor", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("grace_consumed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "grace_reset_date",
            sa.Date(),
            nullable=False,
            server_default=sa.text("CURRENT_DATE"),
        ),
        sa.Column(
            "over_quota_rejections",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
            comment="Commits lost to a concurrent job (audit counter)",
        ),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
            comment="Optimistic concurrency version",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_accounts"),
        sa.CheckConstraint("grace_consumed >= 0", name="ck_accounts_grace_nonnegative"),
    )

    # ── subscription_events ───────────────────────────────────────────────
    op.create_table(
        "subscription_events",
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("tier", sa.String(20), nullable=False),
        sa.Column("effective_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "received_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("event_id", name="pk_subscription_events"),
    )
    op.create_index(
        "ix_subscription_events_account_id", "subscription_events", ["account_id"]
    )

    # ── usage_periods ─────────────────────────────────────────────────────
    op.create_table(
        "usage_periods",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "period_key",
            sa.String(10),
            nullable=False,
            comment="ISO date of the period start",
        ),
        sa.Column("consumed_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consumed_file_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_usage_periods"),
        sa.UniqueConstraint("account_id", "period_key", name="uq_usage_periods_account_period"),
    )

    # ── usage_commits ─────────────────────────────────────────────────────
    op.create_table(
        "usage_commits",
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("period_key", sa.String(10), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("grace_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("file_counted", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "committed_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("job_id", name="pk_usage_commits"),
    )
    op.create_index(
        "idx_usage_commits_account_period", "usage_commits", ["account_id", "period_key"]
    )

    # ── jobs ──────────────────────────────────────────────────────────────
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("audio_ref", sa.String(512), nullable=True),
        sa.Column("document_ref", sa.String(512), nullable=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("subject", sa.String(100), nullable=True),
        sa.Column("requested_amount", sa.Integer(), nullable=False, comment="Upload size in MB"),
        sa.Column("tier_at_submission", sa.String(20), nullable=False),
        sa.Column("period_key", sa.String(10), nullable=False),
        sa.Column(
            "admitted_grace_overflow", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("grace_month", sa.Date(), nullable=False),
        sa.Column("file_counted", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("output_formats", postgresql.JSONB(), nullable=False),
        sa.Column(
            "current_stage",
            sa.String(32),
            nullable=False,
            server_default=sa.text("'queued'"),
        ),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("failure_stage", sa.String(32), nullable=True),
        sa.Column("failure_code", sa.String(64), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("transcript", sa.Text(), nullable=True),
        sa.Column("supplement_text", sa.Text(), nullable=True),
        sa.Column("structured_notes", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_jobs"),
        sa.CheckConstraint(
            "audio_ref IS NOT NULL OR document_ref IS NOT NULL",
            name="ck_jobs_has_input",
        ),
        sa.CheckConstraint("requested_amount > 0", name="ck_jobs_requested_positive"),
    )
    op.create_index("idx_jobs_account_created", "jobs", ["account_id", "created_at"])
    # Startup resume scans for non-terminal jobs
    op.create_index("idx_jobs_current_stage", "jobs", ["current_stage"])

    # ── job_stage_events ──────────────────────────────────────────────────
    op.create_table(
        "job_stage_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("stage", sa.String(32), nullable=False),
        sa.Column(
            "outcome",
            sa.String(16),
            nullable=True,
            comment="NULL while the stage's external call is in flight",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column(
            "started_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_job_stage_events"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("job_id", "sequence", name="uq_job_stage_events_sequence"),
    )

    # ── job_artifacts ─────────────────────────────────────────────────────
    op.create_table(
        "job_artifacts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("format", sa.String(10), nullable=False),
        sa.Column("storage_ref", sa.String(512), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_job_artifacts"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("job_id", "format", name="uq_job_artifacts_format"),
    )


def downgrade() -> None:
    op.drop_table("job_artifacts")
    op.drop_table("job_stage_events")
    op.drop_index("idx_jobs_current_stage", table_name="jobs")
    op.drop_index("idx_jobs_account_created", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("idx_usage_commits_account_period", table_name="usage_commits")
    op.drop_table("usage_commits")
    op.drop_table("usage_periods")
    op.drop_index("ix_subscription_events_account_id", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_table("accounts")
