"""Initial schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates all tables for PulseGuard:
- subjects, readings (vital-sign samples and their analysis)
- analysis_retry_jobs (durable retry queue)
- worker_leases (multi-instance drain coordination)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Apply migration: Initial schema."""
    reading_state = postgresql.ENUM(
        "normal", "warning", "alert", name="reading_state", create_type=False
    )
    reading_state.create(op.get_bind(), checkfirst=True)

    retry_job_status = postgresql.ENUM(
        "pending",
        "processing",
        "completed",
        "failed",
        name="retry_job_status",
        create_type=False,
    )
    retry_job_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "subjects",
        sa.Column(
            "subject_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("position", sa.String(100), nullable=False, server_default=""),
        sa.PrimaryKeyConstraint("subject_id", name=op.f("pk_subjects")),
    )

    op.create_table(
        "readings",
        sa.Column(
            "reading_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "recorded_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("temperature", sa.Float(), nullable=False),
        sa.Column("heart_rate", sa.Float(), nullable=False),
        sa.Column("blood_oxygen", sa.Float(), nullable=False),
        sa.Column("hydration", sa.Float(), nullable=False),
        sa.Column("respiration", sa.Float(), nullable=False),
        sa.Column("fatigue", sa.Float(), nullable=False),
        sa.Column("state", reading_state, nullable=False),
        sa.Column("analysis", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(
            ["subject_id"],
            ["subjects.subject_id"],
            name=op.f("fk_readings_subject_id_subjects"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("reading_id", name=op.f("pk_readings")),
    )
    op.create_index(
        op.f("ix_readings_subject_recorded"),
        "readings",
        ["subject_id", "recorded_at"],
        unique=False,
    )
    op.create_index(op.f("ix_readings_state"), "readings", ["state"], unique=False)

    op.create_table(
        "analysis_retry_jobs",
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("reading_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "status",
            retry_job_status,
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name=op.f("ck_analysis_retry_jobs_attempts_bounded"),
        ),
        sa.CheckConstraint(
            "max_attempts > 0",
            name=op.f("ck_analysis_retry_jobs_max_attempts_positive"),
        ),
        sa.ForeignKeyConstraint(
            ["reading_id"],
            ["readings.reading_id"],
            name=op.f("fk_analysis_retry_jobs_reading_id_readings"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_analysis_retry_jobs")),
    )
    op.create_index(
        op.f("ix_analysis_retry_jobs_due"),
        "analysis_retry_jobs",
        ["status", "next_retry_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_analysis_retry_jobs_updated_at"),
        "analysis_retry_jobs",
        ["updated_at"],
        unique=False,
    )
    # At most one active job per reading; concurrent enqueues collide here
    op.create_index(
        op.f("uq_analysis_retry_jobs_active_reading"),
        "analysis_retry_jobs",
        ["reading_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )

    op.create_table(
        "worker_leases",
        sa.Column("lease_name", sa.String(100), nullable=False),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column(
            "acquired_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lease_name", name=op.f("pk_worker_leases")),
    )


def downgrade() -> None:
    """Revert migration: Initial schema."""
    # Drop tables in reverse order (respecting foreign key dependencies)
    op.drop_table("worker_leases")
    op.drop_table("analysis_retry_jobs")
    op.drop_table("readings")
    op.drop_table("subjects")

    op.execute("DROP TYPE IF EXISTS retry_job_status")
    op.execute("DROP TYPE IF EXISTS reading_state")
