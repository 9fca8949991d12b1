"""create job relay tables

Revision ID: 3f7a2c91d4e8
Revises:
Create Date: 2026-10-17 09:12:40.318204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f7a2c91d4e8"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _subject_table(name: str, label_column: str, status_column: str, error_column: str):
    op.create_table(
        name,
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("organization_id", sa.Text, nullable=False),
        sa.Column(label_column, sa.Text, nullable=True),
        sa.Column(status_column, sa.Text, nullable=True),
        sa.Column(error_column, sa.Text, nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )


def upgrade() -> None:
    """Upgrade schema."""
    # Owning subject records annotated with terminal job outcomes
    _subject_table("content_types", "name", "extraction_status", "extraction_error")
    _subject_table("content_ideas", "title", "extraction_status", "extraction_error")
    _subject_table("webhooks", "url", "delivery_status", "last_error")

    op.create_table(
        "job_records",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id", sa.Text, nullable=False, comment="Organization scope"
        ),
        sa.Column("content_type_id", sa.Text, nullable=True),
        sa.Column("content_idea_id", sa.Text, nullable=True),
        sa.Column("webhook_id", sa.Text, nullable=True),
        sa.Column(
            "active_key",
            sa.Text,
            nullable=True,
            comment="kind:subject_id while pending/processing, NULL once terminal",
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Snapshot captured at enqueue time",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            comment="Job status: pending|processing|completed|failed",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            comment="Number of claims made",
        ),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column(
            "retry_delay_ms",
            sa.Integer,
            nullable=False,
            comment="Base delay before re-claim",
        ),
        sa.Column("exponential_backoff", sa.Boolean, nullable=False),
        sa.Column(
            "next_attempt_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            comment="Earliest time the job may be claimed",
        ),
        sa.Column("cancel_requested", sa.Boolean, nullable=False),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("last_attempt_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="job_records_status_check",
        ),
        sa.CheckConstraint(
            "(CASE WHEN content_type_id IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN content_idea_id IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN webhook_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="job_records_single_subject_check",
        ),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name="job_records_attempts_check",
        ),
        sa.UniqueConstraint("active_key", name="uq_job_records_active_key"),
    )

    # Claim scan: pending rows due now, oldest first
    op.create_index(
        "ix_job_records_claimable",
        "job_records",
        ["status", "next_attempt_at", "created_at"],
    )
    op.create_index(
        "ix_job_records_organization",
        "job_records",
        ["organization_id", "created_at"],
    )

    op.create_table(
        "endpoint_health",
        sa.Column("endpoint_id", sa.Text, primary_key=True),
        sa.Column("total_executions", sa.Integer, nullable=False),
        sa.Column("successful_executions", sa.Integer, nullable=False),
        sa.Column("failed_executions", sa.Integer, nullable=False),
        sa.Column("average_response_time_ms", sa.Float, nullable=False),
        sa.Column("consecutive_failures", sa.Integer, nullable=False),
        sa.Column("last_execution_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )

    op.create_table(
        "execution_logs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("endpoint_id", sa.Text, nullable=False),
        sa.Column("job_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("organization_id", sa.Text, nullable=True),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column("response_time_ms", sa.Integer, nullable=False),
        sa.Column("status_code", sa.Integer, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_execution_logs_endpoint_created",
        "execution_logs",
        ["endpoint_id", "created_at"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_execution_logs_endpoint_created", table_name="execution_logs")
    op.drop_table("execution_logs")
    op.drop_table("endpoint_health")
    op.drop_index("ix_job_records_organization", table_name="job_records")
    op.drop_index("ix_job_records_claimable", table_name="job_records")
    op.drop_table("job_records")
    op.drop_table("webhooks")
    op.drop_table("content_ideas")
    op.drop_table("content_types")
