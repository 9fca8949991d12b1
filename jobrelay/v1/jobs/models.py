"""
Job record model: the durable queue and sole source of truth for job state.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobrelay.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class SubjectKind(str, Enum):
    """The kinds of subject a job can reference."""

    CONTENT_TYPE = "content_type"
    CONTENT_IDEA = "content_idea"
    WEBHOOK = "webhook"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobRecord(Base):
    """
    Persisted unit of retryable asynchronous work.

    Exactly one of content_type_id, content_idea_id and webhook_id is set; the
    populated column tags the job's subject kind. active_key mirrors that
    reference while the job is pending or processing and is cleared on the
    terminal transition, so the unique index admits one active job per subject.
    """

    __tablename__ = "job_records"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Organization scope"
    )

    # Subject reference
    content_type_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_idea_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    active_key: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        unique=True,
        comment="kind:subject_id while pending/processing, NULL once terminal",
    )

    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Snapshot captured at enqueue time",
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|processing|completed|failed",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of claims made"
    )
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_delay_ms: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Base delay before re-claim"
    )
    exponential_backoff: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        comment="Earliest time the job may be claimed",
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Results
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="job_records_status_check",
        ),
        CheckConstraint(
            "(CASE WHEN content_type_id IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN content_idea_id IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN webhook_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="job_records_single_subject_check",
        ),
        CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name="job_records_attempts_check",
        ),
        Index("ix_job_records_claimable", "status", "next_attempt_at", "created_at"),
        Index("ix_job_records_organization", "organization_id", "created_at"),
    )

    @property
    def subject_kind(self) -> SubjectKind:
        if self.content_type_id is not None:
            return SubjectKind.CONTENT_TYPE
        if self.content_idea_id is not None:
            return SubjectKind.CONTENT_IDEA
        return SubjectKind.WEBHOOK

    @property
    def subject_id(self) -> str:
        return self.content_type_id or self.content_idea_id or self.webhook_id

    def is_active(self) -> bool:
        """Check if job is in an active state (pending, processing)."""
        return self.status in ACTIVE_STATUSES

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
