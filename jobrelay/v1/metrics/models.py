"""
Endpoint health and execution log models.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from jobrelay.infra.database import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EndpointHealth(Base):
    """Rolling execution counters for one execution target."""

    __tablename__ = "endpoint_health"

    endpoint_id: Mapped[str] = mapped_column(Text, primary_key=True)
    total_executions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_executions: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    failed_executions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_response_time_ms: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0
    )
    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    last_execution_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_success_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_failure_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ExecutionLog(Base):
    """One executor call and its outcome."""

    __tablename__ = "execution_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    endpoint_id: Mapped[str] = mapped_column(Text, nullable=False)
    job_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    organization_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("ix_execution_logs_endpoint_created", "endpoint_id", "created_at"),
    )
