"""
Subject variants: the things a job works on behalf of.

Each subject kind knows how to validate its payload snapshot, which job column
references it, which execution endpoint it feeds, and how to annotate its own
record with a terminal job outcome.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import DateTime, Text, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from jobrelay.config.logging import get_logger
from jobrelay.config.settings import Settings
from jobrelay.infra.database import Base
from jobrelay.v1.core.exceptions import ValidationError
from jobrelay.v1.core.registries import subject_registry
from jobrelay.v1.jobs.models import JobStatus, SubjectKind

logger = get_logger(__name__)

EXTRACTION_ENDPOINT_ID = "content-extraction"


# Owning subject records


class ContentType(Base):
    """Content type whose uploaded examples are extracted into structure."""

    __tablename__ = "content_types"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    extraction_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    extraction_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ContentIdea(Base):
    """Content idea whose attached files/URLs are extracted."""

    __tablename__ = "content_ideas"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    extraction_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    extraction_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class Webhook(Base):
    """Third-party automation endpoint notified of in-app events."""

    __tablename__ = "webhooks"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


# Payload schemas


class ExtractionExample(BaseModel):
    type: Literal["file", "url"]
    value: str = Field(..., min_length=1)
    description: str | None = None


class ExtractionPayload(BaseModel):
    """Snapshot of the examples to extract, captured at enqueue time."""

    examples: list[ExtractionExample] = Field(..., min_length=1)
    trigger_time: datetime | None = None


class WebhookRetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay_ms: int = Field(default=1000, ge=0, le=3_600_000)
    exponential_backoff: bool = True


class WebhookPayload(BaseModel):
    """Event delivered to a webhook endpoint."""

    event_type: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    retry_config: WebhookRetryConfig | None = None


@dataclass(frozen=True)
class SubjectRef:
    """Discriminated reference to the subject of a job."""

    kind: SubjectKind
    id: str

    @property
    def active_key(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @property
    def job_column(self) -> str:
        return f"{self.kind.value}_id"


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int
    retry_delay_ms: int
    exponential_backoff: bool


class _SubjectVariant(ABC):
    kind: SubjectKind
    model: type[Base]
    payload_schema: type[BaseModel]
    status_field: str
    error_field: str

    @property
    def job_column(self) -> str:
        return f"{self.kind.value}_id"

    def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            parsed = self.payload_schema.model_validate(payload)
        except PydanticValidationError as e:
            errors = e.errors(
                include_url=False, include_context=False, include_input=False
            )
            raise ValidationError(
                f"Invalid payload for {self.kind.value} job",
                details={"errors": errors},
            ) from None
        return parsed.model_dump(mode="json", exclude_none=True)

    def retry_settings(
        self, payload: dict[str, Any], settings: Settings
    ) -> RetrySettings:
        return RetrySettings(
            max_attempts=settings.job_max_attempts,
            retry_delay_ms=0,
            exponential_backoff=False,
        )

    @abstractmethod
    def endpoint_id(self, subject_id: str) -> str:
        """Identify the execution target whose health this job feeds."""

    def terminal_values(self, status: str, error: str | None) -> dict[str, Any]:
        return {self.status_field: status, self.error_field: error}

    async def mark_terminal(
        self,
        session: AsyncSession,
        subject_id: str,
        status: str,
        error: str | None = None,
    ) -> bool:
        values = self.terminal_values(status, error)
        values["updated_at"] = datetime.now(UTC)
        result = await session.execute(
            update(self.model).where(self.model.id == subject_id).values(**values)
        )
        await session.commit()

        if result.rowcount == 0:
            logger.warning(
                "Subject record not found for terminal annotation",
                subject_kind=self.kind.value,
                subject_id=subject_id,
                status=status,
            )
            return False
        return True


class ContentTypeSubject(_SubjectVariant):
    kind = SubjectKind.CONTENT_TYPE
    model = ContentType
    payload_schema = ExtractionPayload
    status_field = "extraction_status"
    error_field = "extraction_error"

    def endpoint_id(self, subject_id: str) -> str:
        return EXTRACTION_ENDPOINT_ID


class ContentIdeaSubject(ContentTypeSubject):
    kind = SubjectKind.CONTENT_IDEA
    model = ContentIdea


class WebhookSubject(_SubjectVariant):
    kind = SubjectKind.WEBHOOK
    model = Webhook
    payload_schema = WebhookPayload
    status_field = "delivery_status"
    error_field = "last_error"

    def retry_settings(
        self, payload: dict[str, Any], settings: Settings
    ) -> RetrySettings:
        config = payload.get("retry_config")
        if config is None:
            return RetrySettings(
                max_attempts=settings.job_max_attempts,
                retry_delay_ms=settings.webhook_retry_delay_ms,
                exponential_backoff=settings.webhook_exponential_backoff,
            )
        # max_retries counts re-deliveries after the first attempt
        return RetrySettings(
            max_attempts=config["max_retries"] + 1,
            retry_delay_ms=config["retry_delay_ms"],
            exponential_backoff=config["exponential_backoff"],
        )

    def endpoint_id(self, subject_id: str) -> str:
        return subject_id

    def terminal_values(self, status: str, error: str | None) -> dict[str, Any]:
        delivery_status = "delivered" if status == JobStatus.COMPLETED.value else status
        return {self.status_field: delivery_status, self.error_field: error}


def get_variant(kind: SubjectKind | str) -> _SubjectVariant:
    return subject_registry.get(SubjectKind(kind).value)


def register_subject_variants() -> None:
    """Register every subject variant with the subject registry."""
    for variant in (ContentTypeSubject(), ContentIdeaSubject(), WebhookSubject()):
        if variant.kind.value not in subject_registry.list():
            subject_registry.register(variant.kind.value, variant)


# Auto-register variants when module is imported
register_subject_variants()
