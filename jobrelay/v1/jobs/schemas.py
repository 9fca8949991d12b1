"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from jobrelay.v1.jobs.models import JobRecord, JobStatus, SubjectKind


class EnqueueRequest(BaseModel):
    """
    Schema for enqueueing a job.

    The subject is given either as subject_kind + subject_id or as exactly
    one of content_type_id, content_idea_id and webhook_id.
    """

    subject_kind: SubjectKind | None = Field(default=None, description="Subject kind")
    subject_id: str | None = Field(default=None, description="Subject identifier")
    content_type_id: str | None = None
    content_idea_id: str | None = None
    webhook_id: str | None = None
    organization_id: str = Field(..., min_length=1, description="Organization scope")
    payload: dict[str, Any] = Field(
        default_factory=dict, description="Snapshot of the work to perform"
    )


class EnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: UUID
    status: str
    deduplicated: bool = Field(
        default=False, description="Whether an active job was reused"
    )


class JobSnapshot(BaseModel):
    """Row snapshot of a job record, as served by the API and change events."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    subject_kind: SubjectKind
    subject_id: str
    content_type_id: str | None = None
    content_idea_id: str | None = None
    webhook_id: str | None = None
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    next_attempt_at: datetime | None = None
    cancel_requested: bool = False
    result: dict[str, Any] | None = None
    error_message: str | None = None
    last_attempt_at: datetime | None = None
    processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, job: JobRecord) -> "JobSnapshot":
        return cls.model_validate(job)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobSnapshot]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_subject_kind: dict[str, int]
    queue_depth: int  # pending + processing
    failed_last_hour: int


class CycleReport(BaseModel):
    """Outcome of one dispatch cycle."""

    skipped: bool = False
    aborted: bool = False
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    job_ids: list[UUID] = Field(default_factory=list)
