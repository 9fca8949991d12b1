"""
Metrics Pydantic schemas.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from jobrelay.v1.metrics.health import HealthStatus


class EndpointHealthResponse(BaseModel):
    """Rolling health of one execution endpoint."""

    model_config = ConfigDict(from_attributes=True)

    endpoint_id: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    average_response_time_ms: float
    consecutive_failures: int
    success_rate: float
    health_status: HealthStatus
    performance_score: float
    last_execution_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None


class DistributionEntry(BaseModel):
    bucket: str
    count: int
    percentage: float


class EndpointMetricsResponse(BaseModel):
    """Metrics for one endpoint computed from its execution logs."""

    endpoint_id: str
    window_minutes: int | None = Field(
        default=None, description="Look-back window; None covers all logs"
    )
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    avg_response_time_ms: float
    health_status: HealthStatus
    performance_score: float
    distribution: list[DistributionEntry]
