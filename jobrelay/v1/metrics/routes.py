"""
Endpoint health and metrics API endpoints.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jobrelay.infra.database import get_session
from jobrelay.v1.core.exceptions import create_success_response
from jobrelay.v1.metrics.service import HealthAggregator

router = APIRouter(prefix="/metrics", tags=["metrics"])


def get_aggregator(request: Request) -> HealthAggregator:
    return request.app.state.aggregator


@router.get("/endpoints", response_model=dict)
async def list_endpoint_health(
    session: AsyncSession = Depends(get_session),
    aggregator: HealthAggregator = Depends(get_aggregator),
) -> dict[str, Any]:
    """Rolling health of every endpoint that has executed a job."""
    endpoints = await aggregator.list_health(session)
    return create_success_response(
        data={"endpoints": [e.model_dump(mode="json") for e in endpoints]}
    )


@router.get("/endpoints/{endpoint_id}", response_model=dict)
async def get_endpoint_metrics(
    endpoint_id: str,
    window_minutes: int | None = Query(
        default=None, ge=1, le=10080, description="Look-back window in minutes"
    ),
    session: AsyncSession = Depends(get_session),
    aggregator: HealthAggregator = Depends(get_aggregator),
) -> dict[str, Any]:
    """Health counters plus windowed metrics for one endpoint."""
    health = await aggregator.get_health(session, endpoint_id)
    metrics = await aggregator.get_metrics(session, endpoint_id, window_minutes)
    return create_success_response(
        data={
            "health": health.model_dump(mode="json"),
            "metrics": metrics.model_dump(mode="json"),
        }
    )
