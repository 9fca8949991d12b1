"""
HTTP client for the external executors that perform extraction and delivery.
"""

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from jobrelay.config.logging import get_logger
from jobrelay.config.settings import Settings
from jobrelay.v1.core.exceptions import (
    ExecutorHTTPError,
    ExecutorLogicError,
    ExecutorTimeoutError,
)
from jobrelay.v1.core.registries import ExecutorRegistry, executor_registry
from jobrelay.v1.jobs.models import JobRecord, SubjectKind

logger = get_logger(__name__)

# Response bodies quoted in error messages are truncated to this length
_ERROR_BODY_LIMIT = 500


@dataclass
class ExecutionResult:
    data: dict[str, Any] | None
    status_code: int
    response_time_ms: int


def build_request_body(job: JobRecord, triggered_at: datetime) -> dict[str, Any]:
    """Build the executor contract body for one attempt of a job."""
    return {
        "job_id": str(job.id),
        "subject_id": job.subject_id,
        "organization_id": job.organization_id,
        "payload": job.payload,
        "triggered_at": triggered_at.isoformat(),
    }


class HttpExecutor:
    """
    Executor reached with a POST of the job contract.

    A non-2xx status, an unparseable body or `success: false` are failures;
    all of them raise a retryable ExecutorError subclass.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float,
        auth_token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.timeout_s = timeout_s
        self.headers = {"Content-Type": "application/json"}
        if auth_token:
            self.headers["Authorization"] = f"Bearer {auth_token}"
        self._client = client

    async def execute(self, job: JobRecord) -> ExecutionResult:
        body = build_request_body(job, datetime.now(UTC))
        started = time.perf_counter()

        try:
            if self._client is not None:
                response = await self._post(self._client, body)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, body)
        except httpx.TimeoutException as e:
            raise ExecutorTimeoutError(
                f"Executor timed out after {self.timeout_s}s",
                details={"url": self.url, "error": str(e)},
            ) from e
        except httpx.RequestError as e:
            raise ExecutorHTTPError(
                f"Executor request failed: {e}", details={"url": self.url}
            ) from e

        response_time_ms = int((time.perf_counter() - started) * 1000)

        if not response.is_success:
            raise ExecutorHTTPError(
                f"Executor error: {response.status_code} {response.reason_phrase}"
                f" - {response.text[:_ERROR_BODY_LIMIT]}",
                status_code=response.status_code,
                details={"url": self.url, "response_time_ms": response_time_ms},
            )

        try:
            result = response.json()
        except ValueError:
            raise ExecutorLogicError(
                "Executor returned a non-JSON response",
                details={"url": self.url, "status_code": response.status_code},
            ) from None

        if not isinstance(result, dict) or not result.get("success"):
            error = result.get("error") if isinstance(result, dict) else None
            raise ExecutorLogicError(
                error or "Executor reported failure",
                details={"url": self.url, "response_time_ms": response_time_ms},
            )

        data = result.get("data")
        if data is not None and not isinstance(data, dict):
            data = {"value": data}

        return ExecutionResult(
            data=data,
            status_code=response.status_code,
            response_time_ms=response_time_ms,
        )

    async def _post(
        self, client: httpx.AsyncClient, body: dict[str, Any]
    ) -> httpx.Response:
        return await client.post(
            self.url, json=body, headers=self.headers, timeout=self.timeout_s
        )


def register_executors(
    settings: Settings,
    registry: ExecutorRegistry | None = None,
    client: httpx.AsyncClient | None = None,
) -> ExecutorRegistry:
    """Register the HTTP executors for every subject kind."""
    registry = registry or executor_registry

    extraction = HttpExecutor(
        settings.extraction_executor_url,
        settings.executor_timeout_s,
        settings.executor_auth_token,
        client=client,
    )
    delivery = HttpExecutor(
        settings.webhook_executor_url,
        settings.executor_timeout_s,
        settings.executor_auth_token,
        client=client,
    )

    registry.register(SubjectKind.CONTENT_TYPE.value, extraction)
    registry.register(SubjectKind.CONTENT_IDEA.value, extraction)
    registry.register(SubjectKind.WEBHOOK.value, delivery)

    logger.info("Executors registered", registered_executors=registry.list())
    return registry
