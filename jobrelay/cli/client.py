"""HTTP client for the Job Relay API"""

from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel

console = Console()


class JobRelayError(Exception):
    """Base exception for Job Relay API errors"""

    pass


class APIClient:
    """HTTP client for the Job Relay API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: int = 30,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_headers = headers or {}
        self.client = httpx.Client(
            base_url=self.base_url, timeout=timeout, headers=self.default_headers
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle API response and extract data"""
        try:
            data = response.json()
        except ValueError:
            console.print(f"[red]Failed to parse response: {response.text}[/red]")
            raise JobRelayError(
                f"Invalid JSON response: {response.status_code}"
            ) from None

        if response.status_code >= 400:
            error_msg = data.get("error", {}).get("message", "Unknown error")
            console.print(Panel(f"[red]{error_msg}[/red]", title="API Error"))
            raise JobRelayError(f"API Error {response.status_code}: {error_msg}")

        if not data.get("ok", False):
            error_msg = data.get("error", {}).get("message", "Request failed")
            console.print(Panel(f"[red]{error_msg}[/red]", title="Request Failed"))
            raise JobRelayError(error_msg)
        return data.get("data")

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Make GET request"""
        try:
            response = self.client.get(f"/v1{path}", params=_clean(params))
            return self._handle_response(response)
        except httpx.RequestError as e:
            console.print(f"[red]Connection error: {e}[/red]")
            raise JobRelayError(f"Connection failed: {e}") from None

    def post(
        self,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make POST request"""
        try:
            response = self.client.post(
                f"/v1{path}", json=json, params=_clean(params)
            )
            return self._handle_response(response)
        except httpx.RequestError as e:
            console.print(f"[red]Connection error: {e}[/red]")
            raise JobRelayError(f"Connection failed: {e}") from None


class JobRelayClient(APIClient):
    """Endpoint wrappers for the Job Relay API"""

    def health_check(self) -> dict[str, Any]:
        return self.get("/healthz")

    def enqueue(
        self,
        subject_kind: str,
        subject_id: str,
        organization_id: str,
        payload: dict[str, Any],
        on_conflict: str | None = None,
    ) -> dict[str, Any]:
        body = {
            "subject_kind": subject_kind,
            "subject_id": subject_id,
            "organization_id": organization_id,
            "payload": payload,
        }
        return self.post("/jobs", json=body, params={"on_conflict": on_conflict})

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.get(f"/jobs/{job_id}")

    def list_jobs(
        self,
        organization_id: str | None = None,
        status: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        params = {"organization_id": organization_id, "status": status, "limit": limit}
        return self.get("/jobs", params=params)

    def get_stats(self, organization_id: str | None = None) -> dict[str, Any]:
        return self.get(
            "/jobs/stats/overview", params={"organization_id": organization_id}
        )

    def get_subject_status(self, subject_id: str) -> dict[str, Any] | None:
        return self.get(f"/jobs/subjects/{subject_id}")

    def dispatch_subject(
        self, subject_id: str, subject_kind: str | None = None
    ) -> dict[str, Any]:
        return self.post(
            f"/jobs/subjects/{subject_id}/dispatch",
            params={"subject_kind": subject_kind},
        )

    def retry_job(self, job_id: str) -> dict[str, Any]:
        return self.post(f"/jobs/{job_id}/retry")

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        return self.post(f"/jobs/{job_id}/cancel")

    def list_endpoint_health(self) -> dict[str, Any]:
        return self.get("/metrics/endpoints")

    def get_endpoint_metrics(
        self, endpoint_id: str, window_minutes: int | None = None
    ) -> dict[str, Any]:
        return self.get(
            f"/metrics/endpoints/{endpoint_id}",
            params={"window_minutes": window_minutes},
        )


def _clean(params: dict[str, Any] | None) -> dict[str, Any] | None:
    if params is None:
        return None
    return {key: value for key, value in params.items() if value is not None}
