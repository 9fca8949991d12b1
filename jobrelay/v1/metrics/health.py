"""
Pure health and performance calculations for execution endpoints.
"""

from collections.abc import Iterable
from enum import Enum

HEALTHY_THRESHOLD = 95.0
WARNING_THRESHOLD = 80.0


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class LatencyBucket(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


# Upper bounds (exclusive) in milliseconds; anything slower is critical
_BUCKET_LIMITS_MS = (
    (LatencyBucket.EXCELLENT, 500),
    (LatencyBucket.GOOD, 1000),
    (LatencyBucket.FAIR, 2000),
    (LatencyBucket.POOR, 5000),
)

_BUCKET_POINTS = {
    LatencyBucket.EXCELLENT: 10,
    LatencyBucket.GOOD: 8,
    LatencyBucket.FAIR: 6,
    LatencyBucket.POOR: 3,
    LatencyBucket.CRITICAL: 1,
}


def success_rate(successful: int, total: int) -> float:
    """Percentage of successful executions, 0.0 without data."""
    if total <= 0:
        return 0.0
    return round(successful / total * 100, 2)


def classify_health(successful: int, total: int) -> HealthStatus:
    if total <= 0:
        return HealthStatus.UNKNOWN

    rate = successful / total * 100
    if rate >= HEALTHY_THRESHOLD:
        return HealthStatus.HEALTHY
    if rate >= WARNING_THRESHOLD:
        return HealthStatus.WARNING
    return HealthStatus.CRITICAL


def latency_bucket(response_time_ms: float) -> LatencyBucket:
    for bucket, limit in _BUCKET_LIMITS_MS:
        if response_time_ms < limit:
            return bucket
    return LatencyBucket.CRITICAL


def performance_score(rate: float, avg_response_time_ms: float, total: int) -> float:
    """
    Weighted 0-10 score: 70% reliability, 30% latency.

    Args:
        rate: Success rate percentage (0-100)
        avg_response_time_ms: Rolling average response time
        total: Number of executions behind the figures

    Returns:
        Score rounded to one decimal, 0.0 without data
    """
    if total <= 0:
        return 0.0

    points = _BUCKET_POINTS[latency_bucket(avg_response_time_ms)]
    return round(0.7 * (rate / 10) + 0.3 * points, 1)


def running_average(average: float, count: int, value: float) -> float:
    """Fold one more observation into an average over count observations."""
    return (average * count + value) / (count + 1)


def response_time_distribution(
    response_times_ms: Iterable[float],
) -> list[dict[str, float | int | str]]:
    """Count observations per latency bucket, with percentages."""
    counts = {bucket: 0 for bucket in LatencyBucket}
    total = 0
    for value in response_times_ms:
        counts[latency_bucket(value)] += 1
        total += 1

    return [
        {
            "bucket": bucket.value,
            "count": count,
            "percentage": round(count / total * 100, 2) if total else 0.0,
        }
        for bucket, count in counts.items()
    ]
