"""
Job system for extraction jobs and webhook deliveries.

This package provides:
- A durable job table where every state change is a conditional single-row update
- Idempotent enqueue with at most one active job per subject
- A dispatcher with bounded retries, per-job backoff and stale claim recovery
- Terminal status annotation of the owning subject records
"""
