"""Job Relay - retryable extraction jobs and webhook deliveries."""

__version__ = "1.0.0"
