"""
Telemetry for the live sync workers.

Provides Prometheus metrics for reconciler outcomes, provider requests and
scheduler jobs, plus optional Sentry error capture.
"""

from livesync.telemetry.metrics import (
    get_metrics_text,
    record_finalizer_field,
    record_job_metric,
    record_provider_request,
    record_reconcile_result,
    record_stale_match,
    record_status_check,
)

__all__ = [
    "get_metrics_text",
    "record_finalizer_field",
    "record_job_metric",
    "record_provider_request",
    "record_reconcile_result",
    "record_stale_match",
    "record_status_check",
]
