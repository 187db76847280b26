"""
Prometheus metrics for the live sync workers.

Labels are restricted to low-cardinality values:
- result:    success, rejected_immutable, rejected_stale, not_found, error
- source:    poller, push, backfill, manual, watchdog
- endpoint:  provider path without ids (data/update, match/detail_live, ...)
- job:       poller, window_sync, window_sync_catchup, finalizer_sweep, stale_watchdog,
             status_check, half_stats
- field:     statistics, incidents, trend_data, player_stats
- origin:    existing, live_cache, provider, unavailable, error
- action:    detected, reconciled, cooldown, force_ended, unresolved, skipped
- outcome:   changed, confirmed, disputed, no_data, error

Match ids, dates and payloads are never labels; use logs for those.
All record_* helpers are best-effort and never raise.
"""

import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# =============================================================================
# RECONCILER
# =============================================================================

reconcile_results_total = Counter(
    "livesync_reconcile_results_total",
    "Reconciler batch outcomes",
    ["result", "source"],
)

rejected_immutable_total = Counter(
    "livesync_rejected_immutable_total",
    "Status updates refused because the match is already FINISHED",
    ["source"],
)

# =============================================================================
# PROVIDER
# =============================================================================

provider_requests_total = Counter(
    "livesync_provider_requests_total",
    "Requests sent to the upstream provider",
    ["endpoint", "status_code"],
)

provider_latency_ms = Histogram(
    "livesync_provider_latency_ms",
    "Provider request latency in milliseconds",
    ["endpoint"],
    buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

provider_rate_limited_total = Counter(
    "livesync_provider_rate_limited_total",
    "Provider 429 responses",
    ["endpoint"],
)

# =============================================================================
# JOBS
# =============================================================================

job_runs_total = Counter(
    "livesync_job_runs_total",
    "Scheduler job executions",
    ["job", "status"],
)

job_duration_ms = Histogram(
    "livesync_job_duration_ms",
    "Scheduler job duration in milliseconds",
    ["job"],
    buckets=[100, 500, 1000, 5000, 15000, 60000, 300000, 900000],
)

job_last_success_timestamp = Gauge(
    "livesync_job_last_success_timestamp",
    "Unix time of the last successful run",
    ["job"],
)

finalizer_fields_total = Counter(
    "livesync_finalizer_fields_total",
    "Post-match derived fields by where they came from",
    ["field", "origin"],
)

# =============================================================================
# SAFETY NETS
# =============================================================================

stale_matches_total = Counter(
    "livesync_stale_matches_total",
    "Stuck-match watchdog actions",
    ["action"],
)

status_checks_total = Counter(
    "livesync_status_checks_total",
    "Proactive status check outcomes",
    ["outcome"],
)


def record_reconcile_result(result: str, source: str) -> None:
    try:
        reconcile_results_total.labels(result=result, source=source).inc()
        if result == "rejected_immutable":
            rejected_immutable_total.labels(source=source).inc()
    except Exception as e:
        logger.warning(f"Failed to record reconcile metric: {e}")


def record_provider_request(endpoint: str, status_code: int, latency_ms: float, is_rate_limited: bool = False) -> None:
    try:
        provider_requests_total.labels(endpoint=endpoint, status_code=str(status_code)).inc()
        provider_latency_ms.labels(endpoint=endpoint).observe(latency_ms)
        if is_rate_limited:
            provider_rate_limited_total.labels(endpoint=endpoint).inc()
    except Exception as e:
        logger.warning(f"Failed to record provider request metric: {e}")


def record_job_metric(job: str, status: str, duration_ms: float) -> None:
    try:
        job_runs_total.labels(job=job, status=status).inc()
        if duration_ms > 0:
            job_duration_ms.labels(job=job).observe(duration_ms)
        if status == "ok":
            job_last_success_timestamp.labels(job=job).set(time.time())
    except Exception as e:
        logger.warning(f"Failed to record job run metric: {e}")


def record_finalizer_field(field: str, origin: str) -> None:
    try:
        finalizer_fields_total.labels(field=field, origin=origin).inc()
    except Exception as e:
        logger.warning(f"Failed to record finalizer metric: {e}")


def record_stale_match(action: str) -> None:
    try:
        stale_matches_total.labels(action=action).inc()
    except Exception as e:
        logger.warning(f"Failed to record stale match metric: {e}")


def record_status_check(outcome: str) -> None:
    try:
        status_checks_total.labels(outcome=outcome).inc()
    except Exception as e:
        logger.warning(f"Failed to record status check metric: {e}")


def get_metrics_text() -> tuple[str, str]:
    """
    Generate Prometheus metrics text output.

    Returns:
        Tuple of (content, content_type)
    """
    return generate_latest(REGISTRY).decode("utf-8"), CONTENT_TYPE_LATEST
