"""
Sentry integration for error tracking.

Initialised only when SENTRY_DSN is configured. Query strings carrying the
provider's user/secret are redacted before events leave the process.
"""

import logging
import os
import re
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from livesync.config import get_settings

logger = logging.getLogger(__name__)

_sentry_initialized = False

_SECRET_PARAMS = re.compile(r"(?i)(user|secret|token|api_key|password)=([^&]*)")


def scrub_sensitive_data(event: dict, hint: dict) -> Optional[dict]:
    """Redact provider credentials from request query strings and breadcrumbs."""
    try:
        request = event.get("request") or {}
        query_string = request.get("query_string")
        if isinstance(query_string, str) and query_string:
            request["query_string"] = _SECRET_PARAMS.sub(r"\1=[REDACTED]", query_string)
        if "data" in request:
            request["data"] = "[SCRUBBED]"
        event["request"] = request

        for crumb in (event.get("breadcrumbs") or {}).get("values", []):
            url = (crumb.get("data") or {}).get("url")
            if isinstance(url, str):
                crumb["data"]["url"] = _SECRET_PARAMS.sub(r"\1=[REDACTED]", url)
    except Exception as e:
        logger.warning(f"Sentry scrubbing error (continuing): {e}")

    return event


def init_sentry() -> bool:
    """Initialize Sentry SDK if SENTRY_DSN is configured. Returns True when active."""
    global _sentry_initialized

    if _sentry_initialized:
        return True

    settings = get_settings()
    dsn = settings.SENTRY_DSN
    if not dsn:
        logger.info("Sentry not configured (SENTRY_DSN not set)")
        return False

    environment = os.getenv("LIVESYNC_ENVIRONMENT", "development")
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.ERROR, event_level=logging.ERROR),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
        before_send=scrub_sensitive_data,
    )

    _sentry_initialized = True
    logger.info(f"Sentry initialized: env={environment}")
    return True


def capture_exception(exception: Exception, job_id: str = None, **extra_context):
    """
    Capture an exception to Sentry with optional job context.

    No-op unless init_sentry() succeeded.
    """
    if not _sentry_initialized:
        return

    with sentry_sdk.new_scope() as scope:
        if job_id:
            scope.set_tag("job_id", job_id)
        for key, value in extra_context.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
