"""Sentry initialization and configuration."""

import os
from typing import Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration

from extracts import __version__
from extracts.config import Settings

logger = structlog.get_logger(__name__)


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    """
    Filter out 4xx client errors from Sentry events.

    A wrong code length or a bad admin token is a caller mistake, not a fault.
    """
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        status_code = getattr(exc_value, "status_code", None)
        if isinstance(status_code, int) and 400 <= status_code < 500:
            return None

    response = event.get("contexts", {}).get("response", {})
    status_code = response.get("status_code", 0)
    if 400 <= status_code < 500:
        return None

    return event


def init_sentry(settings: Settings, component: str) -> bool:
    """
    Initialize Sentry if DSN is configured.

    Args:
        settings: Application settings
        component: "api" or "worker", set as a tag

    Returns True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        return False

    sentry_logging = LoggingIntegration(
        level=None,  # Keep normal log levels
        event_level="ERROR",  # Only ERROR+ become Sentry events
    )

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"registry-extracts@{__version__}"),
        integrations=[sentry_logging],
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=_before_send,
    )

    sentry_sdk.set_tag("service", "registry-extracts")
    sentry_sdk.set_tag("component", component)
    if settings.operator_username:
        sentry_sdk.set_tag("operator", settings.operator_username)

    logger.info(
        "sentry_initialized",
        environment=settings.sentry_environment,
        component=component,
    )
    return True
