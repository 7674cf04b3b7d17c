"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the arq worker.

Related files:
- donorlink/main.py: Initializes Sentry in create_app
- donorlink/workers/arq_worker.py: Initializes Sentry on worker startup and
  reports per-chunk / per-organization failures
- donorlink/deps.py: Sets user context after authentication

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def get_sentry_dsn() -> Optional[str]:
    return os.environ.get("SENTRY_DSN")


def is_enabled() -> bool:
    return _initialized


def init_sentry() -> bool:
    """
    Initialize the Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    global _initialized

    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,  # Donor emails must never leave the system
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False

    _initialized = True
    logger.debug("[SENTRY] Initialized for %s environment", environment)
    return True


def set_user_context(
    user_id: str,
    email: Optional[str] = None,
    organization_id: Optional[str] = None,
) -> None:
    """Attach the authenticated user to subsequent events in this request."""
    if not _initialized:
        return
    sentry_sdk.set_user({
        "id": user_id,
        "email": email,
        "organization_id": organization_id,
    })


def clear_user_context() -> None:
    if not _initialized:
        return
    sentry_sdk.set_user(None)


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception.

    Use at unit-of-work boundaries (chunk, organization, event) where the
    failure is recorded and processing continues.

    Example:
        except ProcessorExportError as e:
            capture_exception(e, extra={"operation": "reconcile", "organization_id": org_id})
    """
    if not _initialized:
        logger.debug("[SENTRY] Disabled, not reporting: %s", exception)
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Report a notable non-exception event (e.g. reconciliation drift)."""
    if not _initialized:
        logger.log(logging.getLevelName(level.upper()), "Message (Sentry disabled): %s", message)
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)
