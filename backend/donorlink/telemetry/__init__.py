"""
Telemetry Module
================

Error tracking for the donorlink API and worker.

Components:
- sentry.py: Error tracking (no-op without SENTRY_DSN)

Usage:
    from donorlink.telemetry import init_observability, capture_exception

    init_observability()
"""

from donorlink.telemetry.sentry import (
    init_sentry,
    is_enabled,
    set_user_context,
    clear_user_context,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """Initialize observability tools; returns per-tool status."""
    return {"sentry": init_sentry()}


__all__ = [
    "init_observability",
    "init_sentry",
    "is_enabled",
    "set_user_context",
    "clear_user_context",
    "capture_exception",
    "capture_message",
]
