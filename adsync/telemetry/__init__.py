"""
Telemetry Module
================

Error tracking for the sync workers and scheduler.

Components:
- sentry.py: Error tracking (Sentry)

Environment Variables:
- SENTRY_DSN: Sentry project DSN (optional; tracking disabled without it)
- ENVIRONMENT: Environment name attached to events

Usage:
    from adsync.telemetry import init_sentry, capture_exception
"""

from .sentry import capture_exception, init_sentry

__all__ = ["init_sentry", "capture_exception"]
