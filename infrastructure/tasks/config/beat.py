"""Celery beat schedule configuration.

Reconciliation sweeps run periodically; intervals come from
``CELERY__RECONCILE_INTERVAL_SECONDS`` / ``CELERY__REDISPATCH_INTERVAL_SECONDS``.
"""
from __future__ import annotations

from core.config import settings

CELERY_BEAT_SCHEDULE = {
    "payments-reconcile-pending": {
        "task": "payments.reconcile_pending",
        "schedule": settings.celery.reconcile_interval_seconds,
        "options": {"queue": "default"},
    },
    "payments-redispatch-pending": {
        "task": "payments.redispatch_pending",
        "schedule": settings.celery.redispatch_interval_seconds,
        "options": {"queue": "default"},
    },
}
