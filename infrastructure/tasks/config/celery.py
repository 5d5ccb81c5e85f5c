"""Celery application configuration"""
from __future__ import annotations

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE


logger = get_logger(__name__)

CELERY_IMPORTS = (
    "infrastructure.tasks.tasks",
)

# payments.verify is user facing (checkout redirects wait on it); sweeps are not
TASK_ROUTES = {
    "payments.verify": {"queue": "high"},
    "payments.*": {"queue": "default"},
}

_EAGER_ENVIRONMENTS = {"development", "dev", "test", "testing"}


def _always_eager() -> bool:
    if settings.celery.always_eager is not None:
        return settings.celery.always_eager
    return (settings.ENVIRONMENT or "production").lower() in _EAGER_ENVIRONMENTS


celery_app = Celery("coursepay")

celery_app.conf.update(
    broker_url=settings.celery.broker_url,
    result_backend=settings.celery.result_backend or settings.celery.broker_url,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Ack after the work is done so a lost worker re-queues the sweep.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    task_soft_time_limit=settings.celery.soft_time_limit,
    task_time_limit=settings.celery.time_limit,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_queues=(Queue("high"), Queue("default")),
    task_routes=TASK_ROUTES,
    beat_schedule=CELERY_BEAT_SCHEDULE,
    task_always_eager=_always_eager(),
    imports=CELERY_IMPORTS,
)

celery_app.autodiscover_tasks(packages=CELERY_IMPORTS)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=sender.conf.broker_url,
        result_backend=sender.conf.result_backend,
        eager=sender.conf.task_always_eager,
    )
