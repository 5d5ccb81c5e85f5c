"""Common base task for the payment jobs"""
from __future__ import annotations

from typing import Any, Optional

from celery import Task

from core.logging_config import get_logger
from domain.common.exceptions import BusinessException

logger = get_logger(__name__)


def _reference(args: Any, kwargs: Any) -> Optional[str]:
    """Per-payment tasks take the payment reference as their first argument."""
    if kwargs and "reference" in kwargs:
        return kwargs["reference"]
    if args and isinstance(args[0], str):
        return args[0]
    return None


class BaseTask(Task):
    """Structured logging for task outcomes, keyed by payment reference."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        fields = exc.log_fields() if isinstance(exc, BusinessException) else {"error": str(exc)}
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            reference=_reference(args, kwargs),
            **fields,
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning(
            "celery_task_retry",
            task_id=task_id,
            task_name=self.name,
            reference=_reference(args, kwargs),
            retries=self.request.retries,
            error=str(exc),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
            reference=_reference(args, kwargs),
            result=retval if isinstance(retval, dict) else None,
        )
        super().on_success(retval, task_id, args, kwargs)
