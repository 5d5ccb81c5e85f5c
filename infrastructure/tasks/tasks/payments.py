"""Payment reconciliation Celery tasks.

Every task owns its resources for the duration of one ``asyncio.run``: a
fresh engine (pooled connections are bound to the loop that opened them) and
a gateway client that is closed before the loop ends.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Optional

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker

from application.services.refund_service import RefundService
from application.services.verification_service import PaymentVerificationService
from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from infrastructure.database import build_engine
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import make_uow_factory
from ..utils.base_task import BaseTask

logger = get_logger(__name__)


@asynccontextmanager
async def verification_service() -> AsyncIterator[PaymentVerificationService]:
    engine = build_engine(settings.database.url, echo=settings.database.echo)
    gateway = get_payment_gateway()
    try:
        uow_factory = make_uow_factory(async_sessionmaker(bind=engine, expire_on_commit=False))
        refunds = RefundService(uow_factory=uow_factory, gateway=gateway)
        yield PaymentVerificationService(uow_factory=uow_factory, gateway=gateway, refund_service=refunds)
    finally:
        await gateway.aclose()
        await engine.dispose()


@shared_task(
    name="payments.verify",
    bind=True,
    base=BaseTask,
    max_retries=3,
    default_retry_delay=30,
)
def verify_payment(self, reference: str) -> dict[str, Any]:
    """Verify one payment with the provider and settle it."""
    async def _run():
        async with verification_service() as service:
            return await service.verify_and_settle(reference)

    try:
        result = asyncio.run(_run())
    except BusinessException as exc:
        # provider outcome unknown, the payment is still PENDING
        if exc.retryable:
            raise self.retry(exc=exc)
        raise
    logger.info("payment_verify_task_done", reference=reference, status=result.payment_status.value)
    return result.model_dump(mode="json")


@shared_task(name="payments.redispatch", bind=True, base=BaseTask)
def redispatch_payment(self, reference: str) -> dict[str, Any]:
    async def _run():
        async with verification_service() as service:
            return await service.redispatch(reference)

    return asyncio.run(_run()).model_dump(mode="json")


@shared_task(name="payments.reconcile_pending", bind=True, base=BaseTask)
def reconcile_pending(self, older_than_minutes: Optional[int] = None, limit: Optional[int] = None) -> dict[str, int]:
    """Sweep PENDING payments older than the threshold through verification."""
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes else None

    async def _run():
        async with verification_service() as service:
            return await service.reconcile_pending(older_than=older_than, limit=limit)

    return asyncio.run(_run())


@shared_task(name="payments.redispatch_pending", bind=True, base=BaseTask)
def redispatch_pending(self, limit: Optional[int] = None) -> dict[str, int]:
    """Retry side effects for PAID payments that were never dispatched."""
    async def _run():
        async with verification_service() as service:
            return await service.redispatch_pending(limit=limit)

    return asyncio.run(_run())
