"""
Side-effect dispatcher run once a payment has been settled as PAID.

Handlers are keyed by PaymentType and must be idempotent: the dispatcher may
run again for the same payment through redispatch or the reconciliation task.
A handler failure never touches the payment status; it surfaces as
DispatchFailure and the payment stays undispatched until the next attempt.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentStatus, PaymentType
from domain.payment.exceptions import DispatchFailure


logger = get_logger(__name__)


class SideEffectHandler(ABC):
    payment_type: PaymentType

    @abstractmethod
    async def apply(self, payment: Payment, uow: AbstractUnitOfWork) -> Optional[str]:
        """Apply the side effect; returns the enrollment id when one was created or found."""


class ApplicationFeeHandler(SideEffectHandler):
    payment_type = PaymentType.APPLICATION_FEE

    async def apply(self, payment: Payment, uow: AbstractUnitOfWork) -> Optional[str]:
        if not payment.course_id:
            logger.warning("application_fee_without_course", reference=payment.reference, user_id=payment.user_id)
            return None
        updated = await uow.application_repository.mark_paid(payment.user_id, payment.course_id)
        if updated == 0:
            logger.warning(
                "application_fee_no_matching_application",
                reference=payment.reference,
                user_id=payment.user_id,
                course_id=payment.course_id,
            )
        else:
            logger.info("application_marked_paid", reference=payment.reference, applications=updated)
        return None


class TuitionHandler(SideEffectHandler):
    payment_type = PaymentType.TUITION

    async def apply(self, payment: Payment, uow: AbstractUnitOfWork) -> Optional[str]:
        if not payment.course_id:
            raise DispatchFailure(payment.reference, "course_id is required for enrollment")
        enrollment, created = await uow.enrollment_repository.create_if_absent(payment.user_id, payment.course_id)
        logger.info(
            "enrollment_ensured",
            reference=payment.reference,
            user_id=payment.user_id,
            course_id=payment.course_id,
            enrollment_id=enrollment.id,
            created=created,
        )
        return str(enrollment.id) if enrollment.id is not None else None


class InstallmentHandler(TuitionHandler):
    """Enroll only when every installment of the user's course group is PAID."""

    payment_type = PaymentType.INSTALLMENT

    async def apply(self, payment: Payment, uow: AbstractUnitOfWork) -> Optional[str]:
        if not payment.course_id:
            raise DispatchFailure(payment.reference, "course_id is required for installments")
        repo = uow.payment_repository
        total = await repo.count_group(payment.user_id, payment.course_id, PaymentType.INSTALLMENT)
        paid = await repo.count_group(
            payment.user_id, payment.course_id, PaymentType.INSTALLMENT, PaymentStatus.PAID
        )
        if total == 0 or paid != total:
            logger.info(
                "installment_group_incomplete",
                reference=payment.reference,
                course_id=payment.course_id,
                paid=paid,
                total=total,
            )
            return None
        logger.info("installment_group_complete", reference=payment.reference, course_id=payment.course_id, total=total)
        return await super().apply(payment, uow)


def default_handlers() -> Dict[PaymentType, SideEffectHandler]:
    return {h.payment_type: h for h in (ApplicationFeeHandler(), TuitionHandler(), InstallmentHandler())}


class SideEffectDispatcher:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        handlers: Optional[Iterable[SideEffectHandler]] = None,
    ) -> None:
        self._uow_factory = uow_factory
        if handlers is None:
            self._handlers = default_handlers()
        else:
            self._handlers = {h.payment_type: h for h in handlers}

    async def dispatch(self, payment: Payment) -> None:
        """Run the handler for ``payment.type`` and stamp ``dispatched_at`` in the same transaction."""
        handler = self._handlers.get(payment.type)
        if handler is None:
            raise DispatchFailure(payment.reference, f"no handler for {payment.type.value}")
        try:
            async with self._uow_factory() as uow:
                enrollment_id = await handler.apply(payment, uow)
                await uow.payment_repository.mark_dispatched(
                    payment.id, datetime.now(timezone.utc), enrollment_id=enrollment_id
                )
        except DispatchFailure:
            raise
        except Exception as exc:
            raise DispatchFailure(payment.reference, str(exc) or type(exc).__name__) from exc
        logger.info("payment_dispatched", reference=payment.reference, payment_type=payment.type.value)
