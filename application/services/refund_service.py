"""
Refund use-cases: request, provider submission, admin review and completion.

The refund row is committed as PENDING before the gateway is called, so a
crash or timeout between the two never leaves a provider-side refund without
a local record. Completion flips the refund to COMPLETED and the payment to
REFUNDED in one transaction, both through conditional updates.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional

from application.dtos.payments import GatewayRefund, RefundDTO, RefundOutcome, RefundRequestDTO
from application.ports.payment_gateway import PaymentGateway
from application.services.event_publisher import publish
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    ACTIVE_REFUND_STATUSES,
    Payment,
    PaymentStatus,
    PaymentType,
    Refund,
    RefundStatus,
    sources_for,
)
from domain.payment.events import PaymentRefunded
from domain.payment.exceptions import (
    GatewayRejected,
    InvalidRefundTransitionException,
    NotRefundableException,
    PaymentNotFoundException,
    RefundInProgressException,
    RefundNotFoundException,
)
from domain.payment.service import PaymentDomainService


logger = get_logger(__name__)


class RefundService:
    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], gateway: PaymentGateway) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway

    async def request_refund(self, req: RefundRequestDTO) -> RefundOutcome:
        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.get_by_id(req.payment_id)
            if payment is None:
                raise PaymentNotFoundException(str(req.payment_id))
            if not payment.is_refundable():
                raise NotRefundableException(payment.id, payment.status.value)
            active = await uow.refund_repository.get_active_for_payment(payment.id)
            if active is not None:
                raise RefundInProgressException(payment.id, active.id)
            amount = PaymentDomainService.resolve_refund_amount(payment, req.amount)
            refund = await uow.refund_repository.create(
                PaymentDomainService.new_refund(
                    payment,
                    amount,
                    req.reason,
                    admin_notes=req.admin_notes,
                    requested_by=req.requested_by,
                )
            )
        logger.info(
            "refund_requested",
            refund_id=refund.id,
            payment_id=payment.id,
            amount=refund.amount,
            partial=refund.amount < payment.amount,
        )
        return await self._submit(refund, payment)

    async def resubmit_refund(self, refund_id: int) -> RefundOutcome:
        """Retry the provider call for a refund left PENDING by an unavailable gateway."""
        refund = await self._load(refund_id)
        if refund.status != RefundStatus.PENDING:
            raise InvalidRefundTransitionException(refund.id, refund.status.value, RefundStatus.PROCESSING.value)
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(refund.payment_id)
        if payment is None:
            raise PaymentNotFoundException(str(refund.payment_id))
        return await self._submit(refund, payment)

    async def _submit(self, refund: Refund, payment: Payment) -> RefundOutcome:
        if not payment.has_provider_transaction:
            await self._transition(refund, RefundStatus.MANUAL_REVIEW)
            logger.info("refund_manual_review", refund_id=refund.id, payment_id=payment.id)
            return RefundOutcome(
                success=True,
                refund=RefundDTO.model_validate(await self._load(refund.id)),
                message="Refund queued for manual review",
            )

        try:
            result = await self.gateway.refund(payment.provider_transaction_id, refund.amount, refund.reason)
        except GatewayRejected as exc:
            result = GatewayRefund(accepted=False, message=exc.message)
        # GatewayUnavailable propagates: the refund stays PENDING and can be resubmitted

        now = datetime.now(timezone.utc)
        if result.accepted:
            won = await self._transition(
                refund,
                RefundStatus.PROCESSING,
                provider_refund_reference=result.provider_refund_reference,
                processed_at=now,
            )
            if won:
                logger.info(
                    "refund_submitted",
                    refund_id=refund.id,
                    provider=self.gateway.provider,
                    provider_refund_reference=result.provider_refund_reference,
                )
            return RefundOutcome(
                success=True,
                refund=RefundDTO.model_validate(await self._load(refund.id)),
                message=result.message or "Refund initiated",
            )

        message = result.message or "Refund initiation failed"
        await self._transition(refund, RefundStatus.FAILED, failure_reason=message, processed_at=now)
        logger.warning("refund_rejected_by_provider", refund_id=refund.id, message=message)
        return RefundOutcome(
            success=False,
            refund=RefundDTO.model_validate(await self._load(refund.id)),
            message=message,
        )

    async def complete_refund(self, refund_id: int, processed_by: Optional[str] = None) -> RefundDTO:
        now = datetime.now(timezone.utc)
        async with self._uow_factory() as uow:
            refund = await uow.refund_repository.get_by_id(refund_id)
            if refund is None:
                raise RefundNotFoundException(str(refund_id))
            if refund.status == RefundStatus.COMPLETED:
                logger.info("refund_already_completed", refund_id=refund_id)
                return RefundDTO.model_validate(refund)

            changes = {"completed_at": now}
            if processed_by:
                changes["processed_by"] = processed_by
            won = await uow.refund_repository.transition_status(
                refund_id, sources_for(RefundStatus.COMPLETED), RefundStatus.COMPLETED, **changes
            )
            if not won:
                current = await uow.refund_repository.get_by_id(refund_id)
                if current is not None and current.status == RefundStatus.COMPLETED:
                    logger.info("refund_already_completed", refund_id=refund_id)
                    return RefundDTO.model_validate(current)
                raise InvalidRefundTransitionException(
                    refund_id,
                    (current or refund).status.value,
                    RefundStatus.COMPLETED.value,
                )

            flipped = await uow.payment_repository.transition_status(
                refund.payment_id, (PaymentStatus.PAID,), PaymentStatus.REFUNDED
            )
            payment = await uow.payment_repository.get_by_id(refund.payment_id)
            if not flipped:
                logger.warning(
                    "refund_payment_not_paid",
                    refund_id=refund_id,
                    payment_id=refund.payment_id,
                    status=payment.status.value if payment else None,
                )
            if payment is not None:
                await self._flag_enrollment(uow, payment, refund_id)
            completed = await uow.refund_repository.get_by_id(refund_id)

        logger.info("refund_completed", refund_id=refund_id, payment_id=refund.payment_id, amount=refund.amount)
        if payment is not None:
            publish(PaymentRefunded(payment.reference, payment.id, refund_id=refund_id, amount=refund.amount))
        return RefundDTO.model_validate(completed)

    async def _flag_enrollment(self, uow: AbstractUnitOfWork, payment: Payment, refund_id: int) -> None:
        if payment.type not in (PaymentType.TUITION, PaymentType.INSTALLMENT) or not payment.course_id:
            return
        enrollment = await uow.enrollment_repository.get_by_user_course(payment.user_id, payment.course_id)
        if enrollment is not None:
            # Enrollment is left in place; an admin decides whether to revoke access
            logger.warning(
                "refund_after_enrollment",
                refund_id=refund_id,
                payment_id=payment.id,
                user_id=payment.user_id,
                course_id=payment.course_id,
                enrollment_id=enrollment.id,
            )

    async def approve_refund(self, refund_id: int, admin_id: str, admin_notes: Optional[str] = None) -> RefundDTO:
        refund = await self._load(refund_id)
        changes = {"processed_by": admin_id, "processed_at": datetime.now(timezone.utc)}
        if admin_notes:
            changes["admin_notes"] = admin_notes
        await self._transition_or_raise(refund, RefundStatus.APPROVED, **changes)
        logger.info("refund_approved", refund_id=refund_id, admin_id=admin_id)
        return RefundDTO.model_validate(await self._load(refund_id))

    async def reject_refund(self, refund_id: int, admin_id: str, reason: str) -> RefundDTO:
        refund = await self._load(refund_id)
        await self._transition_or_raise(
            refund,
            RefundStatus.REJECTED,
            processed_by=admin_id,
            processed_at=datetime.now(timezone.utc),
            rejection_reason=reason,
        )
        logger.info("refund_rejected", refund_id=refund_id, admin_id=admin_id)
        return RefundDTO.model_validate(await self._load(refund_id))

    async def fail_refund(self, refund_id: int, reason: str) -> RefundDTO:
        refund = await self._load(refund_id)
        if refund.status == RefundStatus.FAILED:
            return RefundDTO.model_validate(refund)
        await self._transition_or_raise(refund, RefundStatus.FAILED, failure_reason=reason)
        logger.warning("refund_failed", refund_id=refund_id, reason=reason)
        return RefundDTO.model_validate(await self._load(refund_id))

    async def complete_refund_by_provider_reference(
        self, provider_refund_reference: Optional[str], transaction_reference: Optional[str] = None
    ) -> RefundDTO:
        refund = await self._find_by_provider(provider_refund_reference, transaction_reference)
        return await self.complete_refund(refund.id)

    async def fail_refund_by_provider_reference(
        self,
        provider_refund_reference: Optional[str],
        transaction_reference: Optional[str] = None,
        reason: str = "provider_reported_failure",
    ) -> RefundDTO:
        refund = await self._find_by_provider(provider_refund_reference, transaction_reference)
        return await self.fail_refund(refund.id, reason)

    async def _find_by_provider(
        self, provider_refund_reference: Optional[str], transaction_reference: Optional[str]
    ) -> Refund:
        async with self._uow_factory(readonly=True) as uow:
            refund = None
            if provider_refund_reference:
                refund = await uow.refund_repository.get_by_provider_reference(provider_refund_reference)
            if refund is None and transaction_reference:
                payment = await uow.payment_repository.get_by_reference(transaction_reference)
                if payment is not None:
                    refund = await uow.refund_repository.get_active_for_payment(payment.id)
        if refund is None:
            raise RefundNotFoundException(str(provider_refund_reference or transaction_reference))
        return refund

    # ---- queries ----

    async def get_refund(self, refund_id: int) -> RefundDTO:
        return RefundDTO.model_validate(await self._load(refund_id))

    async def get_pending_refunds(self) -> List[RefundDTO]:
        async with self._uow_factory(readonly=True) as uow:
            refunds = await uow.refund_repository.list_by_status(ACTIVE_REFUND_STATUSES)
        return [RefundDTO.model_validate(r) for r in refunds]

    async def get_refund_history(self, processed_by: Optional[str] = None) -> List[RefundDTO]:
        async with self._uow_factory(readonly=True) as uow:
            refunds = await uow.refund_repository.list_history(processed_by=processed_by)
        return [RefundDTO.model_validate(r) for r in refunds]

    # ---- helpers ----

    async def _load(self, refund_id: int) -> Refund:
        async with self._uow_factory(readonly=True) as uow:
            refund = await uow.refund_repository.get_by_id(refund_id)
        if refund is None:
            raise RefundNotFoundException(str(refund_id))
        return refund

    async def _transition(self, refund: Refund, target: RefundStatus, **changes) -> bool:
        async with self._uow_factory() as uow:
            return await uow.refund_repository.transition_status(
                refund.id, sources_for(target), target, **changes
            )

    async def _transition_or_raise(self, refund: Refund, target: RefundStatus, **changes) -> None:
        if not await self._transition(refund, target, **changes):
            current = await self._load(refund.id)
            raise InvalidRefundTransitionException(refund.id, current.status.value, target.value)

