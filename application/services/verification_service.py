"""
Payment verification and settlement use-cases.

The gateway is injected from the composition root (API lifespan / task runner),
keeping this module dependent on the PaymentGateway port only. Every status
write goes through the repository's conditional update; whichever caller wins
PENDING -> PAID is the only one that runs the side-effect dispatcher, and it
does so after the PAID transition has been committed.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from pydantic import ValidationError

from application.dtos.payments import (
    GatewayVerification,
    InitializePaymentRequest,
    InstallmentPlanDTO,
    InstallmentScheduleDTO,
    InstallmentScheduleRequest,
    ManualPaymentRequest,
    PaymentDTO,
    PaymentInitialization,
    ReceiptDTO,
    SettlementResult,
    WebhookEvent,
)
from application.ports.payment_gateway import PaymentGateway
from application.services.dispatcher import SideEffectDispatcher
from application.services.event_publisher import publish
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import (
    BusinessException,
    DomainValidationException,
    UserNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentStatus, PaymentType
from domain.payment.events import PaymentFailed, PaymentPaid
from domain.payment.exceptions import (
    DispatchFailure,
    GatewayRejected,
    GatewayUnavailable,
    InvalidPaymentTransitionException,
    PaymentNotFoundException,
    PaymentNotPendingException,
    ReceiptUnavailableException,
    RefundNotFoundException,
)
from domain.payment.installments import build_installment_schedule, calculate_installment_plan
from domain.payment.service import PaymentDomainService, receipt_number
from shared.codes import BusinessCode
from shared.codes.payment_codes import (
    GATEWAY_PUBLIC_MESSAGE,
    OUTCOME_FAILED,
    OUTCOME_PENDING,
    OUTCOME_SUCCESS,
    PROVIDER_STATUS_TO_OUTCOME,
)

if TYPE_CHECKING:
    from application.services.refund_service import RefundService


logger = get_logger(__name__)

MSG_VERIFIED = "Payment verified successfully"
MSG_ALREADY_VERIFIED = "Payment already verified"
MSG_NOT_CONFIRMED = GATEWAY_PUBLIC_MESSAGE
MSG_MANUAL_RECORDED = "Manual payment recorded successfully"


def map_provider_status(provider: str, provider_status: str) -> str:
    """Bucket a provider status into success/failed/pending (unknown → pending)."""
    table = PROVIDER_STATUS_TO_OUTCOME.get(provider, {})
    return table.get((provider_status or "").lower(), OUTCOME_PENDING)


class PaymentVerificationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        dispatcher: Optional[SideEffectDispatcher] = None,
        refund_service: Optional["RefundService"] = None,
        *,
        reference_prefix: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self.dispatcher = dispatcher or SideEffectDispatcher(uow_factory)
        self.refund_service = refund_service
        self.domain_service = PaymentDomainService(
            reference_prefix=reference_prefix or payment_settings.reference_prefix,
            currency=currency or payment_settings.currency,
        )

    # ---- initialization ----

    async def initialize_payment(self, req: InitializePaymentRequest) -> PaymentInitialization:
        email = await self._get_email(req.user_id)
        payment = self.domain_service.new_payment(
            payment_type=req.payment_type,
            amount=req.amount,
            user_id=req.user_id,
            course_id=req.course_id,
            application_id=req.application_id,
            due_date=req.due_date,
            metadata=req.metadata,
        )
        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.create(payment)
        logger.info(
            "payment_created",
            reference=payment.reference,
            payment_type=payment.type.value,
            amount=payment.amount,
            user_id=payment.user_id,
        )
        return await self._start_checkout(payment, email, fail_on_reject=True)

    async def initialize_charge(self, reference: str) -> PaymentInitialization:
        """Start checkout for an existing PENDING payment (e.g. a scheduled installment)."""
        payment = await self._load(reference)
        if payment.status != PaymentStatus.PENDING:
            raise PaymentNotPendingException(reference, payment.status.value)
        email = await self._get_email(payment.user_id)
        return await self._start_checkout(payment, email, fail_on_reject=False)

    async def _start_checkout(self, payment: Payment, email: str, *, fail_on_reject: bool) -> PaymentInitialization:
        metadata: dict[str, Any] = {
            "payment_id": payment.id,
            "payment_type": payment.type.value,
            "user_id": payment.user_id,
        }
        if payment.course_id:
            metadata["course_id"] = payment.course_id
        if payment.installment_number is not None:
            metadata["installment_number"] = payment.installment_number
        try:
            init = await self.gateway.initialize(email, payment.amount, payment.reference, metadata)
        except GatewayRejected as exc:
            logger.warning("payment_initialization_rejected", reference=payment.reference, error=exc.message)
            if fail_on_reject:
                async with self._uow_factory() as uow:
                    await uow.payment_repository.transition_status(
                        payment.id,
                        (PaymentStatus.PENDING,),
                        PaymentStatus.FAILED,
                        failure_reason="initialization_failed",
                    )
            raise
        except GatewayUnavailable as exc:
            # Provider outcome unknown: row stays PENDING for reconciliation
            logger.warning("payment_initialization_unavailable", reference=payment.reference, error=exc.message)
            raise
        logger.info("payment_initialized", reference=payment.reference, provider=self.gateway.provider)
        return PaymentInitialization(
            payment_id=payment.id,
            reference=payment.reference,
            authorization_url=init.authorization_url,
            access_code=init.access_code,
        )

    async def schedule_installments(self, req: InstallmentScheduleRequest) -> InstallmentScheduleDTO:
        plan = calculate_installment_plan(req.plan_id, req.course_price)
        schedule = build_installment_schedule(plan, req.application_fee, datetime.now(timezone.utc))
        created: List[Payment] = []
        async with self._uow_factory() as uow:
            existing = await uow.payment_repository.count_group(req.user_id, req.course_id, PaymentType.INSTALLMENT)
            if existing:
                raise BusinessException(
                    code=BusinessCode.CONFLICT,
                    message=f"Installments already scheduled for course {req.course_id}",
                    error_type="InstallmentsAlreadyScheduled",
                    details={"user_id": req.user_id, "course_id": req.course_id, "existing": existing},
                )
            for item in schedule:
                payment = self.domain_service.new_payment(
                    payment_type=item.type,
                    amount=item.amount,
                    user_id=req.user_id,
                    course_id=req.course_id,
                    due_date=item.due_date,
                    installment_number=item.installment_number,
                    metadata={"plan_id": plan.id},
                )
                created.append(await uow.payment_repository.create(payment))
        logger.info(
            "installments_scheduled",
            user_id=req.user_id,
            course_id=req.course_id,
            plan_id=plan.id,
            payments=len(created),
        )
        return InstallmentScheduleDTO(
            plan=InstallmentPlanDTO.model_validate(plan),
            payments=[PaymentDTO.model_validate(p) for p in created],
        )

    # ---- settlement ----

    async def verify_and_settle(self, reference: str) -> SettlementResult:
        payment = await self._load(reference)

        if payment.status == PaymentStatus.PAID:
            return SettlementResult(
                success=True,
                payment_status=PaymentStatus.PAID,
                reference=reference,
                already_settled=True,
                message=MSG_ALREADY_VERIFIED,
            )
        if payment.status != PaymentStatus.PENDING:
            # FAILED is never retried under the same reference, REFUNDED is past settlement
            return SettlementResult(
                success=False,
                payment_status=payment.status,
                reference=reference,
                message=MSG_NOT_CONFIRMED,
            )

        verification = await self.gateway.verify(reference)
        outcome = map_provider_status(self.gateway.provider, verification.provider_status)
        logger.info(
            "payment_verification_result",
            reference=reference,
            provider_status=verification.provider_status,
            outcome=outcome,
        )

        if outcome == OUTCOME_SUCCESS:
            if verification.amount_paid < payment.amount:
                logger.error(
                    "payment_amount_mismatch",
                    reference=reference,
                    expected=payment.amount,
                    paid=verification.amount_paid,
                    provider_transaction_id=verification.provider_transaction_id,
                )
                return await self._fail(payment, "amount_mismatch", verification)
            return await self._settle(payment, verification)
        if outcome == OUTCOME_FAILED:
            return await self._fail(payment, f"provider_status:{verification.provider_status}", verification)

        return SettlementResult(
            success=False,
            payment_status=PaymentStatus.PENDING,
            reference=reference,
            message=MSG_NOT_CONFIRMED,
        )

    async def _settle(self, payment: Payment, verification: GatewayVerification) -> SettlementResult:
        now = datetime.now(timezone.utc)
        metadata = dict(payment.metadata)
        metadata["provider"] = {
            "name": self.gateway.provider,
            "status": verification.provider_status,
            "amount_paid": verification.amount_paid,
            "currency": verification.currency,
        }
        async with self._uow_factory() as uow:
            won = await uow.payment_repository.transition_status(
                payment.id,
                (PaymentStatus.PENDING,),
                PaymentStatus.PAID,
                paid_at=verification.paid_at or now,
                provider_transaction_id=verification.provider_transaction_id,
                provider_reference=payment.reference,
                metadata=metadata,
            )
        if not won:
            logger.info("payment_settlement_lost_race", reference=payment.reference)
            return await self._current_result(payment.reference)

        logger.info("payment_settled", reference=payment.reference, payment_type=payment.type.value)
        publish(PaymentPaid(payment.reference, payment.id, payment_type=payment.type.value, amount=payment.amount))

        paid = await self._load(payment.reference)
        dispatch_error = await self._dispatch(paid)
        return SettlementResult(
            success=True,
            payment_status=PaymentStatus.PAID,
            reference=payment.reference,
            message=MSG_VERIFIED,
            dispatch_error=dispatch_error,
        )

    async def _fail(self, payment: Payment, reason: str, verification: GatewayVerification) -> SettlementResult:
        async with self._uow_factory() as uow:
            won = await uow.payment_repository.transition_status(
                payment.id,
                (PaymentStatus.PENDING,),
                PaymentStatus.FAILED,
                failure_reason=reason,
                provider_transaction_id=verification.provider_transaction_id,
            )
        if not won:
            return await self._current_result(payment.reference)
        logger.info("payment_failed", reference=payment.reference, reason=reason)
        publish(PaymentFailed(payment.reference, payment.id, reason=reason))
        return SettlementResult(
            success=False,
            payment_status=PaymentStatus.FAILED,
            reference=payment.reference,
            message=MSG_NOT_CONFIRMED,
        )

    async def _current_result(self, reference: str) -> SettlementResult:
        current = await self._load(reference)
        if current.status == PaymentStatus.PAID:
            return SettlementResult(
                success=True,
                payment_status=PaymentStatus.PAID,
                reference=reference,
                already_settled=True,
                message=MSG_ALREADY_VERIFIED,
            )
        return SettlementResult(
            success=False,
            payment_status=current.status,
            reference=reference,
            message=MSG_NOT_CONFIRMED,
        )

    async def _dispatch(self, payment: Payment) -> Optional[str]:
        try:
            await self.dispatcher.dispatch(payment)
        except DispatchFailure as exc:
            logger.error(
                "payment_dispatch_failed",
                reference=payment.reference,
                payment_type=payment.type.value,
                error=exc.message,
            )
            return exc.message
        return None

    async def redispatch(self, reference: str) -> SettlementResult:
        """Re-run side effects for an already PAID payment."""
        payment = await self._load(reference)
        if payment.status != PaymentStatus.PAID:
            raise InvalidPaymentTransitionException(payment.status.value, PaymentStatus.PAID.value)
        dispatch_error = await self._dispatch(payment)
        return SettlementResult(
            success=dispatch_error is None,
            payment_status=PaymentStatus.PAID,
            reference=reference,
            already_settled=True,
            message="Side effects dispatched" if dispatch_error is None else "Side effects failed",
            dispatch_error=dispatch_error,
        )

    # ---- manual settlement ----

    async def record_manual_payment(self, req: ManualPaymentRequest) -> SettlementResult:
        """Record a payment taken outside the gateway as PAID and dispatch its side effects once.

        When ``req.reference`` names an existing PENDING payment (a scheduled
        installment, say) that row is settled; otherwise a new row is created.
        There is no provider transaction, so a later refund goes to manual review.
        """
        await self._get_email(req.user_id)
        now = datetime.now(timezone.utc)
        manual = {"method": req.method, "recorded_by": req.recorded_by, "recorded_at": now.isoformat()}
        if req.notes:
            manual["notes"] = req.notes

        async with self._uow_factory() as uow:
            repo = uow.payment_repository
            payment = await repo.get_by_reference(req.reference) if req.reference else None
            if payment is None:
                payment = await repo.create(
                    self.domain_service.new_payment(
                        payment_type=req.payment_type,
                        amount=req.amount,
                        user_id=req.user_id,
                        course_id=req.course_id,
                        application_id=req.application_id,
                        installment_number=req.installment_number,
                        reference=req.reference,
                        metadata=manual,
                    )
                )
            elif payment.status != PaymentStatus.PENDING:
                raise PaymentNotPendingException(payment.reference, payment.status.value)
            elif (payment.user_id, payment.type, payment.amount) != (req.user_id, req.payment_type, req.amount):
                raise DomainValidationException(
                    f"Manual payment does not match pending payment {payment.reference}",
                    field="reference",
                    details={"reference": payment.reference},
                )
            won = await repo.transition_status(
                payment.id,
                (PaymentStatus.PENDING,),
                PaymentStatus.PAID,
                paid_at=now,
                metadata={**payment.metadata, **manual},
            )
        if not won:
            logger.info("manual_payment_lost_race", reference=payment.reference)
            return await self._current_result(payment.reference)

        logger.info(
            "manual_payment_recorded",
            reference=payment.reference,
            payment_type=payment.type.value,
            amount=payment.amount,
            method=req.method,
            recorded_by=req.recorded_by,
        )
        publish(PaymentPaid(payment.reference, payment.id, payment_type=payment.type.value, amount=payment.amount))

        paid = await self._load(payment.reference)
        dispatch_error = await self._dispatch(paid)
        return SettlementResult(
            success=True,
            payment_status=PaymentStatus.PAID,
            reference=payment.reference,
            message=MSG_MANUAL_RECORDED,
            dispatch_error=dispatch_error,
        )

    # ---- reconciliation ----

    async def reconcile_pending(self, older_than: Optional[timedelta] = None, limit: Optional[int] = None) -> dict[str, int]:
        older_than = older_than or timedelta(minutes=payment_settings.reconcile.pending_after_minutes)
        limit = limit or payment_settings.reconcile.batch_size
        cutoff = datetime.now(timezone.utc) - older_than
        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.payment_repository.list_stale_pending(cutoff, limit=limit)

        summary = {"checked": 0, "paid": 0, "failed": 0, "pending": 0, "errors": 0}
        for payment in stale:
            summary["checked"] += 1
            try:
                result = await self.verify_and_settle(payment.reference)
            except (GatewayUnavailable, GatewayRejected) as exc:
                summary["errors"] += 1
                logger.warning("payment_reconcile_failed", reference=payment.reference, error=exc.message)
                continue
            if result.payment_status == PaymentStatus.PAID:
                summary["paid"] += 1
            elif result.payment_status == PaymentStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["pending"] += 1
        logger.info("payment_reconcile_done", **summary)
        return summary

    async def redispatch_pending(self, limit: Optional[int] = None) -> dict[str, int]:
        limit = limit or payment_settings.reconcile.batch_size
        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_undispatched(limit=limit)
        summary = {"checked": 0, "dispatched": 0, "errors": 0}
        for payment in payments:
            summary["checked"] += 1
            if await self._dispatch(payment) is None:
                summary["dispatched"] += 1
            else:
                summary["errors"] += 1
        logger.info("payment_redispatch_done", **summary)
        return summary

    # ---- webhook ----

    async def handle_webhook(self, body: bytes, signature: Optional[str]) -> dict[str, Any]:
        self.gateway.verify_webhook_signature(body, signature)
        try:
            event = WebhookEvent.model_validate_json(body)
        except ValidationError as exc:
            raise DomainValidationException("Malformed webhook payload", field="body") from exc

        logger.info("payment_webhook_received", provider=self.gateway.provider, event_type=event.event)

        if event.event in ("charge.success", "charge.failed"):
            reference = event.reference
            if not reference:
                raise DomainValidationException("Webhook payload has no reference", field="data.reference")
            result = await self.verify_and_settle(reference)
            return {"event": event.event, "handled": True, "result": result.model_dump(mode="json")}

        if event.event in ("refund.processed", "refund.failed") and self.refund_service is not None:
            provider_ref = event.data.get("refund_reference") or event.data.get("id")
            transaction_reference = event.data.get("transaction_reference")
            try:
                if event.event == "refund.processed":
                    refund = await self.refund_service.complete_refund_by_provider_reference(
                        str(provider_ref) if provider_ref is not None else None, transaction_reference
                    )
                else:
                    refund = await self.refund_service.fail_refund_by_provider_reference(
                        str(provider_ref) if provider_ref is not None else None,
                        transaction_reference,
                        reason=event.data.get("status") or "provider_reported_failure",
                    )
            except RefundNotFoundException:
                # acknowledged so the provider stops redelivering an event we cannot match
                logger.warning(
                    "payment_webhook_refund_unknown",
                    event_type=event.event,
                    provider_refund_reference=provider_ref,
                    transaction_reference=transaction_reference,
                )
                return {"event": event.event, "handled": False}
            return {"event": event.event, "handled": True, "refund_id": refund.id}

        logger.info("payment_webhook_ignored", event_type=event.event)
        return {"event": event.event, "handled": False}

    # ---- queries ----

    async def get_payment(self, reference: str) -> PaymentDTO:
        return PaymentDTO.model_validate(await self._load(reference))

    async def get_payment_history(self, user_id: str, skip: int = 0, limit: int = 100) -> List[PaymentDTO]:
        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_by_user(user_id, skip=skip, limit=limit)
        return [PaymentDTO.model_validate(p) for p in payments]

    async def get_pending_payments(self, user_id: str) -> List[PaymentDTO]:
        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_pending_by_user(user_id)
        return [PaymentDTO.model_validate(p) for p in payments]

    async def get_installment_schedule(self, user_id: str, course_id: str) -> List[PaymentDTO]:
        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_by_user_course(user_id, course_id)
        return [PaymentDTO.model_validate(p) for p in payments]

    async def get_receipt(self, reference: str) -> ReceiptDTO:
        """Receipt data for a PAID payment; installments also carry their position in the plan."""
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_reference(reference)
            if payment is None:
                raise PaymentNotFoundException(reference)
            if payment.status != PaymentStatus.PAID:
                raise ReceiptUnavailableException(reference, payment.status.value)
            total_installments = None
            if payment.type == PaymentType.INSTALLMENT and payment.course_id:
                total_installments = await uow.payment_repository.count_group(
                    payment.user_id, payment.course_id, PaymentType.INSTALLMENT
                )
        provider = (payment.metadata.get("provider") or {}).get("name") or self.gateway.provider
        return ReceiptDTO(
            receipt_number=receipt_number(payment),
            reference=payment.reference,
            payment_id=payment.id,
            payment_type=payment.type,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.metadata.get("method") or provider.upper(),
            paid_at=payment.paid_at or payment.created_at,
            user_id=payment.user_id,
            course_id=payment.course_id,
            installment_number=payment.installment_number if total_installments else None,
            total_installments=total_installments,
        )

    # ---- helpers ----

    async def _load(self, reference: str) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_reference(reference)
        if payment is None:
            raise PaymentNotFoundException(reference)
        return payment

    async def _get_email(self, user_id: str) -> str:
        async with self._uow_factory(readonly=True) as uow:
            email = await uow.user_directory.get_email(user_id)
        if not email:
            raise UserNotFoundException(user_id)
        return email
