import asyncio
import json
import re
from datetime import datetime, timedelta, timezone

import pytest

from application.dtos.payments import (
    InitializePaymentRequest,
    InstallmentScheduleRequest,
    ManualPaymentRequest,
    RefundRequestDTO,
)
from application.services import event_publisher
from application.services.dispatcher import SideEffectDispatcher, SideEffectHandler
from application.services.refund_service import RefundService
from application.services.verification_service import (
    MSG_ALREADY_VERIFIED,
    MSG_NOT_CONFIRMED,
    MSG_VERIFIED,
    PaymentVerificationService,
    map_provider_status,
)
from domain.common.exceptions import BusinessException, DomainValidationException, UserNotFoundException
from domain.enrollment.entity import ApplicationStatus
from domain.payment.entity import PaymentStatus, PaymentType, RefundStatus
from domain.payment.exceptions import (
    GatewayRejected,
    GatewayUnavailable,
    InvalidPaymentTransitionException,
    PaymentNotFoundException,
    PaymentNotPendingException,
    ReceiptUnavailableException,
    WebhookSignatureError,
)
from shared.codes import BusinessCode


class CountingDispatcher(SideEffectDispatcher):
    def __init__(self, uow_factory, handlers=None):
        super().__init__(uow_factory, handlers)
        self.calls = []

    async def dispatch(self, payment):
        self.calls.append(payment.reference)
        await super().dispatch(payment)


class EventRecorder:
    def __init__(self):
        self.events = []

    def info(self, event, **kw):
        self.events.append(kw)


@pytest.fixture
def events(monkeypatch):
    recorder = EventRecorder()
    monkeypatch.setattr(event_publisher, "logger", recorder)
    return recorder


@pytest.fixture
def dispatcher(uow_factory):
    return CountingDispatcher(uow_factory)


@pytest.fixture
def service(uow_factory, gateway, dispatcher):
    return PaymentVerificationService(
        uow_factory,
        gateway,
        dispatcher=dispatcher,
        refund_service=RefundService(uow_factory, gateway),
        reference_prefix="KM",
        currency="GHS",
    )


def _tuition(store, reference="KM_1", amount=50000, **kw):
    fields = dict(reference=reference, type=PaymentType.TUITION, amount=amount, user_id="u1", course_id="c1")
    fields.update(kw)
    return store.add_payment(**fields)


def test_map_provider_status():
    assert map_provider_status("paystack", "success") == "success"
    assert map_provider_status("paystack", "FAILED") == "failed"
    assert map_provider_status("paystack", "reversed") == "failed"
    assert map_provider_status("paystack", "abandoned") == "pending"
    assert map_provider_status("paystack", "something-new") == "pending"
    assert map_provider_status("unknown", "success") == "pending"


@pytest.mark.asyncio
async def test_tuition_settles_and_enrolls(service, store, gateway, dispatcher, events):
    _tuition(store)
    gateway.succeed("KM_1", 50000, transaction_id="txn_1")

    result = await service.verify_and_settle("KM_1")

    assert result.success and not result.already_settled
    assert result.payment_status == PaymentStatus.PAID
    assert result.message == MSG_VERIFIED
    payment = store.payment("KM_1")
    assert payment.status == PaymentStatus.PAID
    assert payment.provider_transaction_id == "txn_1"
    assert payment.paid_at is not None
    assert payment.dispatched_at is not None
    assert ("u1", "c1") in store.enrollments
    assert payment.enrollment_id == str(store.enrollments[("u1", "c1")].id)
    assert dispatcher.calls == ["KM_1"]
    assert [e["event_name"] for e in events.events] == ["PaymentPaid"]


@pytest.mark.asyncio
async def test_second_verification_is_a_noop(service, store, gateway, dispatcher):
    _tuition(store)
    gateway.succeed("KM_1", 50000)
    await service.verify_and_settle("KM_1")

    again = await service.verify_and_settle("KM_1")

    assert again.success and again.already_settled
    assert again.message == MSG_ALREADY_VERIFIED
    assert gateway.verify_calls == ["KM_1"]
    assert dispatcher.calls == ["KM_1"]
    assert len(store.enrollments) == 1


@pytest.mark.asyncio
async def test_concurrent_verifications_dispatch_once(service, store, gateway, dispatcher, events):
    _tuition(store)
    gateway.succeed("KM_1", 50000)

    results = await asyncio.gather(*(service.verify_and_settle("KM_1") for _ in range(10)))

    assert all(r.success and r.payment_status == PaymentStatus.PAID for r in results)
    assert sum(1 for r in results if not r.already_settled) == 1
    assert dispatcher.calls == ["KM_1"]
    assert len(store.enrollments) == 1
    assert [e["event_name"] for e in events.events] == ["PaymentPaid"]


@pytest.mark.asyncio
async def test_provider_failure_marks_failed_and_is_terminal(service, store, gateway, events):
    _tuition(store)
    gateway.respond("KM_1", "failed")

    result = await service.verify_and_settle("KM_1")

    assert not result.success
    assert result.payment_status == PaymentStatus.FAILED
    assert result.message == MSG_NOT_CONFIRMED
    assert store.payment("KM_1").failure_reason == "provider_status:failed"
    assert [e["event_name"] for e in events.events] == ["PaymentFailed"]

    gateway.succeed("KM_1", 50000)
    again = await service.verify_and_settle("KM_1")
    assert again.payment_status == PaymentStatus.FAILED
    assert gateway.verify_calls == ["KM_1"]


@pytest.mark.asyncio
async def test_unconfirmed_payment_stays_pending(service, store, gateway, dispatcher):
    _tuition(store)
    gateway.respond("KM_1", "abandoned")

    result = await service.verify_and_settle("KM_1")

    assert not result.success
    assert result.payment_status == PaymentStatus.PENDING
    assert result.message == MSG_NOT_CONFIRMED
    assert store.payment("KM_1").status == PaymentStatus.PENDING
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_underpayment_is_failed(service, store, gateway):
    _tuition(store)
    gateway.succeed("KM_1", 40000)

    result = await service.verify_and_settle("KM_1")

    assert result.payment_status == PaymentStatus.FAILED
    assert store.payment("KM_1").failure_reason == "amount_mismatch"
    assert store.enrollments == {}


@pytest.mark.asyncio
async def test_gateway_unavailable_leaves_payment_pending(service, store, gateway):
    _tuition(store)
    gateway.verifications["KM_1"] = GatewayUnavailable("paystack unreachable", provider="paystack")

    with pytest.raises(GatewayUnavailable):
        await service.verify_and_settle("KM_1")
    assert store.payment("KM_1").status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_reference(service):
    with pytest.raises(PaymentNotFoundException):
        await service.verify_and_settle("KM_missing")


@pytest.mark.asyncio
async def test_application_fee_marks_application_paid(service, store, gateway):
    store.applications[("u1", "c1")] = ApplicationStatus.PENDING
    store.add_payment(reference="KM_APP", type=PaymentType.APPLICATION_FEE, amount=5000, user_id="u1", course_id="c1")
    gateway.succeed("KM_APP", 5000)

    result = await service.verify_and_settle("KM_APP")

    assert result.success and result.dispatch_error is None
    assert store.applications[("u1", "c1")] == ApplicationStatus.PAID
    assert store.enrollments == {}
    assert store.payment("KM_APP").dispatched_at is not None


@pytest.mark.asyncio
async def test_application_fee_without_application_still_dispatches(service, store, gateway):
    store.add_payment(reference="KM_APP", type=PaymentType.APPLICATION_FEE, amount=5000, user_id="u1")
    gateway.succeed("KM_APP", 5000)

    result = await service.verify_and_settle("KM_APP")

    assert result.success and result.dispatch_error is None
    assert store.payment("KM_APP").dispatched_at is not None


@pytest.mark.asyncio
async def test_installment_group_enrolls_only_when_complete(service, store, gateway):
    schedule = await service.schedule_installments(
        InstallmentScheduleRequest(user_id="u1", course_id="c1", plan_id="3-month", course_price=90000)
    )
    refs = [p.reference for p in schedule.payments]
    assert [p.amount for p in schedule.payments] == [36000, 27000, 27000]

    for ref, payment in zip(refs, schedule.payments):
        gateway.succeed(ref, payment.amount, transaction_id=f"txn_{ref}")

    await service.verify_and_settle(refs[0])
    await service.verify_and_settle(refs[1])
    assert store.enrollments == {}
    assert store.payment(refs[1]).dispatched_at is not None

    await service.verify_and_settle(refs[2])
    assert ("u1", "c1") in store.enrollments


@pytest.mark.asyncio
async def test_schedule_with_application_fee_and_duplicate(service, store):
    req = InstallmentScheduleRequest(
        user_id="u1", course_id="c1", plan_id="6-month", course_price=100000, application_fee=5000
    )
    schedule = await service.schedule_installments(req)

    assert schedule.plan.first_payment_amount == 30000
    assert len(schedule.payments) == 7
    assert schedule.payments[0].type == PaymentType.APPLICATION_FEE
    assert schedule.payments[0].installment_number == 0
    assert all(p.status == PaymentStatus.PENDING for p in schedule.payments)

    with pytest.raises(BusinessException) as exc:
        await service.schedule_installments(req)
    assert exc.value.code == BusinessCode.CONFLICT

    listed = await service.get_installment_schedule("u1", "c1")
    assert [p.installment_number for p in listed] == list(range(7))


class FlakyHandler(SideEffectHandler):
    payment_type = PaymentType.TUITION

    def __init__(self):
        self.attempts = 0

    async def apply(self, payment, uow):
        self.attempts += 1
        if self.attempts == 1:
            raise RuntimeError("enrollment store offline")
        enrollment, _ = await uow.enrollment_repository.create_if_absent(payment.user_id, payment.course_id)
        return str(enrollment.id)


@pytest.mark.asyncio
async def test_dispatch_failure_keeps_paid_and_redispatch_recovers(uow_factory, store, gateway):
    handler = FlakyHandler()
    service = PaymentVerificationService(
        uow_factory, gateway, dispatcher=SideEffectDispatcher(uow_factory, handlers=[handler])
    )
    _tuition(store)
    gateway.succeed("KM_1", 50000)

    result = await service.verify_and_settle("KM_1")

    assert result.success
    assert result.payment_status == PaymentStatus.PAID
    assert "enrollment store offline" in result.dispatch_error
    assert store.payment("KM_1").dispatched_at is None

    summary = await service.redispatch_pending()
    assert summary == {"checked": 1, "dispatched": 1, "errors": 0}
    assert store.payment("KM_1").dispatched_at is not None
    assert handler.attempts == 2


@pytest.mark.asyncio
async def test_redispatch_requires_paid(service, store):
    _tuition(store)
    with pytest.raises(InvalidPaymentTransitionException):
        await service.redispatch("KM_1")


@pytest.mark.asyncio
async def test_tuition_without_course_reports_dispatch_error(service, store, gateway):
    _tuition(store, course_id=None)
    gateway.succeed("KM_1", 50000)

    result = await service.verify_and_settle("KM_1")

    assert result.success
    assert result.dispatch_error
    assert store.payment("KM_1").status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_initialize_payment(service, store, gateway):
    store.users["u1"] = "ama@example.com"

    init = await service.initialize_payment(
        InitializePaymentRequest(payment_type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1")
    )

    assert init.reference.startswith("KM_")
    assert init.authorization_url.startswith("https://checkout.paystack.com/")
    call = gateway.initialize_calls[0]
    assert call["email"] == "ama@example.com"
    assert call["amount"] == 50000
    assert call["metadata"]["course_id"] == "c1"
    assert store.payment(init.reference).status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_initialize_payment_unknown_user(service, store):
    with pytest.raises(UserNotFoundException):
        await service.initialize_payment(
            InitializePaymentRequest(payment_type=PaymentType.TUITION, amount=50000, user_id="ghost", course_id="c1")
        )
    assert store.payments == {}


@pytest.mark.asyncio
async def test_initialize_rejected_marks_failed(service, store, gateway):
    store.users["u1"] = "ama@example.com"
    gateway.initialize_error = GatewayRejected("Invalid email", provider="paystack")

    with pytest.raises(GatewayRejected):
        await service.initialize_payment(
            InitializePaymentRequest(payment_type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1")
        )

    (payment,) = store.payments.values()
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "initialization_failed"


@pytest.mark.asyncio
async def test_initialize_unavailable_keeps_pending(service, store, gateway):
    store.users["u1"] = "ama@example.com"
    gateway.initialize_error = GatewayUnavailable("timeout", provider="paystack")

    with pytest.raises(GatewayUnavailable):
        await service.initialize_payment(
            InitializePaymentRequest(payment_type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1")
        )

    (payment,) = store.payments.values()
    assert payment.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_initialize_charge_for_scheduled_installment(service, store, gateway):
    store.users["u1"] = "ama@example.com"
    payment = store.add_payment(
        reference="KM_INST", type=PaymentType.INSTALLMENT, amount=27000, user_id="u1", course_id="c1",
        installment_number=2,
    )

    init = await service.initialize_charge("KM_INST")

    assert init.payment_id == payment.id
    assert gateway.initialize_calls[0]["metadata"]["installment_number"] == 2

    gateway.succeed("KM_INST", 27000)
    await service.verify_and_settle("KM_INST")
    with pytest.raises(PaymentNotPendingException) as exc:
        await service.initialize_charge("KM_INST")
    assert exc.value.error_type == "PaymentNotPending"
    assert exc.value.details == {"reference": "KM_INST", "status": "PAID"}
    assert len(gateway.initialize_calls) == 1


@pytest.mark.asyncio
async def test_reconcile_pending(service, store, gateway):
    old = datetime.now(timezone.utc) - timedelta(hours=1)
    for ref in ("KM_A", "KM_B", "KM_C", "KM_D"):
        _tuition(store, reference=ref, created_at=old, course_id=f"course_{ref}")
    _tuition(store, reference="KM_FRESH")
    gateway.succeed("KM_A", 50000)
    gateway.respond("KM_B", "failed")
    gateway.respond("KM_C", "ongoing")
    gateway.verifications["KM_D"] = GatewayUnavailable("timeout", provider="paystack")

    summary = await service.reconcile_pending(older_than=timedelta(minutes=15))

    assert summary == {"checked": 4, "paid": 1, "failed": 1, "pending": 1, "errors": 1}
    assert "KM_FRESH" not in gateway.verify_calls
    assert store.payment("KM_A").status == PaymentStatus.PAID
    assert store.payment("KM_D").status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_queries(service, store):
    _tuition(store, reference="KM_1")
    _tuition(store, reference="KM_2", status=PaymentStatus.PAID)
    _tuition(store, reference="KM_3", user_id="u2")

    history = await service.get_payment_history("u1")
    pending = await service.get_pending_payments("u1")
    one = await service.get_payment("KM_2")

    assert [p.reference for p in history] == ["KM_2", "KM_1"]
    assert [p.reference for p in pending] == ["KM_1"]
    assert one.status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_webhook_charge_success(service, store, gateway):
    _tuition(store)
    gateway.succeed("KM_1", 50000)
    body = json.dumps({"event": "charge.success", "data": {"reference": "KM_1", "amount": 50000}}).encode()

    result = await service.handle_webhook(body, "valid-signature")

    assert result["handled"] is True
    assert result["result"]["payment_status"] == "PAID"
    assert store.payment("KM_1").status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(service, store):
    _tuition(store)
    body = json.dumps({"event": "charge.success", "data": {"reference": "KM_1"}}).encode()

    with pytest.raises(WebhookSignatureError):
        await service.handle_webhook(body, "forged")
    assert store.payment("KM_1").status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_webhook_malformed_and_unknown_events(service):
    with pytest.raises(DomainValidationException):
        await service.handle_webhook(b"not json", "valid-signature")

    body = json.dumps({"event": "transfer.success", "data": {}}).encode()
    assert (await service.handle_webhook(body, "valid-signature"))["handled"] is False

    body = json.dumps({"event": "charge.success", "data": {}}).encode()
    with pytest.raises(DomainValidationException):
        await service.handle_webhook(body, "valid-signature")


@pytest.mark.asyncio
async def test_webhook_refund_processed(service, store, gateway):
    payment = _tuition(store, status=PaymentStatus.PAID, provider_transaction_id="txn_1")
    outcome = await service.refund_service.request_refund(RefundRequestDTO(payment_id=payment.id, reason="duplicate"))
    assert outcome.refund.status == RefundStatus.PROCESSING

    body = json.dumps({"event": "refund.processed", "data": {"refund_reference": "RF_1", "transaction_reference": "KM_1"}}).encode()
    result = await service.handle_webhook(body, "valid-signature")

    assert result["refund_id"] == outcome.refund.id
    assert store.refunds[outcome.refund.id].status == RefundStatus.COMPLETED
    assert store.payment("KM_1").status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_manual_payment_enrolls_once_and_refund_needs_review(service, store, gateway, dispatcher, events):
    store.users["u1"] = "ama@example.com"
    req = ManualPaymentRequest(
        payment_type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1",
        method="BANK_TRANSFER", recorded_by="admin_1", notes="GCB slip 4471",
    )

    result = await service.record_manual_payment(req)

    assert result.success and result.payment_status == PaymentStatus.PAID
    assert result.dispatch_error is None
    payment = store.payment(result.reference)
    assert payment.provider_transaction_id is None
    assert payment.paid_at is not None and payment.dispatched_at is not None
    assert payment.metadata["method"] == "BANK_TRANSFER"
    assert payment.metadata["recorded_by"] == "admin_1"
    assert ("u1", "c1") in store.enrollments
    assert dispatcher.calls == [result.reference]
    assert [e["event_name"] for e in events.events] == ["PaymentPaid"]
    assert gateway.verify_calls == []

    outcome = await service.refund_service.request_refund(RefundRequestDTO(payment_id=payment.id, reason="withdrew"))

    assert outcome.refund.status == RefundStatus.MANUAL_REVIEW
    assert gateway.refund_calls == []


@pytest.mark.asyncio
async def test_manual_payment_settles_scheduled_installment(service, store, dispatcher):
    store.users["u1"] = "ama@example.com"
    store.add_payment(
        reference="KM_INST", type=PaymentType.INSTALLMENT, amount=27000, user_id="u1", course_id="c1",
        installment_number=1, metadata={"plan_id": "standard"},
    )
    req = ManualPaymentRequest(
        payment_type=PaymentType.INSTALLMENT, amount=27000, user_id="u1", course_id="c1",
        reference="KM_INST", recorded_by="admin_1",
    )

    result = await service.record_manual_payment(req)

    assert result.reference == "KM_INST"
    payment = store.payment("KM_INST")
    assert payment.status == PaymentStatus.PAID
    assert payment.metadata["plan_id"] == "standard"
    assert payment.metadata["method"] == "MANUAL"
    assert len(store.payments) == 1

    with pytest.raises(PaymentNotPendingException):
        await service.record_manual_payment(req)
    assert dispatcher.calls == ["KM_INST"]


@pytest.mark.asyncio
async def test_manual_payment_must_match_pending_row(service, store):
    store.users["u1"] = "ama@example.com"
    _tuition(store)

    with pytest.raises(DomainValidationException):
        await service.record_manual_payment(
            ManualPaymentRequest(
                payment_type=PaymentType.TUITION, amount=100, user_id="u1", reference="KM_1", recorded_by="admin_1",
            )
        )
    assert store.payment("KM_1").status == PaymentStatus.PENDING

    with pytest.raises(UserNotFoundException):
        await service.record_manual_payment(
            ManualPaymentRequest(payment_type=PaymentType.TUITION, amount=100, user_id="ghost", recorded_by="admin_1")
        )


@pytest.mark.asyncio
async def test_receipt_for_paid_installment(service, store, gateway):
    for n in (1, 2, 3):
        store.add_payment(
            reference=f"KM_I{n}", type=PaymentType.INSTALLMENT, amount=10000, user_id="u1", course_id="c1",
            installment_number=n,
        )
    gateway.succeed("KM_I2", 10000)
    await service.verify_and_settle("KM_I2")

    receipt = await service.get_receipt("KM_I2")
    again = await service.get_receipt("KM_I2")

    assert re.fullmatch(r"RCP-\d{13}-\d{4}", receipt.receipt_number)
    assert again.receipt_number == receipt.receipt_number
    assert receipt.reference == "KM_I2"
    assert receipt.amount == 10000 and receipt.currency == "GHS"
    assert receipt.method == "PAYSTACK"
    assert (receipt.installment_number, receipt.total_installments) == (2, 3)
    assert receipt.paid_at == store.payment("KM_I2").paid_at


@pytest.mark.asyncio
async def test_receipt_requires_paid_payment(service, store):
    _tuition(store)

    with pytest.raises(ReceiptUnavailableException):
        await service.get_receipt("KM_1")
    with pytest.raises(PaymentNotFoundException):
        await service.get_receipt("KM_missing")


@pytest.mark.asyncio
async def test_webhook_for_unknown_refund_is_acknowledged(service, store):
    _tuition(store, status=PaymentStatus.PAID, provider_transaction_id="txn_1")

    for event in ("refund.processed", "refund.failed"):
        body = json.dumps({"event": event, "data": {"refund_reference": "RF_UNKNOWN", "transaction_reference": "KM_9"}}).encode()
        result = await service.handle_webhook(body, "valid-signature")
        assert result == {"event": event, "handled": False}

    assert store.payment("KM_1").status == PaymentStatus.PAID
    assert store.refunds == {}
