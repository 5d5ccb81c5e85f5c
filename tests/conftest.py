"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings, then provide
in-memory stand-ins for the unit of work and the payment gateway.
"""
import asyncio
import os
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///./test_payments.db")
os.environ.setdefault("PAYMENT__PAYSTACK__SECRET_KEY", "sk_test_secret")
os.environ.setdefault("ENVIRONMENT", "testing")

import pytest

from application.dtos.payments import (
    GatewayInitialization,
    GatewayRefund,
    GatewayVerification,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.enrollment.entity import ApplicationStatus, Enrollment
from domain.enrollment.repository import ApplicationRepository, EnrollmentRepository, UserDirectory
from domain.payment.entity import (
    ACTIVE_REFUND_STATUSES,
    Payment,
    PaymentStatus,
    PaymentType,
    Refund,
    RefundStatus,
    check_payment_transitions,
    check_refund_transitions,
)
from domain.payment.exceptions import RefundInProgressException, WebhookSignatureError
from domain.payment.repository import PaymentRepository, RefundRepository


class InMemoryStore:
    """Shared state behind every fake unit of work of one test."""

    def __init__(self) -> None:
        self.payments: Dict[int, Payment] = {}
        self.refunds: Dict[int, Refund] = {}
        self.enrollments: Dict[Tuple[str, str], Enrollment] = {}
        self.applications: Dict[Tuple[str, str], ApplicationStatus] = {}
        self.users: Dict[str, str] = {}
        self._ids: Dict[str, int] = {}

    def next_id(self, kind: str) -> int:
        self._ids[kind] = self._ids.get(kind, 0) + 1
        return self._ids[kind]

    def add_payment(self, **fields: Any) -> Payment:
        fields.setdefault("id", None)
        fields.setdefault("created_at", datetime.now(timezone.utc))
        payment = Payment(**fields)
        payment.id = self.next_id("payment")
        self.payments[payment.id] = payment
        return replace(payment)

    def payment(self, reference: str) -> Payment:
        return next(p for p in self.payments.values() if p.reference == reference)


class InMemoryPaymentRepository(PaymentRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(self, payment: Payment) -> Payment:
        if any(p.reference == payment.reference for p in self.store.payments.values()):
            raise ValueError(f"duplicate reference {payment.reference}")
        stored = replace(payment, id=self.store.next_id("payment"))
        self.store.payments[stored.id] = stored
        return replace(stored)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        p = self.store.payments.get(payment_id)
        return replace(p) if p else None

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        for p in self.store.payments.values():
            if p.reference == reference:
                return replace(p)
        return None

    async def transition_status(self, payment_id, expected: Iterable[PaymentStatus], target, **changes) -> bool:
        expected = tuple(expected)
        check_payment_transitions(expected, target)
        p = self.store.payments.get(payment_id)
        if p is None or p.status not in expected:
            return False
        for key, value in changes.items():
            setattr(p, key, value)
        p.status = target
        p.updated_at = datetime.now(timezone.utc)
        return True

    async def mark_dispatched(self, payment_id, dispatched_at, enrollment_id=None) -> None:
        p = self.store.payments[payment_id]
        p.dispatched_at = dispatched_at
        if enrollment_id is not None:
            p.enrollment_id = enrollment_id

    async def list_by_user(self, user_id, status=None, skip=0, limit=100) -> List[Payment]:
        items = [p for p in self.store.payments.values() if p.user_id == user_id and (status is None or p.status == status)]
        items.sort(key=lambda p: p.id, reverse=True)
        return [replace(p) for p in items[skip:skip + limit]]

    async def list_pending_by_user(self, user_id) -> List[Payment]:
        items = [p for p in self.store.payments.values() if p.user_id == user_id and p.status == PaymentStatus.PENDING]
        items.sort(key=lambda p: (p.due_date is None, p.due_date or datetime.min.replace(tzinfo=timezone.utc), p.id))
        return [replace(p) for p in items]

    async def list_by_user_course(self, user_id, course_id) -> List[Payment]:
        items = [p for p in self.store.payments.values() if p.user_id == user_id and p.course_id == course_id]
        items.sort(key=lambda p: (p.installment_number or 0, p.id))
        return [replace(p) for p in items]

    async def count_group(self, user_id, course_id, payment_type: PaymentType, status=None) -> int:
        return sum(
            1
            for p in self.store.payments.values()
            if p.user_id == user_id
            and p.course_id == course_id
            and p.type == payment_type
            and (status is None or p.status == status)
        )

    async def list_stale_pending(self, created_before, limit=100) -> List[Payment]:
        items = [
            p for p in self.store.payments.values()
            if p.status == PaymentStatus.PENDING and p.created_at and p.created_at < created_before
        ]
        return [replace(p) for p in items[:limit]]

    async def list_undispatched(self, limit=100) -> List[Payment]:
        items = [p for p in self.store.payments.values() if p.status == PaymentStatus.PAID and p.dispatched_at is None]
        return [replace(p) for p in items[:limit]]


class InMemoryRefundRepository(RefundRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(self, refund: Refund) -> Refund:
        if any(r.payment_id == refund.payment_id and r.is_active for r in self.store.refunds.values()):
            raise RefundInProgressException(refund.payment_id)
        stored = replace(refund, id=self.store.next_id("refund"))
        self.store.refunds[stored.id] = stored
        return replace(stored)

    async def get_by_id(self, refund_id) -> Optional[Refund]:
        r = self.store.refunds.get(refund_id)
        return replace(r) if r else None

    async def get_by_provider_reference(self, provider_refund_reference) -> Optional[Refund]:
        for r in self.store.refunds.values():
            if r.provider_refund_reference == provider_refund_reference:
                return replace(r)
        return None

    async def get_active_for_payment(self, payment_id) -> Optional[Refund]:
        for r in self.store.refunds.values():
            if r.payment_id == payment_id and r.status in ACTIVE_REFUND_STATUSES:
                return replace(r)
        return None

    async def transition_status(self, refund_id, expected: Iterable[RefundStatus], target, **changes) -> bool:
        expected = tuple(expected)
        check_refund_transitions(refund_id, expected, target)
        r = self.store.refunds.get(refund_id)
        if r is None or r.status not in expected:
            return False
        for key, value in changes.items():
            setattr(r, key, value)
        r.status = target
        return True

    async def list_by_status(self, statuses) -> List[Refund]:
        wanted = set(statuses)
        return [replace(r) for r in sorted(self.store.refunds.values(), key=lambda r: r.id) if r.status in wanted]

    async def list_history(self, processed_by=None) -> List[Refund]:
        items = [r for r in self.store.refunds.values() if processed_by is None or r.processed_by == processed_by]
        return [replace(r) for r in sorted(items, key=lambda r: r.id, reverse=True)]


class InMemoryEnrollmentRepository(EnrollmentRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create_if_absent(self, user_id, course_id):
        key = (user_id, course_id)
        if key in self.store.enrollments:
            return self.store.enrollments[key], False
        enrollment = Enrollment(
            id=self.store.next_id("enrollment"),
            user_id=user_id,
            course_id=course_id,
            enrolled_at=datetime.now(timezone.utc),
        )
        self.store.enrollments[key] = enrollment
        return enrollment, True

    async def get_by_user_course(self, user_id, course_id):
        return self.store.enrollments.get((user_id, course_id))


class InMemoryApplicationRepository(ApplicationRepository):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def mark_paid(self, user_id, course_id) -> int:
        key = (user_id, course_id)
        if self.store.applications.get(key) in (ApplicationStatus.PENDING, ApplicationStatus.PAID):
            self.store.applications[key] = ApplicationStatus.PAID
            return 1
        return 0


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get_email(self, user_id):
        return self.store.users.get(user_id)


class InMemoryUnitOfWork(AbstractUnitOfWork):
    def __init__(self, store: InMemoryStore, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self.payment_repository = InMemoryPaymentRepository(store)
        self.refund_repository = InMemoryRefundRepository(store)
        self.enrollment_repository = InMemoryEnrollmentRepository(store)
        self.application_repository = InMemoryApplicationRepository(store)
        self.user_directory = InMemoryUserDirectory(store)

    async def commit(self) -> None:
        self._committed = True

    async def rollback(self) -> None:
        pass


class FakeGateway:
    """Scripted gateway: ``verifications`` maps reference to a result or an exception to raise."""

    provider = "paystack"

    def __init__(self) -> None:
        self.verifications: Dict[str, Any] = {}
        self.verify_calls: List[str] = []
        self.initialize_calls: List[Dict[str, Any]] = []
        self.initialize_error: Optional[Exception] = None
        self.refund_calls: List[Tuple[str, int, Optional[str]]] = []
        self.refund_result: Any = GatewayRefund(accepted=True, provider_refund_reference="RF_1", message="Refund has been queued for processing")
        self.closed = False

    def succeed(self, reference: str, amount: int, transaction_id: str = "txn_1") -> None:
        self.verifications[reference] = GatewayVerification(
            provider_status="success",
            provider_transaction_id=transaction_id,
            amount_paid=amount,
            currency="GHS",
            paid_at=datetime.now(timezone.utc),
        )

    def respond(self, reference: str, provider_status: str, amount: int = 0) -> None:
        self.verifications[reference] = GatewayVerification(
            provider_status=provider_status,
            provider_transaction_id="txn_x",
            amount_paid=amount,
        )

    async def initialize(self, email, amount, reference, metadata=None) -> GatewayInitialization:
        self.initialize_calls.append({"email": email, "amount": amount, "reference": reference, "metadata": metadata})
        await asyncio.sleep(0)
        if self.initialize_error is not None:
            raise self.initialize_error
        return GatewayInitialization(
            authorization_url=f"https://checkout.paystack.com/{reference.lower()}",
            access_code="ac_test",
            reference=reference,
        )

    async def verify(self, reference) -> GatewayVerification:
        self.verify_calls.append(reference)
        # yield so concurrent settlements interleave like real IO
        await asyncio.sleep(0)
        result = self.verifications.get(reference)
        if isinstance(result, Exception):
            raise result
        return result or GatewayVerification(provider_status="abandoned")

    async def refund(self, provider_transaction_id, amount, reason=None) -> GatewayRefund:
        self.refund_calls.append((provider_transaction_id, amount, reason))
        await asyncio.sleep(0)
        if isinstance(self.refund_result, Exception):
            raise self.refund_result
        return self.refund_result

    def verify_webhook_signature(self, body, signature) -> None:
        if signature != "valid-signature":
            raise WebhookSignatureError("Invalid webhook signature", provider=self.provider)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def uow_factory(store):
    def factory(*, readonly: bool = False) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(store, readonly=readonly)
    return factory


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
