import json

import httpx
import pytest

from api.dependencies import get_payment_gateway, get_uow_factory
from domain.payment.entity import PaymentStatus, PaymentType
from domain.payment.exceptions import GatewayRejected, GatewayUnavailable
from main import app
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


@pytest.fixture
def api(uow_factory, gateway):
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_uow_factory] = lambda: uow_factory
    transport = httpx.ASGITransport(app=app)
    client = httpx.AsyncClient(transport=transport, base_url="http://testserver")
    yield client
    app.dependency_overrides.clear()


def test_routes_registered():
    routes = {r.path for r in app.routes}
    assert {
        "/api/v1/payments/initialize",
        "/api/v1/payments/verify",
        "/api/v1/payments/verify/{reference}",
        "/api/v1/payments/manual",
        "/api/v1/payments/{reference}/receipt",
        "/api/v1/payments/webhooks/paystack",
        "/api/v1/payments/installments/schedule",
        "/api/v1/refunds",
        "/api/v1/refunds/{refund_id}/complete",
        "/api/v1/refunds/{refund_id}/approve",
        "/health",
    } <= routes


@pytest.mark.asyncio
async def test_verify_settles_payment(api, store, gateway):
    store.add_payment(reference="KM_1", type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1")
    gateway.succeed("KM_1", 50000)

    async with api:
        resp = await api.post("/api/v1/payments/verify", json={"reference": "KM_1"})
        again = await api.get("/api/v1/payments/verify/KM_1")

    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == BusinessCode.SUCCESS
    assert body["data"]["payment_status"] == "PAID"
    assert body["message"] == "Payment verified successfully"
    assert again.json()["data"]["already_settled"] is True
    assert "X-Request-ID" in resp.headers


@pytest.mark.asyncio
async def test_unknown_reference_maps_to_404(api):
    async with api:
        resp = await api.post("/api/v1/payments/verify", json={"reference": "KM_missing"})

    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == PaymentCode.PAYMENT_NOT_FOUND
    assert body["error"]["type"] == "PaymentNotFound"


@pytest.mark.asyncio
async def test_webhook_signature_checked(api, store, gateway):
    store.add_payment(reference="KM_1", type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1")
    gateway.succeed("KM_1", 50000)
    body = json.dumps({"event": "charge.success", "data": {"reference": "KM_1"}}).encode()

    async with api:
        forged = await api.post(
            "/api/v1/payments/webhooks/paystack", content=body, headers={"x-paystack-signature": "forged"}
        )
        signed = await api.post(
            "/api/v1/payments/webhooks/paystack", content=body, headers={"x-paystack-signature": "valid-signature"}
        )

    assert forged.status_code == 400
    assert forged.json()["code"] == PaymentCode.SIGNATURE_ERROR
    assert signed.status_code == 200
    assert store.payment("KM_1").status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_refund_conflict_maps_to_409(api, store):
    payment = store.add_payment(
        reference="KM_1", type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1",
        status=PaymentStatus.PAID, provider_transaction_id="txn_1",
    )

    async with api:
        first = await api.post("/api/v1/refunds", json={"payment_id": payment.id, "reason": "dropped", "amount": 20000})
        second = await api.post("/api/v1/refunds", json={"payment_id": payment.id, "reason": "dropped"})

    assert first.status_code == 200
    assert first.json()["data"]["refund"]["status"] == "PROCESSING"
    assert second.status_code == 409
    assert second.json()["code"] == PaymentCode.REFUND_IN_PROGRESS


@pytest.mark.asyncio
async def test_reject_requires_reason(api, store):
    payment = store.add_payment(
        reference="KM_1", type=PaymentType.TUITION, amount=50000, user_id="u1", status=PaymentStatus.PAID,
    )
    async with api:
        created = await api.post("/api/v1/refunds", json={"payment_id": payment.id, "reason": "cash"})
        refund_id = created.json()["data"]["refund"]["id"]
        missing = await api.post(f"/api/v1/refunds/{refund_id}/reject", json={"admin_id": "admin_1"})
        rejected = await api.post(
            f"/api/v1/refunds/{refund_id}/reject", json={"admin_id": "admin_1", "reason": "no receipt"}
        )

    assert created.json()["data"]["refund"]["status"] == "MANUAL_REVIEW"
    assert missing.status_code == 422
    assert rejected.json()["data"]["status"] == "REJECTED"


@pytest.mark.asyncio
async def test_installment_plans_listing(api):
    async with api:
        resp = await api.get("/api/v1/payments/installments/plans", params={"course_price": 100000})

    plans = {p["id"]: p for p in resp.json()["data"]}
    assert plans["3-month"]["first_payment_amount"] == 40000
    assert plans["6-month"]["monthly_amount"] == 14000


@pytest.mark.asyncio
async def test_missing_gateway_is_503():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        resp = await client.post("/api/v1/payments/verify", json={"reference": "KM_1"})

    assert resp.status_code == 503
    assert resp.json()["code"] == BusinessCode.SERVICE_UNAVAILABLE


@pytest.mark.asyncio
async def test_gateway_unavailable_is_retryable_503(api, store, gateway):
    store.add_payment(reference="KM_1", type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1")
    gateway.verifications["KM_1"] = GatewayUnavailable("Read timed out", provider="paystack")

    async with api:
        resp = await api.post("/api/v1/payments/verify", json={"reference": "KM_1"})

    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "30"
    assert resp.json()["code"] == PaymentCode.GATEWAY_UNAVAILABLE
    assert store.payment("KM_1").status == PaymentStatus.PENDING
    assert "Read timed out" not in resp.text


@pytest.mark.asyncio
async def test_gateway_rejection_text_is_not_returned(api, store, gateway):
    store.add_payment(reference="KM_1", type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1")
    gateway.verifications["KM_1"] = GatewayRejected(
        "Transaction reference not found (internal paystack msg)", provider="paystack", provider_code="400"
    )

    async with api:
        resp = await api.post("/api/v1/payments/verify", json={"reference": "KM_1"})

    assert resp.status_code == 502
    body = resp.json()
    assert body["code"] == PaymentCode.GATEWAY_REJECTED
    assert body["message"] == "Payment not confirmed, please try again"
    assert body["error"]["details"] == {"provider": "paystack"}
    assert "internal paystack msg" not in resp.text
    assert store.payment("KM_1").status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_manual_payment_and_receipt(api, store):
    store.users["u1"] = "ama@example.com"
    pending = store.add_payment(reference="KM_2", type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c2")

    async with api:
        recorded = await api.post(
            "/api/v1/payments/manual",
            json={
                "payment_type": "TUITION", "amount": 50000, "user_id": "u1", "course_id": "c1",
                "method": "BANK_TRANSFER", "recorded_by": "admin_1",
            },
        )
        reference = recorded.json()["data"]["reference"]
        receipt = await api.get(f"/api/v1/payments/{reference}/receipt")
        not_paid = await api.get(f"/api/v1/payments/{pending.reference}/receipt")
        bad_method = await api.post(
            "/api/v1/payments/manual",
            json={"payment_type": "TUITION", "amount": 50000, "user_id": "u1", "method": "CARD", "recorded_by": "a"},
        )

    assert recorded.status_code == 200
    assert recorded.json()["message"] == "Manual payment recorded successfully"
    assert recorded.json()["data"]["payment_status"] == "PAID"
    assert receipt.status_code == 200
    data = receipt.json()["data"]
    assert data["receipt_number"].startswith("RCP-")
    assert data["method"] == "BANK_TRANSFER"
    assert data["amount"] == 50000
    assert not_paid.status_code == 409
    assert not_paid.json()["code"] == PaymentCode.RECEIPT_UNAVAILABLE
    assert bad_method.status_code == 422


@pytest.mark.asyncio
async def test_initialize_charge_on_paid_payment_is_conflict(api, store, gateway):
    store.add_payment(
        reference="KM_1", type=PaymentType.TUITION, amount=50000, user_id="u1", course_id="c1",
        status=PaymentStatus.PAID,
    )

    async with api:
        resp = await api.post("/api/v1/payments/KM_1/initialize")

    assert resp.status_code == 409
    body = resp.json()
    assert body["code"] == PaymentCode.PAYMENT_NOT_PENDING
    assert body["error"]["type"] == "PaymentNotPending"
    assert gateway.initialize_calls == []
