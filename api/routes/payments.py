"""
Payments API routes.

Keep this thin: request parsing and response envelopes only, all payment
rules live in the application services.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.dependencies import get_verification_service
from api.middleware.request_id import resolve_client_ip
from application.dtos.payments import (
    InitializePaymentRequest,
    InstallmentPlanDTO,
    InstallmentScheduleRequest,
    ManualPaymentRequest,
    VerifyRequest,
)
from application.services.verification_service import PaymentVerificationService
from core.config import settings
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings
from domain.payment.installments import DEFAULT_INSTALLMENT_PLANS, calculate_installment_plan
from domain.payment.exceptions import WebhookSignatureError


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_allowed(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_invalid_entry", entry=entry)
    return False


@router.post("/initialize", summary="Initialize a payment")
async def initialize_payment(
    payload: InitializePaymentRequest,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    result = await service.initialize_payment(payload)
    return success_response(data=result, message="Payment initialized")


@router.post("/verify", summary="Verify and settle a payment")
async def verify_payment(
    payload: VerifyRequest,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    result = await service.verify_and_settle(payload.reference)
    return success_response(data=result, message=result.message)


@router.post("/manual", summary="Record a payment taken outside the gateway")
async def record_manual_payment(
    payload: ManualPaymentRequest,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    result = await service.record_manual_payment(payload)
    return success_response(data=result, message=result.message)


@router.get("/verify/{reference}", summary="Verify and settle a payment (gateway redirect)")
async def verify_payment_by_reference(
    reference: str,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    result = await service.verify_and_settle(reference)
    return success_response(data=result, message=result.message)


@router.post("/webhooks/paystack", summary="Paystack webhook")
async def paystack_webhook(
    request: Request,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    allowlist = payment_settings.webhook.ip_allowlist or []
    if allowlist:
        remote_ip = resolve_client_ip(request)
        if not _ip_allowed(remote_ip, allowlist):
            logger.warning("webhook_ip_rejected", remote_ip=remote_ip)
            raise WebhookSignatureError("Webhook source not allowed", provider="paystack")

    raw_body = await request.body()
    signature = request.headers.get(payment_settings.webhook.signature_header)
    result = await service.handle_webhook(raw_body, signature)
    # 200 acknowledges receipt; the provider stops retrying
    return success_response(data=result, message="Webhook received")


@router.get("/users/{user_id}/history", summary="Payment history")
async def payment_history(
    user_id: str,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    service: PaymentVerificationService = Depends(get_verification_service),
):
    items = await service.get_payment_history(user_id, skip=skip, limit=limit)
    return success_response(data=items)


@router.get("/users/{user_id}/pending", summary="Pending payments")
async def pending_payments(
    user_id: str,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    items = await service.get_pending_payments(user_id)
    return success_response(data=items)


@router.get("/users/{user_id}/courses/{course_id}/installments", summary="Installment schedule")
async def installment_schedule(
    user_id: str,
    course_id: str,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    items = await service.get_installment_schedule(user_id, course_id)
    return success_response(data=items)


@router.get("/installments/plans", summary="Available installment plans")
async def installment_plans(course_price: Optional[int] = Query(default=None, gt=0)):
    plans = [
        calculate_installment_plan(p.id, course_price) if course_price else p
        for p in DEFAULT_INSTALLMENT_PLANS
    ]
    return success_response(data=[InstallmentPlanDTO.model_validate(p) for p in plans])


@router.post("/installments/schedule", summary="Schedule installment payments")
async def schedule_installments(
    payload: InstallmentScheduleRequest,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    result = await service.schedule_installments(payload)
    return success_response(data=result, message="Installments scheduled")


@router.post("/{reference}/initialize", summary="Start checkout for a scheduled payment")
async def initialize_charge(
    reference: str,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    result = await service.initialize_charge(reference)
    return success_response(data=result, message="Payment initialized")


@router.post("/{reference}/redispatch", summary="Re-run side effects of a paid payment")
async def redispatch(
    reference: str,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    result = await service.redispatch(reference)
    return success_response(data=result, message=result.message)


@router.get("/{reference}/receipt", summary="Receipt for a paid payment")
async def payment_receipt(
    reference: str,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    receipt = await service.get_receipt(reference)
    return success_response(data=receipt)


@router.get("/{reference}", summary="Get a payment")
async def get_payment(
    reference: str,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    payment = await service.get_payment(reference)
    return success_response(data=payment)
