"""
Refund API routes (admin operations).
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_refund_service
from application.dtos.payments import RefundDecisionRequest, RefundRequestDTO
from application.services.refund_service import RefundService
from core.response import success_response
from domain.common.exceptions import DomainValidationException


router = APIRouter(prefix="/refunds", tags=["Refunds"])


@router.post("", summary="Request a refund")
async def request_refund(payload: RefundRequestDTO, service: RefundService = Depends(get_refund_service)):
    outcome = await service.request_refund(payload)
    return success_response(data=outcome, message=outcome.message)


@router.get("/pending", summary="Refunds awaiting action")
async def pending_refunds(service: RefundService = Depends(get_refund_service)):
    items = await service.get_pending_refunds()
    return success_response(data=items)


@router.get("", summary="Refund history")
async def refund_history(
    processed_by: Optional[str] = Query(default=None),
    service: RefundService = Depends(get_refund_service),
):
    items = await service.get_refund_history(processed_by=processed_by)
    return success_response(data=items)


@router.get("/{refund_id}", summary="Get a refund")
async def get_refund(refund_id: int, service: RefundService = Depends(get_refund_service)):
    refund = await service.get_refund(refund_id)
    return success_response(data=refund)


@router.post("/{refund_id}/complete", summary="Mark a refund completed")
async def complete_refund(
    refund_id: int,
    payload: Optional[RefundDecisionRequest] = None,
    service: RefundService = Depends(get_refund_service),
):
    refund = await service.complete_refund(refund_id, processed_by=payload.admin_id if payload else None)
    return success_response(data=refund, message="Refund completed")


@router.post("/{refund_id}/approve", summary="Approve a refund under manual review")
async def approve_refund(
    refund_id: int,
    payload: RefundDecisionRequest,
    service: RefundService = Depends(get_refund_service),
):
    refund = await service.approve_refund(refund_id, payload.admin_id, payload.admin_notes)
    return success_response(data=refund, message="Refund approved")


@router.post("/{refund_id}/reject", summary="Reject a refund under manual review")
async def reject_refund(
    refund_id: int,
    payload: RefundDecisionRequest,
    service: RefundService = Depends(get_refund_service),
):
    if not payload.reason:
        raise DomainValidationException("Rejection reason is required", field="reason")
    refund = await service.reject_refund(refund_id, payload.admin_id, payload.reason)
    return success_response(data=refund, message="Refund rejected")


@router.post("/{refund_id}/resubmit", summary="Resubmit a pending refund to the gateway")
async def resubmit_refund(refund_id: int, service: RefundService = Depends(get_refund_service)):
    outcome = await service.resubmit_refund(refund_id)
    return success_response(data=outcome, message=outcome.message)
