"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Ledger / refund errors (21xxx)
    PAYMENT_NOT_FOUND = 21000
    INVALID_PAYMENT_TRANSITION = 21001
    NOT_REFUNDABLE = 21002
    REFUND_IN_PROGRESS = 21003
    INVALID_REFUND_AMOUNT = 21004
    REFUND_NOT_FOUND = 21005
    INVALID_REFUND_TRANSITION = 21006
    DISPATCH_FAILURE = 21007
    INVALID_INSTALLMENT_PLAN = 21008
    PAYMENT_NOT_PENDING = 21009
    RECEIPT_UNAVAILABLE = 21010

    # Provider/Network errors (6xxxx)
    GATEWAY_REJECTED = 60000
    GATEWAY_UNAVAILABLE = 60001
    SIGNATURE_ERROR = 60002


# Public text for any gateway failure; provider wording stays in the logs
GATEWAY_PUBLIC_MESSAGE = "Payment not confirmed, please try again"


# Provider outcome buckets used by the settlement flow
OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_PENDING = "pending"


# Provider→internal outcome mapping; unknown statuses are treated as pending
PROVIDER_STATUS_TO_OUTCOME = {
    "paystack": {
        "success": OUTCOME_SUCCESS,
        "failed": OUTCOME_FAILED,
        "reversed": OUTCOME_FAILED,
        "abandoned": OUTCOME_PENDING,
        "ongoing": OUTCOME_PENDING,
        "pending": OUTCOME_PENDING,
        "processing": OUTCOME_PENDING,
        "queued": OUTCOME_PENDING,
    },
}
