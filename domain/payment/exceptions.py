"""
支付领域异常 - 账本、退款与网关边界的统一错误分类
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException, NotFoundException
from shared.codes.payment_codes import PaymentCode


class PaymentNotFoundException(NotFoundException):
    """支付记录不存在（终态，不可重试）"""
    def __init__(self, identifier: str):
        super().__init__("payment", identifier, code=PaymentCode.PAYMENT_NOT_FOUND, error_type="PaymentNotFound")


class InvalidPaymentTransitionException(BusinessException):
    """支付状态转换不合法"""
    def __init__(self, current: str, target: str):
        super().__init__(
            code=PaymentCode.INVALID_PAYMENT_TRANSITION,
            message=f"Cannot move payment from {current} to {target}",
            error_type="InvalidPaymentTransition",
            details={"current": current, "target": target},
            field="status",
        )


class PaymentNotPendingException(BusinessException):
    """只有待支付的订单才能重新发起收银台"""
    def __init__(self, reference: str, status: str):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_PENDING,
            message=f"Payment {reference} is not pending (status {status})",
            error_type="PaymentNotPending",
            details={"reference": reference, "status": status},
        )


class ReceiptUnavailableException(BusinessException):
    """未支付成功的订单没有收据"""
    def __init__(self, reference: str, status: str):
        super().__init__(
            code=PaymentCode.RECEIPT_UNAVAILABLE,
            message=f"Receipt not available for payment {reference} (status {status})",
            error_type="ReceiptUnavailable",
            details={"reference": reference, "status": status},
        )


class NotRefundableException(BusinessException):
    """只有已支付的订单才能退款"""
    def __init__(self, payment_id: int, status: str):
        super().__init__(
            code=PaymentCode.NOT_REFUNDABLE,
            message=f"Payment {payment_id} is {status}, cannot refund",
            error_type="NotRefundable",
            details={"payment_id": payment_id, "status": status},
        )


class RefundInProgressException(BusinessException):
    """同一笔支付已有未结束的退款"""
    def __init__(self, payment_id: int, refund_id: Optional[int] = None):
        super().__init__(
            code=PaymentCode.REFUND_IN_PROGRESS,
            message=f"Payment {payment_id} already has a refund in progress",
            error_type="RefundInProgress",
            details={"payment_id": payment_id, "refund_id": refund_id},
        )


class InvalidRefundAmountException(BusinessException):
    """退款金额超过支付金额或不为正"""
    def __init__(self, amount: int, available: int):
        super().__init__(
            code=PaymentCode.INVALID_REFUND_AMOUNT,
            message=f"Refund amount {amount} must be between 1 and {available}",
            error_type="InvalidRefundAmount",
            details={"amount": amount, "available": available},
            field="amount",
        )


class RefundNotFoundException(NotFoundException):
    def __init__(self, identifier):
        super().__init__("refund", identifier, code=PaymentCode.REFUND_NOT_FOUND, error_type="RefundNotFound")


class InvalidRefundTransitionException(BusinessException):
    """退款状态转换不合法"""
    def __init__(self, refund_id: int, current: str, target: str):
        super().__init__(
            code=PaymentCode.INVALID_REFUND_TRANSITION,
            message=f"Cannot move refund {refund_id} from {current} to {target}",
            error_type="InvalidRefundTransition",
            details={"refund_id": refund_id, "current": current, "target": target},
            field="status",
        )


class DispatchFailure(BusinessException):
    """支付后续动作失败：不影响 PAID 状态，留待对账重放"""
    def __init__(self, reference: str, reason: str):
        super().__init__(
            code=PaymentCode.DISPATCH_FAILURE,
            message=f"Side effects for payment {reference} failed: {reason}",
            error_type="DispatchFailure",
            details={"reference": reference, "reason": reason},
        )


class InvalidInstallmentPlanException(BusinessException):
    def __init__(self, plan_id: str):
        super().__init__(
            code=PaymentCode.INVALID_INSTALLMENT_PLAN,
            message=f"Invalid installment plan: {plan_id}",
            error_type="InvalidInstallmentPlan",
            details={"plan_id": plan_id},
            field="plan_id",
        )


class GatewayError(BusinessException):
    """网关错误基类，携带渠道信息"""
    def __init__(
        self,
        message: str,
        *,
        code: int,
        error_type: str,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=full_details,
        )
        self.provider = provider


class GatewayUnavailable(GatewayError):
    """网络/超时/5xx：结果未知，调用方可安全重试"""

    retryable = True

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.GATEWAY_UNAVAILABLE,
            error_type="GatewayUnavailable",
            provider=provider,
            provider_code=provider_code,
            details=details,
        )


class GatewayRejected(GatewayError):
    """渠道明确拒绝：本次尝试终止"""
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.GATEWAY_REJECTED,
            error_type="GatewayRejected",
            provider=provider,
            provider_code=provider_code,
            details=details,
        )


class WebhookSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="WebhookSignatureError",
            details={"provider": provider},
        )
