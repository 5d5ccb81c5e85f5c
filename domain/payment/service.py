"""
支付领域服务 - 处理跨实体的支付业务规则
"""
from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone
from typing import Optional

from .entity import Payment, PaymentStatus, PaymentType, Refund, RefundStatus
from .exceptions import InvalidRefundAmountException, NotRefundableException


_BASE36 = string.digits + string.ascii_lowercase


def generate_reference(prefix: str = "KM") -> str:
    """生成支付 reference：<prefix>_<毫秒时间戳>_<6位随机base36>，统一大写"""
    timestamp = int(time.time() * 1000)
    random_part = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}_{timestamp}_{random_part}".upper()


def receipt_number(payment: Payment) -> str:
    """收据编号：RCP-<支付时间毫秒>-<4位序号>，由支付记录推导，重复查询结果一致"""
    paid_at = payment.paid_at or payment.created_at or datetime.now(timezone.utc)
    return f"RCP-{int(paid_at.timestamp() * 1000)}-{(payment.id or 0) % 10000:04d}"


class PaymentDomainService:
    """
    支付领域服务

    职责：
    1. 构造新的支付/退款实体
    2. 退款金额与可退款性校验
    """

    def __init__(self, reference_prefix: str = "KM", currency: str = "GHS"):
        self.reference_prefix = reference_prefix
        self.currency = currency

    def new_payment(
        self,
        *,
        payment_type: PaymentType,
        amount: int,
        user_id: str,
        course_id: Optional[str] = None,
        application_id: Optional[str] = None,
        due_date: Optional[datetime] = None,
        installment_number: Optional[int] = None,
        metadata: Optional[dict] = None,
        reference: Optional[str] = None,
    ) -> Payment:
        now = datetime.now(timezone.utc)
        return Payment(
            id=None,
            reference=reference or generate_reference(self.reference_prefix),
            type=payment_type,
            amount=amount,
            user_id=user_id,
            status=PaymentStatus.PENDING,
            currency=self.currency,
            course_id=course_id,
            application_id=application_id,
            due_date=due_date,
            installment_number=installment_number,
            created_at=now,
            updated_at=now,
            metadata=metadata or {},
        )

    @staticmethod
    def resolve_refund_amount(payment: Payment, amount: Optional[int]) -> int:
        """
        计算退款金额

        业务规则：
        1. 未指定金额时全额退款
        2. 指定金额必须 0 < amount <= 支付金额
        """
        if not payment.is_refundable():
            raise NotRefundableException(payment.id or 0, payment.status.value)
        if amount is None:
            return payment.amount
        if amount <= 0 or amount > payment.amount:
            raise InvalidRefundAmountException(amount, payment.amount)
        return amount

    @staticmethod
    def new_refund(
        payment: Payment,
        amount: int,
        reason: str,
        admin_notes: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> Refund:
        now = datetime.now(timezone.utc)
        return Refund(
            id=None,
            payment_id=payment.id,
            amount=amount,
            reason=reason,
            status=RefundStatus.PENDING,
            admin_notes=admin_notes,
            requested_by=requested_by,
            requested_at=now,
            updated_at=now,
        )

