"""
支付领域实体 - 支付聚合根与退款实体
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from enum import Enum

from domain.common.exceptions import DomainValidationException
from domain.payment.exceptions import (
    InvalidPaymentTransitionException,
    InvalidRefundTransitionException,
)


class PaymentType(str, Enum):
    """支付类型，决定支付成功后的后续动作"""
    APPLICATION_FEE = "APPLICATION_FEE"
    TUITION = "TUITION"
    INSTALLMENT = "INSTALLMENT"


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "PENDING"      # 待支付
    PAID = "PAID"            # 支付成功
    FAILED = "FAILED"        # 支付失败
    REFUNDED = "REFUNDED"    # 已退款


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"


# 状态机：当前状态 -> 允许的目标状态
PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset({RefundStatus.PROCESSING, RefundStatus.MANUAL_REVIEW, RefundStatus.FAILED}),
    RefundStatus.PROCESSING: frozenset({RefundStatus.COMPLETED, RefundStatus.FAILED}),
    RefundStatus.MANUAL_REVIEW: frozenset({RefundStatus.APPROVED, RefundStatus.REJECTED}),
    RefundStatus.APPROVED: frozenset({RefundStatus.COMPLETED}),
    RefundStatus.REJECTED: frozenset(),
    RefundStatus.FAILED: frozenset(),
    RefundStatus.COMPLETED: frozenset(),
}

# 未结束的退款状态：同一笔支付最多只能存在一个
ACTIVE_REFUND_STATUSES = frozenset({
    RefundStatus.PENDING,
    RefundStatus.PROCESSING,
    RefundStatus.MANUAL_REVIEW,
    RefundStatus.APPROVED,
})


def sources_for(target: RefundStatus) -> tuple[RefundStatus, ...]:
    """返回可以转换到 target 的所有退款状态（用于条件更新）"""
    return tuple(s for s, targets in REFUND_TRANSITIONS.items() if target in targets)


def check_payment_transitions(expected: tuple[PaymentStatus, ...], target: PaymentStatus) -> None:
    """条件更新前校验：expected 中每个状态都必须允许转换到 target"""
    for source in expected:
        if target not in PAYMENT_TRANSITIONS[source]:
            raise InvalidPaymentTransitionException(source.value, target.value)


def check_refund_transitions(refund_id: int, expected: tuple[RefundStatus, ...], target: RefundStatus) -> None:
    for source in expected:
        if target not in REFUND_TRANSITIONS[source]:
            raise InvalidRefundTransitionException(refund_id, source.value, target.value)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Payment:
    """
    支付聚合根 - 管理支付生命周期

    业务规则：
    1. reference 全局唯一且不可变，是整个流程的幂等键
    2. 金额为最小货币单位的正整数
    3. 状态只能 PENDING -> PAID/FAILED，PAID -> REFUNDED
    4. 状态写入由仓储的条件更新完成，实体只负责校验
    """

    id: Optional[int]
    reference: str
    type: PaymentType
    amount: int
    user_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    currency: str = "GHS"
    course_id: Optional[str] = None
    application_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    due_date: Optional[datetime] = None
    installment_number: Optional[int] = None

    # 渠道信息（校验通过前为空）
    provider_transaction_id: Optional[str] = None
    provider_reference: Optional[str] = None

    paid_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    failure_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if not self.reference:
            raise DomainValidationException("reference is required", field="reference")
        if self.amount <= 0:
            raise DomainValidationException(
                f"Payment amount must be positive: {self.amount}",
                field="amount"
            )
        self.due_date = _ensure_utc(self.due_date)
        self.paid_at = _ensure_utc(self.paid_at)
        self.dispatched_at = _ensure_utc(self.dispatched_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    def can_transition(self, target: PaymentStatus) -> bool:
        return target in PAYMENT_TRANSITIONS[self.status]

    def ensure_transition(self, target: PaymentStatus) -> None:
        if not self.can_transition(target):
            raise InvalidPaymentTransitionException(self.status.value, target.value)

    def is_refundable(self) -> bool:
        return self.status == PaymentStatus.PAID

    @property
    def has_provider_transaction(self) -> bool:
        return bool(self.provider_transaction_id)


@dataclass
class Refund:
    """
    退款实体 - 关联唯一一笔支付

    业务规则：
    1. 退款金额 0 < amount <= 原支付金额
    2. COMPLETED 为终态，并且只触发一次支付 -> REFUNDED
    """

    id: Optional[int]
    payment_id: int
    amount: int
    reason: str
    status: RefundStatus = RefundStatus.PENDING
    provider_refund_reference: Optional[str] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_by: Optional[str] = None
    processed_by: Optional[str] = None
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Refund amount must be positive: {self.amount}",
                field="amount"
            )
        self.requested_at = _ensure_utc(self.requested_at)
        self.processed_at = _ensure_utc(self.processed_at)
        self.completed_at = _ensure_utc(self.completed_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_REFUND_STATUSES

    def can_transition(self, target: RefundStatus) -> bool:
        return target in REFUND_TRANSITIONS[self.status]

    def ensure_transition(self, target: RefundStatus) -> None:
        if not self.can_transition(target):
            raise InvalidRefundTransitionException(self.id or 0, self.status.value, target.value)
