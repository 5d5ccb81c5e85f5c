"""
分期计划 - 计算分期金额与还款计划（纯领域逻辑，无 IO）
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import List

from dateutil.relativedelta import relativedelta

from .entity import PaymentType
from .exceptions import InvalidInstallmentPlanException


@dataclass(frozen=True)
class InstallmentPlan:
    id: str
    name: str
    number_of_installments: int
    first_payment_percentage: int
    monthly_percentage: int
    total_amount: int = 0
    first_payment_amount: int = 0
    monthly_amount: int = 0


@dataclass(frozen=True)
class ScheduledPayment:
    """计划中的一笔支付（尚未落库）"""
    type: PaymentType
    amount: int
    due_date: datetime
    installment_number: int


DEFAULT_INSTALLMENT_PLANS: tuple[InstallmentPlan, ...] = (
    InstallmentPlan("standard", "Standard Plan", 1, 100, 0),
    InstallmentPlan("3-month", "3-Month Plan", 3, 40, 30),
    InstallmentPlan("6-month", "6-Month Plan", 6, 30, 14),
)


def _percent_of(amount: int, percentage: int) -> int:
    # 四舍五入（half-up），金额为最小货币单位整数
    return (amount * percentage + 50) // 100


def get_installment_plan(plan_id: str) -> InstallmentPlan:
    for plan in DEFAULT_INSTALLMENT_PLANS:
        if plan.id == plan_id:
            return plan
    raise InvalidInstallmentPlanException(plan_id)


def calculate_installment_plan(plan_id: str, course_price: int) -> InstallmentPlan:
    """根据课程价格计算首付与月付金额"""
    plan = get_installment_plan(plan_id)
    return replace(
        plan,
        total_amount=course_price,
        first_payment_amount=_percent_of(course_price, plan.first_payment_percentage),
        monthly_amount=_percent_of(course_price, plan.monthly_percentage),
    )


def build_installment_schedule(
    plan: InstallmentPlan,
    application_fee: int,
    start: datetime,
) -> List[ScheduledPayment]:
    """
    生成还款计划

    规则：
    1. 第 0 笔为报名费，立即到期
    2. 第 1 笔为首付（金额大于 0 时才生成），立即到期
    3. 第 2..n 笔按月递增到期
    """
    payments: List[ScheduledPayment] = []
    if application_fee > 0:
        payments.append(ScheduledPayment(PaymentType.APPLICATION_FEE, application_fee, start, 0))
    if plan.first_payment_amount > 0:
        payments.append(ScheduledPayment(PaymentType.INSTALLMENT, plan.first_payment_amount, start, 1))
    for number in range(2, plan.number_of_installments + 1):
        payments.append(
            ScheduledPayment(
                PaymentType.INSTALLMENT,
                plan.monthly_amount,
                start + relativedelta(months=number - 1),
                number,
            )
        )
    return payments
