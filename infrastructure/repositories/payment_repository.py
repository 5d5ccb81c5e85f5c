"""
支付仓储实现 - 使用SQLAlchemy实现数据访问

状态写入统一使用条件更新：
    UPDATE payments SET status = :target ... WHERE id = :id AND status IN (:expected)
以受影响行数判断是否命中，不做"先读后写"。
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError

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
from domain.payment.exceptions import RefundInProgressException
from domain.payment.repository import PaymentRepository, RefundRepository
from infrastructure.models.payment import PaymentModel, RefundModel
from core.logging_config import get_logger


logger = get_logger(__name__)


def _column_values(changes: dict[str, Any]) -> dict[str, Any]:
    """把实体字段名映射为列属性名，并展开枚举值"""
    values: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "metadata":
            key = "extra_metadata"
        if isinstance(value, Enum):
            value = value.value
        values[key] = value
    return values


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            reference=model.reference,
            type=PaymentType(model.type),
            amount=int(model.amount),
            user_id=model.user_id,
            status=PaymentStatus(model.status),
            currency=model.currency,
            course_id=model.course_id,
            application_id=model.application_id,
            enrollment_id=model.enrollment_id,
            due_date=model.due_date,
            installment_number=model.installment_number,
            provider_transaction_id=model.provider_transaction_id,
            provider_reference=model.provider_reference,
            paid_at=model.paid_at,
            dispatched_at=model.dispatched_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            failure_reason=model.failure_reason,
            metadata=model.extra_metadata or {}
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            reference=entity.reference,
            type=entity.type.value,
            amount=entity.amount,
            user_id=entity.user_id,
            status=entity.status.value,
            currency=entity.currency,
            course_id=entity.course_id,
            application_id=entity.application_id,
            enrollment_id=entity.enrollment_id,
            due_date=entity.due_date,
            installment_number=entity.installment_number,
            provider_transaction_id=entity.provider_transaction_id,
            provider_reference=entity.provider_reference,
            paid_at=entity.paid_at,
            dispatched_at=entity.dispatched_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            failure_reason=entity.failure_reason,
            extra_metadata=entity.metadata
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录（reference 冲突时由数据库唯一约束拒绝）"""
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        await self.session.flush()
        await self.session.refresh(db_payment)
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment_id)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        """根据 reference 获取支付"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.reference == reference)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def transition_status(
        self,
        payment_id: int,
        expected: Iterable[PaymentStatus],
        target: PaymentStatus,
        **changes: Any,
    ) -> bool:
        """条件更新支付状态"""
        expected = tuple(expected)
        check_payment_transitions(expected, target)
        expected_values = [s.value for s in expected]
        values = _column_values(changes)
        values["status"] = target.value
        values["updated_at"] = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id, PaymentModel.status.in_(expected_values))
            .values(**values)
        )
        won = result.rowcount == 1
        logger.debug(
            "payment_status_cas",
            payment_id=payment_id,
            expected=expected_values,
            target=target.value,
            won=won,
        )
        return won

    async def mark_dispatched(
        self,
        payment_id: int,
        dispatched_at: datetime,
        enrollment_id: Optional[str] = None,
    ) -> None:
        """记录后续动作已执行"""
        values: dict[str, Any] = {"dispatched_at": dispatched_at}
        if enrollment_id is not None:
            values["enrollment_id"] = enrollment_id
        await self.session.execute(
            update(PaymentModel).where(PaymentModel.id == payment_id).values(**values)
        )

    async def list_by_user(
        self,
        user_id: str,
        status: Optional[PaymentStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Payment]:
        """获取用户的支付列表"""
        query = select(PaymentModel).where(PaymentModel.user_id == user_id)

        if status:
            query = query.where(PaymentModel.status == status.value)

        query = query.order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc()).offset(skip).limit(limit)

        result = await self.session.execute(query)
        db_payments = result.scalars().all()
        return [self._to_entity(p) for p in db_payments]

    async def list_pending_by_user(self, user_id: str) -> List[Payment]:
        """获取用户待支付列表（到期日升序，无到期日的排在最后）"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.user_id == user_id,
                PaymentModel.status == PaymentStatus.PENDING.value,
            )
            .order_by(PaymentModel.due_date.is_(None), PaymentModel.due_date.asc(), PaymentModel.id.asc())
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_by_user_course(self, user_id: str, course_id: str) -> List[Payment]:
        """获取用户在某课程下的全部支付"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.user_id == user_id, PaymentModel.course_id == course_id)
            .order_by(PaymentModel.installment_number.asc(), PaymentModel.id.asc())
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def count_group(
        self,
        user_id: str,
        course_id: str,
        payment_type: PaymentType,
        status: Optional[PaymentStatus] = None,
    ) -> int:
        """统计分组支付数量"""
        query = select(func.count(PaymentModel.id)).where(
            PaymentModel.user_id == user_id,
            PaymentModel.course_id == course_id,
            PaymentModel.type == payment_type.value,
        )

        if status:
            query = query.where(PaymentModel.status == status.value)

        result = await self.session.execute(query)
        return result.scalar_one()

    async def list_stale_pending(self, created_before: datetime, limit: int = 100) -> List[Payment]:
        """获取超时未结算的待支付记录"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status == PaymentStatus.PENDING.value,
                PaymentModel.created_at < created_before,
            )
            .order_by(PaymentModel.created_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_undispatched(self, limit: int = 100) -> List[Payment]:
        """获取已支付但后续动作未完成的记录"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status == PaymentStatus.PAID.value,
                PaymentModel.dispatched_at.is_(None),
            )
            .order_by(PaymentModel.paid_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        """将数据库模型转换为领域实体"""
        return Refund(
            id=model.id,
            payment_id=model.payment_id,
            amount=int(model.amount),
            reason=model.reason,
            status=RefundStatus(model.status),
            provider_refund_reference=model.provider_refund_reference,
            admin_notes=model.admin_notes,
            rejection_reason=model.rejection_reason,
            failure_reason=model.failure_reason,
            requested_by=model.requested_by,
            processed_by=model.processed_by,
            requested_at=model.requested_at,
            processed_at=model.processed_at,
            completed_at=model.completed_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Refund) -> RefundModel:
        """将领域实体转换为数据库模型"""
        return RefundModel(
            id=entity.id,
            payment_id=entity.payment_id,
            amount=entity.amount,
            reason=entity.reason,
            status=entity.status.value,
            provider_refund_reference=entity.provider_refund_reference,
            admin_notes=entity.admin_notes,
            rejection_reason=entity.rejection_reason,
            failure_reason=entity.failure_reason,
            requested_by=entity.requested_by,
            processed_by=entity.processed_by,
            requested_at=entity.requested_at,
            processed_at=entity.processed_at,
            completed_at=entity.completed_at,
            updated_at=entity.updated_at,
        )

    async def create(self, refund: Refund) -> Refund:
        """创建退款记录，部分唯一索引冲突时抛出 RefundInProgressException"""
        db_refund = self._to_model(refund)
        try:
            # 使用保存点，冲突时只回滚本次插入
            async with self.session.begin_nested():
                self.session.add(db_refund)
                await self.session.flush()
        except IntegrityError as e:
            logger.warning("refund_create_conflict", payment_id=refund.payment_id, error=str(e.orig))
            raise RefundInProgressException(refund.payment_id) from e
        await self.session.refresh(db_refund)

        logger.info(
            "refund_created",
            refund_id=db_refund.id,
            payment_id=db_refund.payment_id,
            amount=db_refund.amount
        )

        return self._to_entity(db_refund)

    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        """根据ID获取退款"""
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.id == refund_id)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def get_by_provider_reference(self, provider_refund_reference: str) -> Optional[Refund]:
        """根据渠道退款引用获取退款"""
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.provider_refund_reference == provider_refund_reference)
            .order_by(RefundModel.id.desc())
            .limit(1)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def get_active_for_payment(self, payment_id: int) -> Optional[Refund]:
        """获取支付当前未结束的退款"""
        result = await self.session.execute(
            select(RefundModel)
            .where(
                RefundModel.payment_id == payment_id,
                RefundModel.status.in_([s.value for s in ACTIVE_REFUND_STATUSES]),
            )
            .limit(1)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def transition_status(
        self,
        refund_id: int,
        expected: Iterable[RefundStatus],
        target: RefundStatus,
        **changes: Any,
    ) -> bool:
        """条件更新退款状态"""
        expected = tuple(expected)
        check_refund_transitions(refund_id, expected, target)
        expected_values = [s.value for s in expected]
        values = _column_values(changes)
        values["status"] = target.value
        values["updated_at"] = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(RefundModel)
            .where(RefundModel.id == refund_id, RefundModel.status.in_(expected_values))
            .values(**values)
        )
        won = result.rowcount == 1
        logger.debug(
            "refund_status_cas",
            refund_id=refund_id,
            expected=expected_values,
            target=target.value,
            won=won,
        )
        return won

    async def list_by_status(self, statuses: Iterable[RefundStatus]) -> List[Refund]:
        """按状态获取退款（申请时间升序）"""
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.status.in_([s.value for s in statuses]))
            .order_by(RefundModel.requested_at.asc(), RefundModel.id.asc())
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def list_history(self, processed_by: Optional[str] = None) -> List[Refund]:
        """退款历史（申请时间倒序）"""
        query = select(RefundModel)
        if processed_by:
            query = query.where(RefundModel.processed_by == processed_by)
        query = query.order_by(RefundModel.requested_at.desc(), RefundModel.id.desc())
        result = await self.session.execute(query)
        return [self._to_entity(r) for r in result.scalars().all()]
