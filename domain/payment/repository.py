"""
支付仓储接口 - 定义支付账本数据访问的抽象接口

状态写入一律通过条件更新（compare-and-swap）：只有当前状态属于 expected
时才会写入，并返回是否成功，调用方依据返回值决定是否执行后续动作。
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional, List

from .entity import Payment, Refund, PaymentStatus, PaymentType, RefundStatus


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录（reference 冲突时抛出异常）"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        """根据 reference 获取支付"""
        pass

    @abstractmethod
    async def transition_status(
        self,
        payment_id: int,
        expected: Iterable[PaymentStatus],
        target: PaymentStatus,
        **changes: Any,
    ) -> bool:
        """条件更新状态：当前状态属于 expected 时写入 target 和 changes，返回是否命中

        expected 中存在状态机不允许的 (来源, target) 组合时抛出 InvalidPaymentTransitionException
        """
        pass

    @abstractmethod
    async def mark_dispatched(
        self,
        payment_id: int,
        dispatched_at: datetime,
        enrollment_id: Optional[str] = None,
    ) -> None:
        """记录后续动作已执行（可同时写入关联的选课ID）"""
        pass

    @abstractmethod
    async def list_by_user(
        self,
        user_id: str,
        status: Optional[PaymentStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Payment]:
        """获取用户的支付列表（按创建时间倒序）"""
        pass

    @abstractmethod
    async def list_pending_by_user(self, user_id: str) -> List[Payment]:
        """获取用户待支付列表（按到期日升序）"""
        pass

    @abstractmethod
    async def list_by_user_course(self, user_id: str, course_id: str) -> List[Payment]:
        """获取用户在某课程下的全部支付（按到期日升序）"""
        pass

    @abstractmethod
    async def count_group(
        self,
        user_id: str,
        course_id: str,
        payment_type: PaymentType,
        status: Optional[PaymentStatus] = None,
    ) -> int:
        """统计分组支付数量（分期完成判断，每次实时查询）"""
        pass

    @abstractmethod
    async def list_stale_pending(self, created_before: datetime, limit: int = 100) -> List[Payment]:
        """获取创建时间早于给定时刻的待支付记录（对账用）"""
        pass

    @abstractmethod
    async def list_undispatched(self, limit: int = 100) -> List[Payment]:
        """获取已支付但后续动作未完成的记录"""
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        """创建退款记录（已有未结束退款时抛出 RefundInProgressException）"""
        pass

    @abstractmethod
    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        """根据ID获取退款"""
        pass

    @abstractmethod
    async def get_by_provider_reference(self, provider_refund_reference: str) -> Optional[Refund]:
        """根据渠道退款引用获取退款"""
        pass

    @abstractmethod
    async def get_active_for_payment(self, payment_id: int) -> Optional[Refund]:
        """获取支付当前未结束的退款"""
        pass

    @abstractmethod
    async def transition_status(
        self,
        refund_id: int,
        expected: Iterable[RefundStatus],
        target: RefundStatus,
        **changes: Any,
    ) -> bool:
        """条件更新退款状态，返回是否命中；非法组合抛出 InvalidRefundTransitionException"""
        pass

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[RefundStatus]) -> List[Refund]:
        """按状态获取退款（按申请时间升序）"""
        pass

    @abstractmethod
    async def list_history(self, processed_by: Optional[str] = None) -> List[Refund]:
        """退款历史（按申请时间倒序）"""
        pass
