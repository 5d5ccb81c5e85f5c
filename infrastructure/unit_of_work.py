"""SQLAlchemy Unit of Work 实现

一个 UoW 对应一个会话与一个事务；支付、退款、选课与申请的写入在同一事务内完成，
因此 "退款完成 + 支付置为 REFUNDED"、"派发成功 + dispatched_at" 等组合要么都生效要么都不生效。
"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.enrollment_repository import (
    SQLAlchemyApplicationRepository,
    SQLAlchemyEnrollmentRepository,
    SQLAlchemyUserDirectory,
)
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentRepository,
    SQLAlchemyRefundRepository,
)

SessionFactory = Callable[[], AsyncSession]

# UoW 属性名 -> 仓储实现
_REPOSITORIES = {
    "payment_repository": SQLAlchemyPaymentRepository,
    "refund_repository": SQLAlchemyRefundRepository,
    "enrollment_repository": SQLAlchemyEnrollmentRepository,
    "application_repository": SQLAlchemyApplicationRepository,
    "user_directory": SQLAlchemyUserDirectory,
}


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work；传入 session 时由调用方负责关闭"""

    def __init__(
        self,
        session_factory: SessionFactory = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._owns_session = session is None
        self.session: Optional[AsyncSession] = session

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        for name, repository in _REPOSITORIES.items():
            setattr(self, name, repository(self.session))
        # 只读 UoW 走自动开启的隐式事务，退出时丢弃
        if not self._readonly:
            await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            session = self.session
            if session is not None and session.in_transaction():
                await session.rollback()
            if self._owns_session and session is not None:
                await session.close()
                self.session = None
            for name in _REPOSITORIES:
                setattr(self, name, None)

    async def commit(self) -> None:
        if not self._readonly and self.session is not None and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session is not None and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False


def make_uow_factory(session_factory: SessionFactory = AsyncSessionLocal):
    """构造 uow_factory(readonly=...)，应用服务每个步骤开启一个独立事务"""
    def factory(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, readonly=readonly)
    return factory
