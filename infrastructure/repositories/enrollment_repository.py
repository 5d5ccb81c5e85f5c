"""
申请/选课/用户目录仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from typing import Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from domain.enrollment.entity import ApplicationStatus, Enrollment, EnrollmentStatus
from domain.enrollment.repository import ApplicationRepository, EnrollmentRepository, UserDirectory
from infrastructure.models.enrollment import ApplicationModel, EnrollmentModel
from infrastructure.models.user import UserModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyApplicationRepository(ApplicationRepository):
    """申请仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def mark_paid(self, user_id: str, course_id: str) -> int:
        """仅推进仍处于 PENDING 的申请，重复调用不会改动已审核的申请"""
        result = await self.session.execute(
            update(ApplicationModel)
            .where(
                ApplicationModel.user_id == user_id,
                ApplicationModel.course_id == course_id,
                ApplicationModel.status.in_([ApplicationStatus.PENDING.value, ApplicationStatus.PAID.value]),
            )
            .values(status=ApplicationStatus.PAID.value, updated_at=datetime.now(timezone.utc))
        )
        return result.rowcount


class SQLAlchemyEnrollmentRepository(EnrollmentRepository):
    """选课仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: EnrollmentModel) -> Enrollment:
        """将数据库模型转换为领域实体"""
        return Enrollment(
            id=model.id,
            user_id=model.user_id,
            course_id=model.course_id,
            status=EnrollmentStatus(model.status),
            enrolled_at=model.enrolled_at,
        )

    async def get_by_user_course(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        result = await self.session.execute(
            select(EnrollmentModel).where(
                EnrollmentModel.user_id == user_id,
                EnrollmentModel.course_id == course_id,
            )
        )
        db_enrollment = result.scalar_one_or_none()
        return self._to_entity(db_enrollment) if db_enrollment else None

    async def create_if_absent(self, user_id: str, course_id: str) -> Tuple[Enrollment, bool]:
        """幂等创建：先查询，插入冲突（并发创建）时回退到查询结果"""
        existing = await self.get_by_user_course(user_id, course_id)
        if existing is not None:
            return existing, False

        db_enrollment = EnrollmentModel(
            user_id=user_id,
            course_id=course_id,
            status=EnrollmentStatus.ACTIVE.value,
            enrolled_at=datetime.now(timezone.utc),
        )
        try:
            # 使用保存点，唯一约束冲突时只回滚本次插入
            async with self.session.begin_nested():
                self.session.add(db_enrollment)
                await self.session.flush()
        except IntegrityError:
            logger.info("enrollment_create_conflict", user_id=user_id, course_id=course_id)
            existing = await self.get_by_user_course(user_id, course_id)
            if existing is None:
                raise
            return existing, False

        logger.info("enrollment_created", enrollment_id=db_enrollment.id, user_id=user_id, course_id=course_id)
        return self._to_entity(db_enrollment), True


class SQLAlchemyUserDirectory(UserDirectory):
    """用户目录的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_email(self, user_id: str) -> Optional[str]:
        result = await self.session.execute(
            select(UserModel.email).where(UserModel.id == user_id)
        )
        return result.scalar_one_or_none()
