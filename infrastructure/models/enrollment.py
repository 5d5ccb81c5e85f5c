"""
申请与选课数据库模型 - 支付成功后的下游表
"""
from sqlalchemy import Column, Index, Integer, String, UniqueConstraint

from .base import Base, UpdatedAtMixin, utc_column


class ApplicationModel(UpdatedAtMixin, Base):
    """课程申请（报名费支付成功后标记为 PAID）"""
    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, comment="用户ID")
    course_id = Column(String(64), nullable=False, comment="课程ID")
    status = Column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="申请状态: PENDING/PAID/UNDER_REVIEW/APPROVED/REJECTED",
    )
    created_at = utc_column("创建时间")

    __table_args__ = (
        Index("ix_applications_user_course", "user_id", "course_id"),
    )

    def __repr__(self):
        return f"<ApplicationModel(id={self.id}, user_id='{self.user_id}', status='{self.status}')>"


class EnrollmentModel(Base):
    """选课记录（同一用户同一课程唯一，唯一约束兜住并发派发）"""
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, comment="用户ID")
    course_id = Column(String(64), nullable=False, comment="课程ID")
    status = Column(String(20), nullable=False, default="ACTIVE", comment="选课状态: ACTIVE/SUSPENDED/COMPLETED")
    enrolled_at = utc_column("选课时间")

    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),
    )

    def __repr__(self):
        return f"<EnrollmentModel(id={self.id}, user_id='{self.user_id}', course_id='{self.course_id}')>"
