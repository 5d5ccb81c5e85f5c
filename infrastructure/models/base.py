"""
数据库模型基类（SQLAlchemy 2.0 风格）
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, MetaData
from sqlalchemy.orm import DeclarativeBase


# 约束命名规则，保证 Alembic 生成的迁移在各数据库上名称一致
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc_column(comment: str, *, index: bool = False) -> Column:
    """非空、带时区、默认当前时间的时间列"""
    return Column(DateTime(timezone=True), default=utcnow, nullable=False, index=index, comment=comment)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class UpdatedAtMixin:
    """每次 UPDATE（包括条件状态更新）都会刷新 updated_at"""
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False, comment="更新时间")


# 元数据对象用于数据库迁移
metadata = Base.metadata
