"""
用户目录模型

支付服务只读取用户邮箱（作为收银台的付款人邮箱），用户的维护在身份系统中完成。
"""
from sqlalchemy import Column, String

from .base import Base, utc_column


class UserModel(Base):
    __tablename__ = "users"

    # 外部身份系统的用户ID
    id = Column(String(64), primary_key=True)
    email = Column(String(100), unique=True, index=True, nullable=False, comment="邮箱")
    full_name = Column(String(100), nullable=True, comment="全名")
    created_at = utc_column("创建时间")

    def __repr__(self):
        return f"<UserModel(id='{self.id}')>"
