"""
下游协作方仓储接口：申请、选课、用户目录
"""
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from .entity import Enrollment


class ApplicationRepository(ABC):

    @abstractmethod
    async def mark_paid(self, user_id: str, course_id: str) -> int:
        """将用户在该课程下的申请标记为已付费，返回命中的申请数量"""
        pass


class EnrollmentRepository(ABC):

    @abstractmethod
    async def create_if_absent(self, user_id: str, course_id: str) -> Tuple[Enrollment, bool]:
        """幂等创建选课记录，返回 (选课, 是否新建)；已存在时不报错"""
        pass

    @abstractmethod
    async def get_by_user_course(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        pass


class UserDirectory(ABC):

    @abstractmethod
    async def get_email(self, user_id: str) -> Optional[str]:
        """查询用户邮箱（用于发起支付）"""
        pass
