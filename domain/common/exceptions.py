"""领域层业务异常基类。

核心（core）层只负责把业务码映射为 HTTP 状态，领域层不反向依赖核心层。
``retryable`` 表示同样的调用稍后重试可能成功（例如网关暂不可用），
HTTP 层据此返回 Retry-After，Celery 任务据此决定是否重试。
"""
from __future__ import annotations

from typing import Any, Optional

from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    retryable: bool = False

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)

    def log_fields(self) -> dict[str, Any]:
        """结构化日志使用的字段"""
        return {
            "code": int(self.code),
            "error_type": self.error_type,
            "error": self.message,
            "retryable": self.retryable,
        }


class NotFoundException(BusinessException):
    """按标识查找资源失败"""

    def __init__(self, resource: str, identifier: Any, *, code: int = BusinessCode.NOT_FOUND, error_type: str = "NotFound"):
        super().__init__(
            code=code,
            message=f"{resource.capitalize()} not found: {identifier}",
            error_type=error_type,
            details={f"{resource}_id": identifier} if identifier is not None else None,
        )


class UserNotFoundException(NotFoundException):
    """用户目录中没有该用户（无法取得结算邮箱）"""

    def __init__(self, user_id: Optional[str] = None):
        super().__init__("user", user_id, code=BusinessCode.USER_NOT_FOUND, error_type="UserNotFound")


class DomainValidationException(BusinessException):
    """领域规则校验失败（HTTP 422）"""

    def __init__(self, message: str, *, field: str | None = None, details: dict | None = None):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )
