"""
请求/响应日志中间件

method/path/request_id 已由 RequestIDMiddleware 绑定到 structlog 上下文，
这里只补充查询参数、（可选的）请求体摘要、状态码与耗时。
"""
import json
import time
from typing import Any, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)


def _redact(data: Any, sensitive: frozenset) -> Any:
    if isinstance(data, dict):
        return {k: "***" if k.lower() in sensitive else _redact(v, sensitive) for k, v in data.items()}
    if isinstance(data, list):
        return [_redact(v, sensitive) for v in data]
    return data


class LoggingMiddleware(BaseHTTPMiddleware):
    """记录 request_started / request_completed（或失败）两条日志"""

    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    # 网关回调的原始字节用于签名校验，不记录
    NO_BODY_PREFIXES = ("/api/v1/payments/webhooks",)

    # 结账邮箱、收银台地址与密钥不落日志
    SENSITIVE_FIELDS = frozenset({"email", "secret", "secret_key", "authorization", "access_code", "authorization_url"})

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.enable_body_log_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_log_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        context: dict[str, Any] = {"query_params": dict(request.query_params)}
        if request.method in ("POST", "PUT", "PATCH") and self._should_log_body(request):
            context["body"] = await self._body_snippet(request)
        logger.info("request_started", **context)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=time.perf_counter() - start,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start
        self._log_response(response, duration)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    def _should_log_body(self, request: Request) -> bool:
        if request.url.path.startswith(self.NO_BODY_PREFIXES):
            return False
        # X-Log-Body: true/false 可按请求覆盖
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in {"true", "1", "yes"}:
            return True
        if header in {"false", "0", "no"}:
            return False
        return bool(self.enable_body_log_default and settings.DEBUG)

    async def _body_snippet(self, request: Request) -> Optional[Any]:
        body = await request.body()
        if not body:
            return None
        text = body[: self.max_body_log_bytes].decode("utf-8", errors="ignore")
        if "application/json" not in request.headers.get("content-type", "").lower():
            return text
        try:
            return _redact(json.loads(text), self.SENSITIVE_FIELDS)
        except ValueError:
            # 截断后的 JSON 无法脱敏，只记录长度
            return {"unparsed_bytes": len(body)}

    @staticmethod
    def _log_response(response: Response, duration: float) -> None:
        status_code = response.status_code
        if status_code >= 500:
            logger.error("request_server_error", status_code=status_code, duration=duration)
        elif status_code >= 400:
            logger.warning("request_client_error", status_code=status_code, duration=duration)
        else:
            logger.info("request_completed", status_code=status_code, duration=duration)
