"""
异常到 HTTP 状态码的映射与全局异常处理器

所有处理器都输出统一错误信封，并带上 request_id 以便与访问日志对应。
网关相关错误不会把渠道原始报错透传给调用方（只保留在日志中）。
"""
import traceback
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status as http_status

from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode
from shared.codes.payment_codes import GATEWAY_PUBLIC_MESSAGE, PaymentCode
from .response import error_response


logger = get_logger(__name__)

# 网关暂不可用时建议客户端等待的秒数
RETRY_AFTER_SECONDS = 30

_NOT_FOUND = (
    BusinessCode.NOT_FOUND,
    BusinessCode.USER_NOT_FOUND,
    PaymentCode.PAYMENT_NOT_FOUND,
    PaymentCode.REFUND_NOT_FOUND,
)
_CONFLICT = (
    BusinessCode.CONFLICT,
    PaymentCode.INVALID_PAYMENT_TRANSITION,
    PaymentCode.INVALID_REFUND_TRANSITION,
    PaymentCode.NOT_REFUNDABLE,
    PaymentCode.REFUND_IN_PROGRESS,
    PaymentCode.PAYMENT_NOT_PENDING,
    PaymentCode.RECEIPT_UNAVAILABLE,
)
_UNPROCESSABLE = (
    BusinessCode.PARAM_VALIDATION_ERROR,
    PaymentCode.INVALID_REFUND_AMOUNT,
    PaymentCode.INVALID_INSTALLMENT_PLAN,
)

_GATEWAY_CODES = (PaymentCode.GATEWAY_REJECTED, PaymentCode.GATEWAY_UNAVAILABLE)

_CODE_TO_HTTP_STATUS = {
    **{code: http_status.HTTP_404_NOT_FOUND for code in _NOT_FOUND},
    **{code: http_status.HTTP_409_CONFLICT for code in _CONFLICT},
    **{code: http_status.HTTP_422_UNPROCESSABLE_ENTITY for code in _UNPROCESSABLE},
    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.DATABASE_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.DISPATCH_FAILURE: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    PaymentCode.GATEWAY_REJECTED: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.GATEWAY_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.SIGNATURE_ERROR: http_status.HTTP_400_BAD_REQUEST,
}

# HTTPException 状态码到业务码
_HTTP_STATUS_TO_CODE = {
    400: BusinessCode.PARAM_ERROR,
    403: BusinessCode.BUSINESS_ERROR,
    404: BusinessCode.NOT_FOUND,
    405: BusinessCode.PARAM_ERROR,
    409: BusinessCode.CONFLICT,
    503: BusinessCode.SERVICE_UNAVAILABLE,
}


def business_code_to_http_status(code: int) -> int:
    """根据业务码映射HTTP状态码（默认400）。"""
    return _CODE_TO_HTTP_STATUS.get(code, http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _json(status_code: int, response, headers=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"), headers=headers)


def register_exception_handlers(app: FastAPI):
    """注册全局异常处理器"""

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        request_id = _request_id(request)
        status_code = business_code_to_http_status(exc.code)
        log = logger.error if status_code >= 500 else logger.warning
        log("business_exception", request_id=request_id, status_code=status_code, **exc.log_fields())

        message, details = exc.message, exc.details
        if exc.code in _GATEWAY_CODES and not settings.DEBUG:
            message = GATEWAY_PUBLIC_MESSAGE
            details = {"provider": (exc.details or {}).get("provider")}
        response = error_response(
            code=exc.code,
            message=message,
            error_type=exc.error_type,
            details=details,
            field=exc.field,
            request_id=request_id,
        )
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if exc.retryable else None
        return _json(status_code, response, headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """请求体/参数校验失败，只回传第一个错误的字段"""
        errors = exc.errors()
        first_error = errors[0] if errors else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", [])[1:])

        response = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first_error.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": [{k: v for k, v in e.items() if k in ("loc", "msg", "type")} for e in errors]},
            field=field or None,
            request_id=_request_id(request),
        )
        return _json(http_status.HTTP_422_UNPROCESSABLE_ENTITY, response)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        response = error_response(
            code=_HTTP_STATUS_TO_CODE.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return _json(exc.status_code, response, getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.error("unhandled_exception", request_id=request_id, error=str(exc), exc_info=True)

        # 只在调试模式下回传堆栈
        details = {"exception": str(exc), "traceback": traceback.format_exc()} if app.debug else None
        response = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )
        return _json(http_status.HTTP_500_INTERNAL_SERVER_ERROR, response)
