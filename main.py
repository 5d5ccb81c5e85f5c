"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import payments as payments_routes
from api.routes import refunds as refunds_routes
from application.ports.payment_gateway import PaymentGateway
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from core.settings import payment_settings
from infrastructure.database import create_tables
from infrastructure.external.payments import get_payment_gateway


configure_logging()
logger = get_logger(__name__)


def _open_payment_gateway() -> Optional[PaymentGateway]:
    """进程内共享一个网关客户端（httpx 连接池）；未配置密钥时返回 None，支付接口返回 503"""
    try:
        gateway = get_payment_gateway()
    except (RuntimeError, ValueError) as exc:
        logger.error("payment_gateway_init_failed", provider=payment_settings.provider, error=str(exc))
        return None
    logger.info("payment_gateway_initialized", provider=payment_settings.provider, currency=payment_settings.currency)
    return gateway


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 生产环境使用 Alembic 迁移（alembic upgrade head）
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", environment=settings.ENVIRONMENT)

    app.state.payment_gateway = _open_payment_gateway()
    yield

    if app.state.payment_gateway is not None:
        await app.state.payment_gateway.aclose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="课程平台支付结算与退款对账服务",
)

# 中间件按添加的逆序执行：RequestID 最先，为日志中间件提供 request_id
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(payments_routes.router, prefix="/api/v1")
app.include_router(refunds_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    return success_response(
        data={"name": settings.PROJECT_NAME, "version": settings.VERSION, "docs": "/docs"},
        message="Welcome",
    )


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """健康检查；gateway 为 false 时进程存活但无法结算"""
    gateway_ready = getattr(request.app.state, "payment_gateway", None) is not None
    return success_response(data={"status": "healthy", "gateway": gateway_ready}, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
