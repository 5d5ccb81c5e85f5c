"""
API依赖项 - 组装应用服务

网关客户端由应用生命周期（main.lifespan）创建并挂在 app.state 上，
这里只负责把它和 Unit of Work 工厂注入到应用服务中。
"""
from typing import Callable

from fastapi import Depends, HTTPException, Request, status

from application.ports.payment_gateway import PaymentGateway
from application.services.refund_service import RefundService
from application.services.verification_service import PaymentVerificationService
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.unit_of_work import make_uow_factory


def get_payment_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment gateway is not configured",
        )
    return gateway


def get_uow_factory() -> Callable[..., AbstractUnitOfWork]:
    return make_uow_factory()


def get_refund_service(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
) -> RefundService:
    return RefundService(uow_factory=uow_factory, gateway=gateway)


def get_verification_service(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    refund_service: RefundService = Depends(get_refund_service),
) -> PaymentVerificationService:
    return PaymentVerificationService(uow_factory=uow_factory, gateway=gateway, refund_service=refund_service)
