"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    GatewayInitialization,
    GatewayRefund,
    GatewayVerification,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Implementations should be async and side-effect free beyond IO.
    Transport failures raise GatewayUnavailable, explicit provider
    refusals raise GatewayRejected.
    """

    provider: str

    async def initialize(
        self,
        email: str,
        amount: int,
        reference: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> GatewayInitialization: ...

    async def verify(self, reference: str) -> GatewayVerification: ...

    async def refund(
        self,
        provider_transaction_id: str,
        amount: int,
        reason: Optional[str] = None,
    ) -> GatewayRefund: ...

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> None: ...

    async def aclose(self) -> None: ...
