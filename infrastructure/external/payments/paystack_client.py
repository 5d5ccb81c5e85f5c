"""
Paystack adapter over the REST API (httpx).

Endpoints used:
- POST /transaction/initialize  {email, amount, reference, callback_url, metadata}
- GET  /transaction/verify/{reference}
- POST /refund                  {transaction, amount, reason}

Every response is wrapped in ``{status: bool, message, data}``; a ``status: false``
body is treated as a rejection even when the HTTP status is 2xx. Webhooks are
signed with HMAC-SHA512 of the raw body using the secret key
(``x-paystack-signature``).
"""
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Any, Optional

import httpx

from application.dtos.payments import GatewayInitialization, GatewayRefund, GatewayVerification
from core.settings import payment_settings
from domain.payment.exceptions import GatewayRejected, WebhookSignatureError
from infrastructure.external.payments.base import BasePaymentClient


class PaystackClient(BasePaymentClient):
    provider = "paystack"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        callback_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        secret_key = secret_key or payment_settings.paystack.secret_key
        if not secret_key:
            raise RuntimeError("PAYMENT__PAYSTACK__SECRET_KEY not configured")
        super().__init__(
            base_url=base_url or payment_settings.paystack.base_url,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            timeouts=payment_settings.timeouts,
            retry=payment_settings.retry,
            transport=transport,
        )
        self._secret_key = secret_key
        self._callback_url = callback_url or payment_settings.paystack.callback_url

    def _unwrap(self, body: dict[str, Any], action: str) -> dict[str, Any]:
        if not body.get("status"):
            message = body.get("message") or f"Paystack {action} failed"
            self._log("gateway_rejected", action=action, message=message)
            raise GatewayRejected(message, provider=self.provider, details={"action": action})
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def initialize(
        self,
        email: str,
        amount: int,
        reference: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> GatewayInitialization:
        payload: dict[str, Any] = {
            "email": email,
            "amount": amount,
            "reference": reference,
            "metadata": metadata or {},
        }
        if self._callback_url:
            payload["callback_url"] = self._callback_url
        body = await self._request("POST", "/transaction/initialize", json=payload)
        data = self._unwrap(body, "initialize")
        self._log("gateway_initialize_ok", reference=reference, amount=amount)
        return GatewayInitialization(
            authorization_url=data.get("authorization_url", ""),
            access_code=data.get("access_code"),
            reference=data.get("reference") or reference,
        )

    async def verify(self, reference: str) -> GatewayVerification:
        body = await self._request("GET", f"/transaction/verify/{reference}")
        data = self._unwrap(body, "verify")
        transaction_id = data.get("id")
        self._log("gateway_verify_ok", reference=reference, provider_status=data.get("status"))
        return GatewayVerification(
            provider_status=str(data.get("status") or ""),
            provider_transaction_id=str(transaction_id) if transaction_id is not None else None,
            amount_paid=int(data.get("amount") or 0),
            currency=data.get("currency"),
            paid_at=_parse_datetime(data.get("paid_at") or data.get("paidAt")),
            raw=data,
        )

    async def refund(
        self,
        provider_transaction_id: str,
        amount: int,
        reason: Optional[str] = None,
    ) -> GatewayRefund:
        payload: dict[str, Any] = {"transaction": provider_transaction_id, "amount": amount}
        if reason:
            payload["reason"] = reason
        body = await self._request("POST", "/refund", json=payload)
        if not body.get("status"):
            # A refusal in the envelope is an answer, not an error: surface the message verbatim
            return GatewayRefund(accepted=False, message=body.get("message"))
        data = body.get("data") or {}
        ref = data.get("reference") or data.get("id")
        self._log("gateway_refund_ok", transaction=provider_transaction_id, amount=amount)
        return GatewayRefund(
            accepted=True,
            provider_refund_reference=str(ref) if ref is not None else None,
            message=body.get("message"),
        )

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise WebhookSignatureError("Missing webhook signature", provider=self.provider)
        expected = sign_webhook(self._secret_key, body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise WebhookSignatureError("Invalid webhook signature", provider=self.provider)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def sign_webhook(secret_key: str, body: bytes) -> str:
    """Compute the signature Paystack would send for ``body``."""
    return hmac.new(secret_key.encode("utf-8"), body, hashlib.sha512).hexdigest()
