"""
HTTP plumbing shared by gateway clients: one pooled httpx client, tenacity
retries on transport failures, and the mapping of HTTP outcomes onto
GatewayUnavailable / GatewayRejected.

Only transport errors are retried here. A 5xx or 429 response is surfaced
immediately as GatewayUnavailable so the caller decides whether the
operation is safe to repeat (a refund POST may already have been accepted).
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.logging_config import get_logger
from core.settings import PaymentRetry, PaymentTimeouts
from domain.payment.exceptions import GatewayRejected, GatewayUnavailable


logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
TRANSPORT_ERRORS = (httpx.TimeoutException, httpx.TransportError)


class BasePaymentClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url
        self._headers = headers or {}
        self._timeouts = timeouts or PaymentTimeouts()
        self._retry_policy = retry or PaymentRetry()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        """Lazily created and reused until aclose()."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=httpx.Timeout(
                    self._timeouts.total,
                    connect=self._timeouts.connect,
                    read=self._timeouts.read,
                    write=self._timeouts.write,
                ),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._retry_policy.max + 1),
            wait=wait_exponential(multiplier=self._retry_policy.base_backoff, min=0.1, max=2.0),
            retry=retry_if_exception_type(TRANSPORT_ERRORS),
            reraise=True,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Send a request and return the decoded JSON body."""
        try:
            async for attempt in self._retrying():
                with attempt:
                    resp = await self.http.request(method, path, **kwargs)
        except TRANSPORT_ERRORS as exc:
            self._log("gateway_transport_error", method=method, path=path, error=str(exc))
            raise GatewayUnavailable(
                f"{self.provider} unreachable: {type(exc).__name__}",
                provider=self.provider,
            ) from exc

        body = self._decode(resp)
        message = body.get("message") or f"{self.provider} returned HTTP {resp.status_code}"
        if resp.status_code in RETRYABLE_STATUS_CODES:
            self._log("gateway_unavailable", method=method, path=path, status_code=resp.status_code)
            raise GatewayUnavailable(message, provider=self.provider, provider_code=str(resp.status_code))
        if resp.status_code >= 400:
            self._log("gateway_rejected", method=method, path=path, status_code=resp.status_code, message=message)
            raise GatewayRejected(message, provider=self.provider, provider_code=str(resp.status_code))
        return body

    def _decode(self, resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            # an HTML error page from a proxy is still an outage, not a verdict
            if resp.status_code in RETRYABLE_STATUS_CODES:
                return {}
            raise GatewayRejected(
                f"{self.provider} returned a non-JSON response",
                provider=self.provider,
                provider_code=str(resp.status_code),
            )
        return body if isinstance(body, dict) else {"data": body}

    def _log(self, event: str, **kwargs) -> None:
        logger.info(event, provider=self.provider, **kwargs)
