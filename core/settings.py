"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept separate from core.config.Settings so gateway credentials are loaded
only by the payment components that need them.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 10.0
    write: float = 5.0
    total: float = 15.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    signature_header: str = "x-paystack-signature"
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class PaystackSettings(BaseModel):
    secret_key: Optional[str] = None
    base_url: str = "https://api.paystack.co"
    callback_url: Optional[str] = None


class ReconcileSettings(BaseModel):
    # PENDING payments older than this are re-verified by the reconciliation task
    pending_after_minutes: int = 15
    batch_size: int = 100


class PaymentSettings(BaseSettings):
    provider: str = "paystack"
    currency: str = "GHS"
    reference_prefix: str = "KM"
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)

    paystack: PaystackSettings = Field(default_factory=PaystackSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
