"""
Publish payment domain events.

Events are emitted as structured log records; a message bus can subscribe
here later without touching the services.
"""
from __future__ import annotations

from dataclasses import asdict

from core.logging_config import get_logger
from domain.payment.events import PaymentEvent


logger = get_logger(__name__)


def publish(event: PaymentEvent) -> None:
    data = asdict(event)
    data["occurred_at"] = event.occurred_at.isoformat()
    logger.info("payment_event", event_name=event.name, **data)
