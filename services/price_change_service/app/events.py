"""Event publishing helpers for the price change service."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from services.common.kafka import KafkaProducerStub

from .models import PriceChange

logger = logging.getLogger(__name__)

PRICE_CHANGE_APPLIED_TOPIC = "pricechange.applied.v1"
PRICE_CHANGE_ROLLED_BACK_TOPIC = "pricechange.rolled_back.v1"


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat()


class PriceChangeEventPublisher:
    """Publishes committed price change transitions.

    Publishing happens after the local commit; the durable record is the
    ``events`` row written in the same transaction as the price mutation.
    """

    def __init__(self, producer: KafkaProducerStub | None) -> None:
        self._producer = producer

    async def _emit(self, topic: str, payload: dict[str, Any]) -> None:
        if self._producer is None:
            return
        envelope = {
            "eventType": topic,
            "occurredAt": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        try:
            await self._producer.send(topic, envelope)
        except Exception:
            logger.exception("Failed to publish %s", topic)

    async def price_change_applied(self, price_change: PriceChange, *, correlation_id: str) -> None:
        await self._emit(
            PRICE_CHANGE_APPLIED_TOPIC,
            {
                "priceChange": self._serialize(price_change),
                "correlationId": correlation_id,
            },
        )

    async def price_change_rolled_back(self, price_change: PriceChange, *, correlation_id: str) -> None:
        await self._emit(
            PRICE_CHANGE_ROLLED_BACK_TOPIC,
            {
                "priceChange": self._serialize(price_change),
                "correlationId": correlation_id,
            },
        )

    @staticmethod
    def _serialize(price_change: PriceChange) -> dict[str, Any]:
        return {
            "id": price_change.id,
            "tenantId": price_change.tenant_id,
            "projectId": price_change.project_id,
            "skuId": price_change.sku_id,
            "status": price_change.status,
            "fromAmount": price_change.from_amount,
            "toAmount": price_change.to_amount,
            "currency": price_change.currency,
            "appliedAt": _iso(price_change.applied_at),
        }
