"""Connector target inference and platform variant resolution."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any

from .models import PriceChange

logger = logging.getLogger(__name__)

SkuAttributesLookup = Callable[[str], Awaitable[Mapping[str, Any] | None]]


class ConnectorTarget(str, Enum):
    SHOPIFY = "shopify"
    AMAZON = "amazon"

    @classmethod
    def parse(cls, value: str) -> ConnectorTarget:
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unsupported connector target: {value!r}")


def _clean(value: Any) -> str | None:
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def infer_target_name(price_change: PriceChange, default: str) -> str:
    """Pick the connector target: connector status, then context, then ``default``."""

    from_status = _clean(_as_mapping(price_change.connector_status).get("target"))
    if from_status:
        return from_status
    from_context = _clean(_as_mapping(price_change.context).get("target"))
    if from_context:
        return from_context
    return default


def context_keys(target: ConnectorTarget) -> tuple[str, ...]:
    return (
        f"{target.value}VariantId",
        "variantId",
        "connectorVariantId",
        "externalVariantId",
        f"{target.value}_variant_id",
    )


class VariantResolver:
    """Locates the platform variant id for a price change.

    Sources are tried in order and the first non-empty value wins:

    1. the ``variant_id`` column on the price change
    2. well-known context keys, then ``context[<target>]["variantId"]``
    3. the last connector status (``variantId``, ``metadata.variantId``, ``metadata.externalId``)
    4. the SKU attributes (``attributes[<target>]["variantId"]``), fetched lazily
    """

    def __init__(self, target: ConnectorTarget) -> None:
        self.target = target

    def from_record(self, price_change: PriceChange) -> str | None:
        direct = _clean(price_change.variant_id)
        if direct:
            return direct
        return self.from_context(price_change) or self.from_connector_status(price_change)

    def from_context(self, price_change: PriceChange) -> str | None:
        context = _as_mapping(price_change.context)
        for key in context_keys(self.target):
            resolved = _clean(context.get(key))
            if resolved:
                return resolved
        return _clean(_as_mapping(context.get(self.target.value)).get("variantId"))

    @staticmethod
    def from_connector_status(price_change: PriceChange) -> str | None:
        connector_status = _as_mapping(price_change.connector_status)
        direct = _clean(connector_status.get("variantId"))
        if direct:
            return direct
        metadata = _as_mapping(connector_status.get("metadata"))
        return _clean(metadata.get("variantId")) or _clean(metadata.get("externalId"))

    def from_sku_attributes(self, attributes: Mapping[str, Any] | None) -> str | None:
        platform = _as_mapping(_as_mapping(attributes).get(self.target.value))
        return _clean(platform.get("variantId"))

    async def resolve(
        self,
        price_change: PriceChange,
        sku_lookup: SkuAttributesLookup | None = None,
    ) -> str | None:
        local = self.from_record(price_change)
        if local or sku_lookup is None:
            return local
        try:
            attributes = await sku_lookup(price_change.sku_id)
        except Exception:
            logger.warning(
                "SKU attribute lookup failed for %s (price change %s)",
                price_change.sku_id,
                price_change.id,
                exc_info=True,
            )
            return None
        return self.from_sku_attributes(attributes)
