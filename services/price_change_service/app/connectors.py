"""Platform connector contract and implementations used by the lifecycle engine."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Protocol

import httpx

from .metrics import PRICE_CHANGE_CONNECTOR_LATENCY_SECONDS
from .models import PlatformIntegration
from .variants import ConnectorTarget

logger = logging.getLogger(__name__)

_SHOP_DOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*\.myshopify\.com$")
_RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


@dataclass(slots=True)
class PriceUpdateResult:
    external_id: str
    platform: str
    success: bool
    currency: str
    updated_at: datetime
    old_price: int | None = None
    new_price: int | None = None
    error: str | None = None
    retryable: bool | None = None
    metadata: dict[str, Any] | None = None


class ConnectorGateway(Protocol):
    async def update_price(
        self,
        *,
        external_id: str,
        price: int,
        currency: str,
        metadata: dict[str, Any] | None,
    ) -> PriceUpdateResult: ...


class ConnectorProvider(Protocol):
    async def create(self, integration: PlatformIntegration, target: ConnectorTarget) -> ConnectorGateway: ...


class ConnectorInitError(Exception):
    """Raised when a connector cannot be built from the stored integration."""


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(slots=True)
class RecordedPriceUpdate:
    external_id: str
    price: int
    currency: str
    metadata: dict[str, Any] | None


@dataclass
class InMemoryConnector:
    """Price book kept in process; records calls and can be scripted to fail."""

    platform: str = ConnectorTarget.SHOPIFY.value
    prices: dict[str, int] = field(default_factory=dict)
    calls: list[RecordedPriceUpdate] = field(default_factory=list)
    queued_results: list[PriceUpdateResult | Exception] = field(default_factory=list)

    def fail_next(self, error: str = "Connector reported an error.", *, retryable: bool = False) -> None:
        self.queued_results.append(
            PriceUpdateResult(
                external_id="",
                platform=self.platform,
                success=False,
                currency="",
                updated_at=_now(),
                error=error,
                retryable=retryable,
            )
        )

    def raise_next(self, exc: Exception) -> None:
        self.queued_results.append(exc)

    async def update_price(
        self,
        *,
        external_id: str,
        price: int,
        currency: str,
        metadata: dict[str, Any] | None,
    ) -> PriceUpdateResult:
        self.calls.append(
            RecordedPriceUpdate(external_id=external_id, price=price, currency=currency, metadata=metadata)
        )
        if self.queued_results:
            scripted = self.queued_results.pop(0)
            if isinstance(scripted, Exception):
                raise scripted
            scripted.external_id = external_id
            scripted.currency = currency
            return scripted

        old_price = self.prices.get(external_id)
        self.prices[external_id] = price
        return PriceUpdateResult(
            external_id=external_id,
            platform=self.platform,
            success=True,
            currency=currency,
            updated_at=_now(),
            old_price=old_price,
            new_price=price,
        )


class HttpConnector:
    """Talks to a connector bridge that fronts the commerce platform APIs.

    Rate limiting and server errors come back as retryable failures; other
    client errors are terminal. Transport errors and timeouts are retryable.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        base_url: str,
        target: ConnectorTarget,
        integration: PlatformIntegration,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._target = target
        self._integration = integration

    async def update_price(
        self,
        *,
        external_id: str,
        price: int,
        currency: str,
        metadata: dict[str, Any] | None,
    ) -> PriceUpdateResult:
        url = f"{self._base_url}/v1/{self._target.value}/prices"
        payload = {
            "externalId": external_id,
            "price": price,
            "currency": currency,
            "metadata": metadata or {},
            "shopDomain": self._integration.shop_domain,
        }
        headers = {
            "Authorization": f"Bearer {self._integration.access_token}",
            "Idempotency-Key": f"{external_id}:{price}:{currency}",
        }
        start = perf_counter()
        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            return self._failure(external_id, currency, f"Connector request failed: {exc}", retryable=True)
        finally:
            PRICE_CHANGE_CONNECTOR_LATENCY_SECONDS.labels(target=self._target.value).observe(perf_counter() - start)

        if response.status_code in _RETRYABLE_STATUS_CODES or response.status_code >= 500:
            return self._failure(
                external_id, currency, f"Connector returned HTTP {response.status_code}", retryable=True
            )
        if response.status_code >= 400:
            return self._failure(
                external_id, currency, self._error_message(response), retryable=False
            )

        try:
            body = response.json()
        except ValueError:
            return self._failure(external_id, currency, "Connector returned a malformed body", retryable=False)
        return PriceUpdateResult(
            external_id=str(body.get("externalId") or external_id),
            platform=self._target.value,
            success=bool(body.get("success", True)),
            currency=str(body.get("currency") or currency),
            updated_at=_now(),
            old_price=body.get("oldPrice"),
            new_price=body.get("newPrice", price),
            error=body.get("error"),
            retryable=body.get("retryable"),
            metadata=body.get("metadata"),
        )

    def _failure(self, external_id: str, currency: str, error: str, *, retryable: bool) -> PriceUpdateResult:
        return PriceUpdateResult(
            external_id=external_id,
            platform=self._target.value,
            success=False,
            currency=currency,
            updated_at=_now(),
            error=error,
            retryable=retryable,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"Connector returned HTTP {response.status_code}"
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"Connector returned HTTP {response.status_code}"


def validate_integration(integration: PlatformIntegration, target: ConnectorTarget) -> None:
    token = integration.access_token
    if not token:
        raise ConnectorInitError("Access token is missing. Please reconnect the integration.")
    if token.strip() != token:
        raise ConnectorInitError("Access token contains invalid whitespace. Please reconnect the integration.")
    if target is ConnectorTarget.SHOPIFY:
        domain = integration.shop_domain or ""
        if not domain:
            raise ConnectorInitError("Shop domain is missing. Please reconnect the integration.")
        if not _SHOP_DOMAIN_PATTERN.match(domain):
            raise ConnectorInitError(
                f"Invalid shop domain format: {domain}. Expected format: yourstore.myshopify.com"
            )


class ConnectorFactory:
    """Builds connectors for stored integrations.

    With a bridge URL configured every connector shares one pooled HTTP client;
    otherwise an in-memory connector per target is returned.
    """

    def __init__(
        self,
        *,
        bridge_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._bridge_url = bridge_url
        self._client = client
        self._owns_client = client is None
        self._timeout_seconds = timeout_seconds
        self._in_memory: dict[ConnectorTarget, InMemoryConnector] = {}

    def in_memory(self, target: ConnectorTarget) -> InMemoryConnector:
        if target not in self._in_memory:
            self._in_memory[target] = InMemoryConnector(platform=target.value)
        return self._in_memory[target]

    async def create(self, integration: PlatformIntegration, target: ConnectorTarget) -> ConnectorGateway:
        validate_integration(integration, target)
        if self._bridge_url is None:
            return self.in_memory(target)
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_seconds))
        logger.debug("Using connector bridge %s for %s integration %s", self._bridge_url, target.value, integration.id)
        return HttpConnector(client=self._client, base_url=self._bridge_url, target=target, integration=integration)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
