import json
from types import SimpleNamespace
from typing import Any, cast

import httpx
import pytest

from services.price_change_service.app.connectors import (
    ConnectorFactory,
    ConnectorInitError,
    HttpConnector,
    InMemoryConnector,
    validate_integration,
)
from services.price_change_service.app.models import PlatformIntegration
from services.price_change_service.app.variants import ConnectorTarget


def _integration(**overrides: Any) -> PlatformIntegration:
    values: dict[str, Any] = {
        "id": "int_shopify",
        "platform": "shopify",
        "shop_domain": "demo.myshopify.com",
        "access_token": "test-token",
    }
    values.update(overrides)
    return cast(PlatformIntegration, SimpleNamespace(**values))


def _connector(handler) -> HttpConnector:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpConnector(
        client=client,
        base_url="http://bridge.local/",
        target=ConnectorTarget.SHOPIFY,
        integration=_integration(),
    )


@pytest.mark.asyncio
async def test_http_connector_posts_price_update() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"externalId": "variant_approved", "success": True, "oldPrice": 4990, "newPrice": 5290},
        )

    connector = _connector(handler)
    result = await connector.update_price(
        external_id="variant_approved",
        price=5290,
        currency="USD",
        metadata={"priceChangeId": "pc_approved"},
    )

    assert result.success is True
    assert result.old_price == 4990
    assert result.new_price == 5290
    assert result.platform == "shopify"
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "http://bridge.local/v1/shopify/prices"
    assert request.headers["Authorization"] == "Bearer test-token"
    assert request.headers["Idempotency-Key"] == "variant_approved:5290:USD"
    assert json.loads(request.content) == {
        "externalId": "variant_approved",
        "price": 5290,
        "currency": "USD",
        "metadata": {"priceChangeId": "pc_approved"},
        "shopDomain": "demo.myshopify.com",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "body", "retryable", "error"),
    [
        (429, {"error": "Throttled"}, True, "Connector returned HTTP 429"),
        (503, None, True, "Connector returned HTTP 503"),
        (408, None, True, "Connector returned HTTP 408"),
        (400, {"error": "Invalid price"}, False, "Invalid price"),
        (404, None, False, "Connector returned HTTP 404"),
    ],
)
async def test_http_connector_maps_failures(status_code: int, body, retryable: bool, error: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if body is None:
            return httpx.Response(status_code, text="unavailable")
        return httpx.Response(status_code, json=body)

    result = await _connector(handler).update_price(
        external_id="variant_approved", price=5290, currency="USD", metadata=None
    )

    assert result.success is False
    assert result.retryable is retryable
    assert result.error == error


@pytest.mark.asyncio
async def test_http_connector_transport_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await _connector(handler).update_price(
        external_id="variant_approved", price=5290, currency="USD", metadata=None
    )

    assert result.success is False
    assert result.retryable is True
    assert "connection refused" in (result.error or "")


@pytest.mark.asyncio
async def test_http_connector_business_failure_in_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": "API failure", "retryable": False})

    result = await _connector(handler).update_price(
        external_id="variant_approved", price=5290, currency="USD", metadata=None
    )

    assert result.success is False
    assert result.error == "API failure"
    assert result.retryable is False


@pytest.mark.asyncio
async def test_in_memory_connector_is_idempotent_and_scriptable() -> None:
    connector = InMemoryConnector(prices={"v1": 4990})

    first = await connector.update_price(external_id="v1", price=5290, currency="USD", metadata=None)
    second = await connector.update_price(external_id="v1", price=5290, currency="USD", metadata=None)
    assert (first.old_price, first.new_price) == (4990, 5290)
    assert second.old_price == second.new_price == 5290

    connector.fail_next("API failure")
    failed = await connector.update_price(external_id="v1", price=5490, currency="USD", metadata=None)
    assert failed.success is False
    assert failed.error == "API failure"
    assert failed.external_id == "v1"
    assert connector.prices["v1"] == 5290

    connector.raise_next(RuntimeError("boom"))
    with pytest.raises(RuntimeError):
        await connector.update_price(external_id="v1", price=5490, currency="USD", metadata=None)
    assert len(connector.calls) == 4


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"access_token": None}, "Access token is missing"),
        ({"access_token": " test-token"}, "invalid whitespace"),
        ({"shop_domain": None}, "Shop domain is missing"),
        ({"shop_domain": "demo.example.com"}, "Invalid shop domain format"),
        ({"shop_domain": "-demo.myshopify.com"}, "Invalid shop domain format"),
    ],
)
def test_validate_integration_rejects_bad_credentials(overrides: dict[str, Any], message: str) -> None:
    with pytest.raises(ConnectorInitError, match=message):
        validate_integration(_integration(**overrides), ConnectorTarget.SHOPIFY)


def test_validate_integration_accepts_amazon_without_shop_domain() -> None:
    validate_integration(_integration(platform="amazon", shop_domain=None), ConnectorTarget.AMAZON)


@pytest.mark.asyncio
async def test_factory_builds_in_memory_connector_per_target() -> None:
    factory = ConnectorFactory()

    shopify = await factory.create(_integration(), ConnectorTarget.SHOPIFY)
    again = await factory.create(_integration(), ConnectorTarget.SHOPIFY)
    amazon = await factory.create(_integration(platform="amazon"), ConnectorTarget.AMAZON)

    assert shopify is again
    assert shopify is factory.in_memory(ConnectorTarget.SHOPIFY)
    assert amazon is not shopify
    assert isinstance(amazon, InMemoryConnector)
    assert amazon.platform == "amazon"
    await factory.close()


@pytest.mark.asyncio
async def test_factory_uses_bridge_when_configured() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
    factory = ConnectorFactory(bridge_url="http://bridge.local", client=client)

    connector = await factory.create(_integration(), ConnectorTarget.SHOPIFY)
    assert isinstance(connector, HttpConnector)

    with pytest.raises(ConnectorInitError):
        await factory.create(_integration(access_token=""), ConnectorTarget.SHOPIFY)

    await factory.close()
    assert client.is_closed is False
    await client.aclose()
