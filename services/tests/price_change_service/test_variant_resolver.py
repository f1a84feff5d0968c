from types import SimpleNamespace
from typing import Any, cast

import pytest

from services.price_change_service.app.models import PriceChange
from services.price_change_service.app.variants import ConnectorTarget, VariantResolver, infer_target_name


def _price_change(**overrides: Any) -> PriceChange:
    values: dict[str, Any] = {
        "id": "pc_1",
        "sku_id": "sku1",
        "variant_id": None,
        "context": None,
        "connector_status": None,
    }
    values.update(overrides)
    return cast(PriceChange, SimpleNamespace(**values))


class _Lookup:
    def __init__(self, attributes: dict[str, Any] | None = None, *, error: Exception | None = None) -> None:
        self.attributes = attributes
        self.error = error
        self.calls: list[str] = []

    async def __call__(self, sku_id: str) -> dict[str, Any] | None:
        self.calls.append(sku_id)
        if self.error is not None:
            raise self.error
        return self.attributes


@pytest.mark.asyncio
async def test_direct_variant_column_wins_over_everything() -> None:
    lookup = _Lookup({"shopify": {"variantId": "from_sku"}})
    price_change = _price_change(
        variant_id=" direct ",
        context={"variantId": "from_context"},
        connector_status={"variantId": "from_status"},
    )

    resolved = await VariantResolver(ConnectorTarget.SHOPIFY).resolve(price_change, lookup)

    assert resolved == "direct"
    assert lookup.calls == []


@pytest.mark.parametrize(
    ("context", "expected"),
    [
        ({"shopifyVariantId": "a", "variantId": "b"}, "a"),
        ({"variantId": "b", "connectorVariantId": "c"}, "b"),
        ({"connectorVariantId": "c", "externalVariantId": "d"}, "c"),
        ({"externalVariantId": "d", "shopify_variant_id": "e"}, "d"),
        ({"shopify_variant_id": "e"}, "e"),
        ({"shopify": {"variantId": "nested"}}, "nested"),
        ({"shopifyVariantId": "   ", "variantId": "b"}, "b"),
        ({"variantId": 123456}, "123456"),
    ],
)
def test_context_keys_are_checked_in_order(context: dict[str, Any], expected: str) -> None:
    resolver = VariantResolver(ConnectorTarget.SHOPIFY)

    assert resolver.from_context(_price_change(context=context)) == expected


def test_context_keys_follow_the_target() -> None:
    price_change = _price_change(context={"shopifyVariantId": "shop", "amazonVariantId": "amz"})

    assert VariantResolver(ConnectorTarget.AMAZON).from_context(price_change) == "amz"


@pytest.mark.parametrize(
    ("connector_status", "expected"),
    [
        ({"variantId": "status_variant", "metadata": {"variantId": "meta"}}, "status_variant"),
        ({"metadata": {"variantId": "meta", "externalId": "ext"}}, "meta"),
        ({"metadata": {"externalId": "ext"}}, "ext"),
        ({"metadata": "not-a-mapping"}, None),
        ("garbage", None),
    ],
)
def test_connector_status_sources(connector_status: Any, expected: str | None) -> None:
    price_change = _price_change(connector_status=connector_status)

    assert VariantResolver.from_connector_status(price_change) == expected


@pytest.mark.asyncio
async def test_sku_attributes_are_only_fetched_when_local_sources_are_empty() -> None:
    lookup = _Lookup({"shopify": {"variantId": "from_sku"}})

    resolved = await VariantResolver(ConnectorTarget.SHOPIFY).resolve(_price_change(), lookup)

    assert resolved == "from_sku"
    assert lookup.calls == ["sku1"]


@pytest.mark.asyncio
async def test_failing_sku_lookup_is_treated_as_absent(caplog: pytest.LogCaptureFixture) -> None:
    lookup = _Lookup(error=RuntimeError("catalog offline"))

    resolved = await VariantResolver(ConnectorTarget.SHOPIFY).resolve(_price_change(), lookup)

    assert resolved is None
    assert "SKU attribute lookup failed" in caplog.text


@pytest.mark.asyncio
async def test_no_source_resolves_to_none() -> None:
    resolver = VariantResolver(ConnectorTarget.SHOPIFY)

    assert await resolver.resolve(_price_change(context={"skuCode": "SKU-1"})) is None
    assert await resolver.resolve(_price_change(), _Lookup(None)) is None
    assert await resolver.resolve(_price_change(), _Lookup({"amazon": {"variantId": "amz"}})) is None


def test_infer_target_prefers_connector_status_then_context() -> None:
    assert infer_target_name(_price_change(connector_status={"target": "amazon"}, context={"target": "x"}), "shopify") == "amazon"
    assert infer_target_name(_price_change(context={"target": "amazon"}), "shopify") == "amazon"
    assert infer_target_name(_price_change(), "shopify") == "shopify"


def test_connector_target_parse() -> None:
    assert ConnectorTarget.parse(" Shopify ") is ConnectorTarget.SHOPIFY
    assert ConnectorTarget.parse("AMAZON") is ConnectorTarget.AMAZON
    with pytest.raises(ValueError):
        ConnectorTarget.parse("ebay")
