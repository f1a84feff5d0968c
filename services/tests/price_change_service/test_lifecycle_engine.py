from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select

from services.common import create_engine, dispose_engines, get_session_factory
from services.price_change_service.app.compensation import CompensationCoordinator
from services.price_change_service.app.connectors import ConnectorFactory, InMemoryConnector, PriceUpdateResult
from services.price_change_service.app.errors import (
    ConnectorError,
    ConnectorUnavailable,
    InternalError,
    InvalidStatus,
    PriceNotFound,
    RollbackFailed,
)
from services.price_change_service.app.lifecycle import LifecycleEngine, TransitionRequest
from services.price_change_service.app.models import (
    AuditRecord,
    Base,
    PlatformIntegration,
    Price,
    PriceChange,
    PriceVersion,
    Project,
)
from services.price_change_service.app.repository import PriceChangeRepository
from services.price_change_service.app.variants import ConnectorTarget


class _MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


class _FailingMutationRepository(PriceChangeRepository):
    """Fails the local write that follows a successful connector call."""

    async def record_price_mutation(self, price_change, **kwargs: Any):
        raise RuntimeError("disk full")


class _RefusedUpdateRepository(PriceChangeRepository):
    """The conditional update matches no row although the stored status never moved."""

    async def transition(self, price_change, **kwargs: Any) -> bool:
        return False


class _MissingPriceRepository(PriceChangeRepository):
    """The live price disappears between the pre-check and the write."""

    async def record_price_mutation(self, price_change, **kwargs: Any):
        raise PriceNotFound()


class _StaticConnectors:
    def __init__(self, connector: InMemoryConnector) -> None:
        self.connector = connector
        self.created: list[tuple[str, ConnectorTarget]] = []

    async def create(self, integration: PlatformIntegration, target: ConnectorTarget) -> InMemoryConnector:
        self.created.append((integration.id, target))
        return self.connector


class _InterleavingConnector:
    """Runs a competing request right after the first price update lands."""

    def __init__(self, inner: InMemoryConnector, competitor: Callable[[], Awaitable[Any]]) -> None:
        self.inner = inner
        self.competitor: Callable[[], Awaitable[Any]] | None = competitor

    async def update_price(self, **kwargs: Any) -> PriceUpdateResult:
        result = await self.inner.update_price(**kwargs)
        competitor, self.competitor = self.competitor, None
        if competitor is not None:
            await competitor()
        return result


def _success(old_price: int | None = 4990, new_price: int | None = 5290) -> PriceUpdateResult:
    return PriceUpdateResult(
        external_id="",
        platform="shopify",
        success=True,
        currency="",
        updated_at=datetime.now(tz=timezone.utc),
        old_price=old_price,
        new_price=new_price,
    )


async def _seed(tmp_path) -> str:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'lifecycle.db'}"
    engine = create_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with get_session_factory(database_url)() as session:
        session.add(Project(id="proj1", tenant_id="tenant1", slug="demo"))
        await session.flush()
        session.add_all(
            [
                Price(id="price1", sku_id="sku1", currency="USD", amount=4990),
                PlatformIntegration(
                    id="int_shopify",
                    project_id="proj1",
                    platform="shopify",
                    shop_domain="demo.myshopify.com",
                    access_token="test-token",
                ),
                PriceChange(
                    id="pc_approved",
                    tenant_id="tenant1",
                    project_id="proj1",
                    sku_id="sku1",
                    from_amount=4990,
                    to_amount=5290,
                    currency="USD",
                    variant_id="variant_approved",
                    policy_result={"ok": True, "checks": []},
                    status="APPROVED",
                ),
                PriceChange(
                    id="pc_applied",
                    tenant_id="tenant1",
                    project_id="proj1",
                    sku_id="sku1",
                    from_amount=4590,
                    to_amount=4990,
                    currency="USD",
                    policy_result={"ok": True, "checks": []},
                    connector_status={"target": "shopify", "state": "SYNCED", "variantId": "variant_applied"},
                    status="APPLIED",
                ),
                PriceChange(
                    id="pc_amazon",
                    tenant_id="tenant1",
                    project_id="proj1",
                    sku_id="sku1",
                    from_amount=4990,
                    to_amount=5090,
                    currency="USD",
                    context={"target": "ebay", "variantId": "variant_ebay"},
                    policy_result={"ok": True, "checks": []},
                    status="APPROVED",
                ),
                PriceChange(
                    id="pc_orphan",
                    tenant_id="tenant1",
                    project_id="proj1",
                    sku_id="sku_without_price",
                    from_amount=100,
                    to_amount=200,
                    currency="USD",
                    variant_id="variant_orphan",
                    policy_result={"ok": True, "checks": []},
                    status="APPROVED",
                ),
            ]
        )
        await session.commit()
    return database_url


def _request(price_change_id: str) -> TransitionRequest:
    return TransitionRequest(
        price_change_id=price_change_id,
        project_id="proj1",
        actor="user-admin",
        correlation_id="corr-engine",
    )


async def _state(database_url: str) -> tuple[str, str | None, int, int, int]:
    async with get_session_factory(database_url)() as session:
        price_change = await session.get(PriceChange, "pc_approved")
        price = await session.get(Price, "price1")
        versions = (await session.execute(select(func.count()).select_from(PriceVersion))).scalar_one()
        audits = (await session.execute(select(func.count()).select_from(AuditRecord))).scalar_one()
        return price_change.status, price_change.applied_at, price.amount, versions, audits


@pytest.mark.asyncio
async def test_local_failure_after_connector_success_is_compensated(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    connector = InMemoryConnector(prices={"variant_approved": 4990})
    tracker = _MetricTracker("price_change_compensations_total", {"action": "apply", "outcome": "reverted"})

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(_FailingMutationRepository(session), _StaticConnectors(connector))
        with pytest.raises(InternalError) as excinfo:
            await engine.apply(_request("pc_approved"))

    assert excinfo.value.status_code == 500
    assert [(call.external_id, call.price) for call in connector.calls] == [
        ("variant_approved", 5290),
        ("variant_approved", 4990),
    ]
    assert connector.calls[1].metadata["compensation"] is True
    assert connector.prices["variant_approved"] == 4990
    assert tracker.delta() == 1
    assert await _state(database_url) == ("APPROVED", None, 4990, 0, 0)
    await dispose_engines()


@pytest.mark.asyncio
async def test_compensation_failure_does_not_change_reported_error(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    connector = InMemoryConnector()
    connector.queued_results.append(_success())
    connector.raise_next(RuntimeError("platform down"))
    tracker = _MetricTracker("price_change_compensations_total", {"action": "apply", "outcome": "error"})

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(_FailingMutationRepository(session), _StaticConnectors(connector))
        with pytest.raises(InternalError):
            await engine.apply(_request("pc_approved"))

    assert len(connector.calls) == 2
    assert connector.calls[1].price == 4990
    assert tracker.delta() == 1
    assert (await _state(database_url))[0] == "APPROVED"
    await dispose_engines()


@pytest.mark.asyncio
async def test_compensation_uses_local_price_when_connector_omits_old_price(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    connector = InMemoryConnector()
    connector.queued_results.append(_success(old_price=None))

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(_FailingMutationRepository(session), _StaticConnectors(connector))
        with pytest.raises(InternalError):
            await engine.apply(_request("pc_approved"))

    assert [call.price for call in connector.calls] == [5290, 4990]
    await dispose_engines()


@pytest.mark.asyncio
async def test_refused_update_without_winner_is_compensated(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    connector = InMemoryConnector()

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(_RefusedUpdateRepository(session), _StaticConnectors(connector))
        with pytest.raises(InvalidStatus) as excinfo:
            await engine.apply(_request("pc_approved"))

    assert excinfo.value.details == {"expected": "APPROVED", "status": "APPROVED"}
    assert [call.price for call in connector.calls] == [5290, 4990]
    assert await _state(database_url) == ("APPROVED", None, 4990, 0, 0)
    await dispose_engines()


@pytest.mark.asyncio
async def test_concurrent_apply_loser_leaves_winner_price_in_place(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    platform = InMemoryConnector(prices={"variant_approved": 4990})
    reverted = _MetricTracker("price_change_compensations_total", {"action": "apply", "outcome": "reverted"})
    session_factory = get_session_factory(database_url)
    winners: list[PriceChange] = []

    async def competing_apply() -> None:
        async with session_factory() as other_session:
            winner = LifecycleEngine(PriceChangeRepository(other_session), _StaticConnectors(platform))
            winners.append(await winner.apply(_request("pc_approved")))

    connector = _InterleavingConnector(platform, competing_apply)
    async with session_factory() as session:
        engine = LifecycleEngine(PriceChangeRepository(session), _StaticConnectors(connector))
        with pytest.raises(InvalidStatus) as excinfo:
            await engine.apply(_request("pc_approved"))

    assert excinfo.value.details == {"expected": "APPROVED", "status": "APPLIED"}
    assert winners[0].status == "APPLIED"
    assert [call.price for call in platform.calls] == [5290, 5290]
    assert platform.prices["variant_approved"] == 5290
    assert reverted.delta() == 0
    status, applied_at, amount, versions, audits = await _state(database_url)
    assert (status, amount, versions, audits) == ("APPLIED", 5290, 1, 1)
    assert applied_at is not None
    await dispose_engines()


@pytest.mark.asyncio
async def test_concurrent_rollback_loser_does_not_reapply(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    platform = InMemoryConnector(prices={"variant_applied": 4990})
    reverted = _MetricTracker("price_change_compensations_total", {"action": "rollback", "outcome": "reverted"})
    session_factory = get_session_factory(database_url)

    async def competing_rollback() -> None:
        async with session_factory() as other_session:
            winner = LifecycleEngine(PriceChangeRepository(other_session), _StaticConnectors(platform))
            await winner.rollback(_request("pc_applied"))

    connector = _InterleavingConnector(platform, competing_rollback)
    async with session_factory() as session:
        engine = LifecycleEngine(PriceChangeRepository(session), _StaticConnectors(connector))
        with pytest.raises(InvalidStatus) as excinfo:
            await engine.rollback(_request("pc_applied"))

    assert excinfo.value.details == {"expected": "APPLIED", "status": "ROLLED_BACK"}
    assert [call.price for call in platform.calls] == [4590, 4590]
    assert platform.prices["variant_applied"] == 4590
    assert reverted.delta() == 0
    async with session_factory() as session:
        assert (await session.get(PriceChange, "pc_applied")).status == "ROLLED_BACK"
        assert (await session.get(Price, "price1")).amount == 4590
    await dispose_engines()


@pytest.mark.asyncio
async def test_price_removed_during_apply_surfaces_price_not_found(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    connector = InMemoryConnector()

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(_MissingPriceRepository(session), _StaticConnectors(connector))
        with pytest.raises(PriceNotFound) as excinfo:
            await engine.apply(_request("pc_approved"))

    assert excinfo.value.status_code == 404
    assert len(connector.calls) == 2
    await dispose_engines()


@pytest.mark.asyncio
async def test_missing_live_price_is_detected_before_connector_call(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    connector = InMemoryConnector()
    connectors = _StaticConnectors(connector)

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(PriceChangeRepository(session), connectors)
        with pytest.raises(PriceNotFound):
            await engine.apply(_request("pc_orphan"))

    assert connector.calls == []
    assert connectors.created == []
    await dispose_engines()


@pytest.mark.asyncio
async def test_rollback_local_failure_reapplies_new_price(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    connector = InMemoryConnector()
    tracker = _MetricTracker("price_change_compensations_total", {"action": "rollback", "outcome": "reverted"})

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(_FailingMutationRepository(session), _StaticConnectors(connector))
        with pytest.raises(RollbackFailed) as excinfo:
            await engine.rollback(_request("pc_applied"))

    assert excinfo.value.kind == "RollbackFailed"
    assert [(call.external_id, call.price) for call in connector.calls] == [
        ("variant_applied", 4590),
        ("variant_applied", 4990),
    ]
    assert tracker.delta() == 1
    async with get_session_factory(database_url)() as session:
        assert (await session.get(PriceChange, "pc_applied")).status == "APPLIED"
    await dispose_engines()


@pytest.mark.asyncio
async def test_raising_connector_is_reported_as_connector_error(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    connector = InMemoryConnector()
    connector.raise_next(TimeoutError("read timeout"))
    tracker = _MetricTracker(
        "price_change_connector_failures_total", {"target": "shopify", "retryable": "unknown"}
    )

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(PriceChangeRepository(session), _StaticConnectors(connector))
        with pytest.raises(ConnectorError) as excinfo:
            await engine.apply(_request("pc_approved"))

    assert excinfo.value.details == {"target": "shopify", "message": "read timeout"}
    assert excinfo.value.retryable is False
    assert tracker.delta() == 1
    assert len(connector.calls) == 1
    assert await _state(database_url) == ("APPROVED", None, 4990, 0, 0)
    await dispose_engines()


@pytest.mark.asyncio
async def test_unknown_connector_target_is_unavailable(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    connectors = _StaticConnectors(InMemoryConnector())

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(PriceChangeRepository(session), connectors)
        with pytest.raises(ConnectorUnavailable) as excinfo:
            await engine.apply(_request("pc_amazon"))

    assert excinfo.value.details == {"target": "ebay"}
    assert connectors.created == []
    await dispose_engines()


@pytest.mark.asyncio
async def test_engine_without_connector_provider_is_unavailable(tmp_path) -> None:
    database_url = await _seed(tmp_path)

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(PriceChangeRepository(session), None)
        with pytest.raises(ConnectorUnavailable):
            await engine.apply(_request("pc_approved"))
    await dispose_engines()


@pytest.mark.asyncio
async def test_apply_through_factory_records_synced_status(tmp_path) -> None:
    database_url = await _seed(tmp_path)
    factory = ConnectorFactory()
    factory.in_memory(ConnectorTarget.SHOPIFY).prices["variant_approved"] = 4990
    applied = _MetricTracker("price_change_transitions_total", {"action": "apply", "status": "APPLIED"})

    async with get_session_factory(database_url)() as session:
        engine = LifecycleEngine(PriceChangeRepository(session), factory, CompensationCoordinator())
        price_change = await engine.apply(_request("pc_approved"))

    assert price_change.status == "APPLIED"
    assert price_change.connector_status["state"] == "SYNCED"
    assert price_change.connector_status["metadata"]["oldPrice"] == 4990
    assert price_change.connector_status["metadata"]["newPrice"] == 5290
    assert applied.delta() == 1
    status, applied_at, amount, versions, audits = await _state(database_url)
    assert (status, amount, versions, audits) == ("APPLIED", 5290, 1, 1)
    assert applied_at is not None
    await factory.close()
    await dispose_engines()
