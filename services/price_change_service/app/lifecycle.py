"""Price change lifecycle: approve, reject, apply and rollback.

Apply and rollback touch two systems that fail independently: the platform
connector and the local price ledger. The connector is called with no database
transaction open. Local state is only committed once the connector reports a
definitive success, and if that commit then fails the external change is
reverted through :class:`CompensationCoordinator` before the local error is
returned. A request that loses the status race to one making the same
transition leaves the external price alone.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from . import policy
from .audit import AuditTrail
from .compensation import CompensationCoordinator
from .connectors import ConnectorGateway, ConnectorProvider, PriceUpdateResult
from .errors import (
    ConnectorError,
    ConnectorUnavailable,
    Forbidden,
    IntegrationMissing,
    InternalError,
    InvalidStatus,
    MissingVariant,
    NotFound,
    PolicyViolation,
    PriceChangeError,
    PriceNotFound,
    RollbackFailed,
)
from .events import PriceChangeEventPublisher
from .metrics import (
    PRICE_CHANGE_CONNECTOR_FAILURES_TOTAL,
    PRICE_CHANGE_REJECTED_REQUESTS_TOTAL,
    PRICE_CHANGE_TRANSITIONS_TOTAL,
)
from .models import ConnectorState, EventKind, PriceChange, PriceChangeStatus
from .repository import PriceChangeRepository
from .variants import ConnectorTarget, VariantResolver, infer_target_name

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TransitionRequest:
    price_change_id: str
    project_id: str
    actor: str
    correlation_id: str


@dataclass(slots=True)
class _PlatformSync:
    """Everything needed to push a price and, if necessary, take it back."""

    price_change_id: str
    target: ConnectorTarget
    connector: ConnectorGateway
    variant_id: str
    currency: str
    new_amount: int
    prior_amount: int
    metadata: dict[str, Any]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class LifecycleEngine:
    """State machine for price changes.

    ============  ========  ============
    From          Action    To
    ============  ========  ============
    PENDING       approve   APPROVED
    PENDING       reject    REJECTED
    APPROVED      reject    REJECTED
    APPROVED      apply     APPLIED
    APPLIED       rollback  ROLLED_BACK
    ============  ========  ============

    Every other combination raises :class:`InvalidStatus`. Each transition is
    a conditional update on the stored status, so of two concurrent requests
    only one can win.
    """

    def __init__(
        self,
        repository: PriceChangeRepository,
        connectors: ConnectorProvider | None = None,
        compensation: CompensationCoordinator | None = None,
        event_publisher: PriceChangeEventPublisher | None = None,
        *,
        default_target: str = ConnectorTarget.SHOPIFY.value,
    ) -> None:
        self.repository = repository
        self.connectors = connectors
        self.compensation = compensation or CompensationCoordinator()
        self.event_publisher = event_publisher
        self.default_target = default_target
        self.audit = AuditTrail(repository)

    async def approve(self, request: TransitionRequest) -> PriceChange:
        price_change = await self._load(request)
        self._require_status(
            price_change,
            (PriceChangeStatus.PENDING,),
            action="approve",
            message="Only pending price changes can be approved.",
        )
        async with self.repository.transaction():
            await self._transition(
                price_change,
                expected=PriceChangeStatus.PENDING,
                target=PriceChangeStatus.APPROVED,
                approved_by=request.actor,
            )
            await self.audit.record(
                price_change,
                action="approved",
                actor=request.actor,
                correlation_id=request.correlation_id,
                explain={
                    "fromStatus": PriceChangeStatus.PENDING.value,
                    "toStatus": PriceChangeStatus.APPROVED.value,
                    "policyResult": price_change.policy_result,
                },
            )
        PRICE_CHANGE_TRANSITIONS_TOTAL.labels(action="approve", status=price_change.status).inc()
        return price_change

    async def reject(self, request: TransitionRequest) -> PriceChange:
        price_change = await self._load(request)
        current = self._require_status(
            price_change,
            (PriceChangeStatus.PENDING, PriceChangeStatus.APPROVED),
            action="reject",
            message="Only pending or approved price changes can be rejected.",
        )
        async with self.repository.transaction():
            await self._transition(price_change, expected=current, target=PriceChangeStatus.REJECTED)
            await self.audit.record(
                price_change,
                action="rejected",
                actor=request.actor,
                correlation_id=request.correlation_id,
                explain={
                    "fromStatus": current.value,
                    "toStatus": PriceChangeStatus.REJECTED.value,
                },
            )
        PRICE_CHANGE_TRANSITIONS_TOTAL.labels(action="reject", status=price_change.status).inc()
        return price_change

    async def apply(self, request: TransitionRequest) -> PriceChange:
        price_change = await self._load(request)
        self._require_status(
            price_change,
            (PriceChangeStatus.APPROVED,),
            action="apply",
            message="Only approved price changes can be applied.",
        )
        if not policy.evaluate(price_change.policy_result):
            logger.info(
                "Price change %s blocked by policy; failed checks: %s",
                price_change.id,
                ", ".join(policy.failed_checks(price_change.policy_result)) or "none recorded",
            )
            self._count_refusal("apply", PolicyViolation.kind)
            raise PolicyViolation(details=price_change.policy_result or {"ok": False, "checks": []})

        target = self._target(price_change)
        variant_id = await VariantResolver(target).resolve(price_change, self.repository.get_sku_attributes)
        sync = await self._prepare_sync(
            price_change,
            request,
            target=target,
            variant_id=variant_id,
            action="apply",
            new_amount=price_change.to_amount,
        )

        result = await self._push(sync)
        if result.old_price is not None:
            sync.prior_amount = result.old_price

        try:
            async with self.repository.transaction():
                await self._transition(
                    price_change,
                    expected=PriceChangeStatus.APPROVED,
                    target=PriceChangeStatus.APPLIED,
                    applied_at=_now(),
                    connector_status=_synced_status(price_change, sync, result),
                )
                await self.repository.record_price_mutation(
                    price_change,
                    amount=sync.new_amount,
                    kind=EventKind.PRICE_APPLIED.value,
                    note=f"Apply price change {price_change.id}",
                    payload={
                        "priceChangeId": price_change.id,
                        "skuId": price_change.sku_id,
                        "from": price_change.from_amount,
                        "to": price_change.to_amount,
                    },
                )
                await self.audit.record(
                    price_change,
                    action="apply",
                    actor=request.actor,
                    correlation_id=request.correlation_id,
                    explain={
                        "priceChange": {
                            "from": price_change.from_amount,
                            "to": price_change.to_amount,
                            "delta": price_change.to_amount - price_change.from_amount,
                        },
                        "connector": {"target": sync.target.value, "variantId": sync.variant_id},
                        "policyResult": price_change.policy_result,
                    },
                )
        except Exception as exc:
            if _lost_to_winner(exc, PriceChangeStatus.APPLIED):
                self._log_lost_race(sync, action="apply")
                raise
            await self._revert(sync, action="apply", exc=exc)
            if isinstance(exc, PriceChangeError):
                raise
            raise InternalError(details={"priceChangeId": sync.price_change_id}) from exc

        PRICE_CHANGE_TRANSITIONS_TOTAL.labels(action="apply", status=price_change.status).inc()
        if self.event_publisher is not None:
            await self.event_publisher.price_change_applied(price_change, correlation_id=request.correlation_id)
        return price_change

    async def rollback(self, request: TransitionRequest) -> PriceChange:
        price_change = await self._load(request)
        self._require_status(
            price_change,
            (PriceChangeStatus.APPLIED,),
            action="rollback",
            message="Only applied price changes can be rolled back.",
        )
        target = self._target(price_change)
        resolver = VariantResolver(target)
        variant_id = resolver.from_connector_status(price_change) or await resolver.resolve(
            price_change, self.repository.get_sku_attributes
        )
        sync = await self._prepare_sync(
            price_change,
            request,
            target=target,
            variant_id=variant_id,
            action="rollback",
            new_amount=price_change.from_amount,
        )
        sync.prior_amount = price_change.to_amount

        result = await self._push(sync)

        try:
            async with self.repository.transaction():
                await self._transition(
                    price_change,
                    expected=PriceChangeStatus.APPLIED,
                    target=PriceChangeStatus.ROLLED_BACK,
                    connector_status=_synced_status(price_change, sync, result, rolled_back=True),
                )
                await self.repository.record_price_mutation(
                    price_change,
                    amount=sync.new_amount,
                    kind=EventKind.PRICE_ROLLED_BACK.value,
                    note=f"Rollback price change {price_change.id}",
                    payload={
                        "priceChangeId": price_change.id,
                        "skuId": price_change.sku_id,
                        "restoredAmount": price_change.from_amount,
                    },
                )
                await self.audit.record(
                    price_change,
                    action="rollback",
                    actor=request.actor,
                    correlation_id=request.correlation_id,
                    explain={
                        "priceChange": {
                            "from": price_change.to_amount,
                            "to": price_change.from_amount,
                            "delta": price_change.from_amount - price_change.to_amount,
                        },
                        "connector": {"target": sync.target.value, "variantId": sync.variant_id},
                    },
                )
        except Exception as exc:
            if _lost_to_winner(exc, PriceChangeStatus.ROLLED_BACK):
                self._log_lost_race(sync, action="rollback")
                raise
            await self._revert(sync, action="rollback", exc=exc)
            if isinstance(exc, PriceChangeError):
                raise
            raise RollbackFailed(details={"priceChangeId": sync.price_change_id}) from exc

        PRICE_CHANGE_TRANSITIONS_TOTAL.labels(action="rollback", status=price_change.status).inc()
        if self.event_publisher is not None:
            await self.event_publisher.price_change_rolled_back(price_change, correlation_id=request.correlation_id)
        return price_change

    async def _load(self, request: TransitionRequest) -> PriceChange:
        price_change = await self.repository.get_price_change(request.price_change_id)
        if price_change is None:
            raise NotFound()
        if price_change.project_id != request.project_id:
            raise Forbidden()
        return price_change

    def _require_status(
        self,
        price_change: PriceChange,
        allowed: Iterable[PriceChangeStatus],
        *,
        action: str,
        message: str,
    ) -> PriceChangeStatus:
        for status in allowed:
            if price_change.status == status.value:
                return status
        self._count_refusal(action, InvalidStatus.kind)
        raise InvalidStatus(message, details={"status": price_change.status})

    async def _transition(
        self,
        price_change: PriceChange,
        *,
        expected: PriceChangeStatus,
        target: PriceChangeStatus,
        **values: Any,
    ) -> None:
        moved = await self.repository.transition(price_change, expected=expected, target=target, **values)
        if not moved:
            current = await self.repository.get_status(price_change.id)
            raise InvalidStatus(
                "Price change was modified by another request.",
                details={"expected": expected.value, "status": current},
            )

    def _target(self, price_change: PriceChange) -> ConnectorTarget:
        name = infer_target_name(price_change, self.default_target)
        try:
            return ConnectorTarget.parse(name)
        except ValueError as exc:
            raise ConnectorUnavailable(str(exc), details={"target": name}) from exc

    async def _prepare_sync(
        self,
        price_change: PriceChange,
        request: TransitionRequest,
        *,
        target: ConnectorTarget,
        variant_id: str | None,
        action: str,
        new_amount: int,
    ) -> _PlatformSync:
        """Run every local precondition, build the connector and release the read transaction."""

        if variant_id is None:
            self._count_refusal(action, MissingVariant.kind)
            raise MissingVariant(details={"target": target.value})

        live_price = await self.repository.get_price(sku_id=price_change.sku_id, currency=price_change.currency)
        if live_price is None:
            self._count_refusal(action, PriceNotFound.kind)
            raise PriceNotFound()

        integration = await self.repository.get_active_integration(
            project_id=price_change.project_id, platform=target.value
        )
        if integration is None:
            self._count_refusal(action, IntegrationMissing.kind)
            raise IntegrationMissing(details={"target": target.value})

        if self.connectors is None:
            raise ConnectorUnavailable(details={"target": target.value})
        try:
            connector = await self.connectors.create(integration, target)
        except Exception as exc:
            logger.warning("Connector initialization failed for %s integration %s: %s", target.value, integration.id, exc)
            raise ConnectorUnavailable(
                str(exc) or None, details={"target": target.value}
            ) from exc

        sync = _PlatformSync(
            price_change_id=price_change.id,
            target=target,
            connector=connector,
            variant_id=variant_id,
            currency=price_change.currency,
            new_amount=new_amount,
            prior_amount=live_price.amount,
            metadata={
                "priceChangeId": price_change.id,
                "projectId": price_change.project_id,
                "skuId": price_change.sku_id,
                "correlationId": request.correlation_id,
                "action": action,
            },
        )
        await self.repository.release()
        return sync

    async def _push(self, sync: _PlatformSync) -> PriceUpdateResult:
        try:
            result = await sync.connector.update_price(
                external_id=sync.variant_id,
                price=sync.new_amount,
                currency=sync.currency,
                metadata=sync.metadata,
            )
        except Exception as exc:
            logger.warning(
                "Connector %s raised while updating variant %s for price change %s: %s",
                sync.target.value,
                sync.variant_id,
                sync.price_change_id,
                exc,
            )
            PRICE_CHANGE_CONNECTOR_FAILURES_TOTAL.labels(target=sync.target.value, retryable="unknown").inc()
            raise ConnectorError(details={"target": sync.target.value, "message": str(exc)}) from exc

        if not result.success:
            retryable = bool(result.retryable)
            logger.warning(
                "Connector %s rejected update of variant %s for price change %s: %s (retryable=%s)",
                sync.target.value,
                sync.variant_id,
                sync.price_change_id,
                result.error,
                retryable,
            )
            PRICE_CHANGE_CONNECTOR_FAILURES_TOTAL.labels(
                target=sync.target.value, retryable=str(retryable).lower()
            ).inc()
            raise ConnectorError(
                details={
                    "target": sync.target.value,
                    "message": result.error or ConnectorError.default_message,
                    "retryable": retryable,
                }
            )
        return result

    async def _revert(self, sync: _PlatformSync, *, action: str, exc: Exception) -> None:
        logger.error(
            "Local commit of %s failed for price change %s after the connector succeeded: %s",
            action,
            sync.price_change_id,
            exc,
            exc_info=not isinstance(exc, PriceChangeError),
        )
        await self.compensation.revert(
            sync.connector,
            variant_id=sync.variant_id,
            prior_amount=sync.prior_amount,
            currency=sync.currency,
            metadata=sync.metadata,
            action=action,
        )

    @staticmethod
    def _log_lost_race(sync: _PlatformSync, *, action: str) -> None:
        logger.warning(
            "Concurrent %s of price change %s won the race; leaving variant %s at %s %s",
            action,
            sync.price_change_id,
            sync.variant_id,
            sync.new_amount,
            sync.currency,
        )

    @staticmethod
    def _count_refusal(action: str, kind: str) -> None:
        PRICE_CHANGE_REJECTED_REQUESTS_TOTAL.labels(action=action, error=kind).inc()


def _lost_to_winner(exc: Exception, target: PriceChangeStatus) -> bool:
    """True when the local write lost to a request that already made the same transition.

    The winner pushed the same price and owns the external state, so nothing is reverted.
    """

    if not isinstance(exc, InvalidStatus):
        return False
    return (exc.details or {}).get("status") == target.value

def _synced_status(
    price_change: PriceChange,
    sync: _PlatformSync,
    result: PriceUpdateResult,
    *,
    rolled_back: bool = False,
) -> dict[str, Any]:
    previous = price_change.connector_status if isinstance(price_change.connector_status, dict) else {}
    previous_metadata = previous.get("metadata") if isinstance(previous.get("metadata"), dict) else {}
    external_id = result.external_id or sync.variant_id
    status: dict[str, Any] = {
        "target": sync.target.value,
        "state": ConnectorState.SYNCED.value,
        "errorMessage": None,
        "variantId": sync.variant_id,
        "externalId": external_id,
        "metadata": {
            **previous_metadata,
            **(result.metadata or {}),
            "variantId": sync.variant_id,
            "externalId": external_id,
            "platform": result.platform,
            "oldPrice": result.old_price,
            "newPrice": result.new_price if result.new_price is not None else sync.new_amount,
        },
        "updatedAt": result.updated_at.isoformat(),
    }
    if rolled_back:
        status["rolledBack"] = True
    return status
