"""Best-effort reversal of external price mutations that could not be committed locally."""

from __future__ import annotations

import logging
from typing import Any

from .connectors import ConnectorGateway
from .metrics import PRICE_CHANGE_COMPENSATIONS_TOTAL

logger = logging.getLogger(__name__)


class CompensationCoordinator:
    """Issues one inverse ``update_price`` call and never raises.

    The caller already holds the local error it must report; a failed
    compensation is logged for manual reconciliation instead.
    """

    async def revert(
        self,
        connector: ConnectorGateway,
        *,
        variant_id: str,
        prior_amount: int,
        currency: str,
        metadata: dict[str, Any] | None = None,
        action: str = "apply",
    ) -> bool:
        context = metadata or {}
        try:
            result = await connector.update_price(
                external_id=variant_id,
                price=prior_amount,
                currency=currency,
                metadata={**context, "compensation": True},
            )
        except Exception:
            logger.exception(
                "Compensation for %s of price change %s raised; variant %s may still carry the new price",
                action,
                context.get("priceChangeId"),
                variant_id,
            )
            PRICE_CHANGE_COMPENSATIONS_TOTAL.labels(action=action, outcome="error").inc()
            return False

        if not result.success:
            logger.error(
                "Compensation for %s of price change %s failed for variant %s: %s",
                action,
                context.get("priceChangeId"),
                variant_id,
                result.error,
            )
            PRICE_CHANGE_COMPENSATIONS_TOTAL.labels(action=action, outcome="failed").inc()
            return False

        logger.warning(
            "Compensated %s of price change %s: variant %s restored to %s %s",
            action,
            context.get("priceChangeId"),
            variant_id,
            prior_amount,
            currency,
        )
        PRICE_CHANGE_COMPENSATIONS_TOTAL.labels(action=action, outcome="reverted").inc()
        return True
