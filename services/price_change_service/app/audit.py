"""Append-only audit trail for price change transitions."""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from .models import AuditRecord, PriceChange
from .repository import PriceChangeRepository

CORRELATION_HEADER = "X-Correlation-ID"
CORRELATION_PREFIX = "corr_"
AUDIT_ENTITY = "PriceChange"


def resolve_correlation_id(header_value: str | None) -> str:
    """Use the caller supplied correlation id, or mint a ``corr_`` one."""

    if header_value and header_value.strip():
        return header_value.strip()
    return f"{CORRELATION_PREFIX}{uuid4().hex}"


class AuditTrail:
    def __init__(self, repository: PriceChangeRepository) -> None:
        self.repository = repository

    async def record(
        self,
        price_change: PriceChange,
        *,
        action: str,
        actor: str,
        correlation_id: str,
        explain: dict[str, Any] | None = None,
    ) -> AuditRecord:
        """Append an audit row inside the caller's transaction."""

        return await self.repository.add_audit(
            tenant_id=price_change.tenant_id,
            project_id=price_change.project_id,
            entity=AUDIT_ENTITY,
            entity_id=price_change.id,
            action=action,
            actor=actor,
            explain={**(explain or {}), "correlationId": correlation_id},
            correlation_id=correlation_id,
        )
