"""Data access helpers for the price change service."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import Select, and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import PriceNotFound
from .models import (
    AuditRecord,
    Event,
    Membership,
    PlatformIntegration,
    Price,
    PriceChange,
    PriceChangeStatus,
    PriceVersion,
    Project,
    Sku,
)


class PriceChangeRepository:
    """Persistence helpers for price changes and the rows they mutate."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def release(self) -> None:
        """End the current read transaction so no connection is held across remote calls."""

        await self.session.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PriceChangeRepository]:
        """Commit everything written inside the block atomically, or roll it all back."""

        try:
            yield self
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def get_price_change(self, price_change_id: str) -> PriceChange | None:
        result = await self.session.execute(select(PriceChange).where(PriceChange.id == price_change_id))
        return result.scalar_one_or_none()

    async def get_status(self, price_change_id: str) -> str | None:
        """Read the stored status directly, bypassing any instance already loaded in the session."""

        result = await self.session.execute(select(PriceChange.status).where(PriceChange.id == price_change_id))
        return result.scalar_one_or_none()

    async def get_project_by_slug(self, slug: str) -> Project | None:
        result = await self.session.execute(select(Project).where(Project.slug == slug))
        return result.scalar_one_or_none()

    async def get_membership(self, *, user_id: str, project_id: str) -> Membership | None:
        result = await self.session.execute(
            select(Membership).where(Membership.user_id == user_id, Membership.project_id == project_id)
        )
        return result.scalar_one_or_none()

    async def get_price(self, *, sku_id: str, currency: str) -> Price | None:
        result = await self.session.execute(
            select(Price).where(Price.sku_id == sku_id, Price.currency == currency)
        )
        return result.scalar_one_or_none()

    async def get_active_integration(self, *, project_id: str, platform: str) -> PlatformIntegration | None:
        result = await self.session.execute(
            select(PlatformIntegration)
            .where(
                PlatformIntegration.project_id == project_id,
                PlatformIntegration.platform == platform,
                PlatformIntegration.is_active.is_(True),
            )
            .order_by(PlatformIntegration.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_sku_attributes(self, sku_id: str) -> dict[str, Any] | None:
        result = await self.session.execute(select(Sku.attributes).where(Sku.id == sku_id))
        return result.scalar_one_or_none()

    async def transition(
        self,
        price_change: PriceChange,
        *,
        expected: PriceChangeStatus,
        target: PriceChangeStatus,
        **values: Any,
    ) -> bool:
        """Move ``price_change`` to ``target`` only if its stored status is still ``expected``.

        Returns False when another request changed the status first.
        """

        result = await self.session.execute(
            update(PriceChange)
            .where(PriceChange.id == price_change.id, PriceChange.status == expected.value)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.session.refresh(price_change)
        return True

    async def record_price_mutation(
        self,
        price_change: PriceChange,
        *,
        amount: int,
        kind: str,
        note: str,
        payload: dict[str, Any],
    ) -> Price:
        """Snapshot the live price, set it to ``amount`` and append the matching domain event."""

        price = await self.get_price(sku_id=price_change.sku_id, currency=price_change.currency)
        if price is None:
            raise PriceNotFound()

        self.session.add(PriceVersion(price_id=price.id, amount=price.amount, note=note))
        price.amount = amount
        self.session.add(
            Event(
                tenant_id=price_change.tenant_id,
                project_id=price_change.project_id,
                kind=kind,
                payload=payload,
            )
        )
        await self.session.flush()
        return price

    async def add_audit(
        self,
        *,
        tenant_id: str,
        project_id: str | None,
        entity: str,
        entity_id: str,
        action: str,
        actor: str,
        explain: dict[str, Any] | None,
        correlation_id: str | None,
    ) -> AuditRecord:
        record = AuditRecord(
            tenant_id=tenant_id,
            project_id=project_id,
            entity=entity,
            entity_id=entity_id,
            action=action,
            actor=actor,
            explain=explain,
            correlation_id=correlation_id,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def list_price_changes(
        self,
        *,
        project_id: str,
        status: str | None,
        query: str | None,
        cursor: str | None,
        limit: int,
    ) -> tuple[list[PriceChange], str | None]:
        filters = [PriceChange.project_id == project_id]
        if status:
            filters.append(PriceChange.status == status)
        if query:
            pattern = f"%{query}%"
            filters.append(
                or_(
                    PriceChange.source.ilike(pattern),
                    PriceChange.context["skuCode"].as_string().ilike(pattern),
                )
            )
        base: Select[tuple[PriceChange]] = select(PriceChange).where(and_(*filters))
        if cursor:
            anchor = await self.get_price_change(cursor)
            if anchor is not None:
                base = base.where(
                    or_(
                        PriceChange.created_at < anchor.created_at,
                        and_(PriceChange.created_at == anchor.created_at, PriceChange.id < anchor.id),
                    )
                )
        base = base.order_by(PriceChange.created_at.desc(), PriceChange.id.desc()).limit(limit + 1)
        rows = list((await self.session.execute(base)).scalars())
        return _page(rows, limit)

    async def list_audit(
        self,
        *,
        project_id: str,
        entity: str | None,
        entity_id: str | None,
        action: str | None,
        actor: str | None,
        cursor: str | None,
        limit: int,
    ) -> tuple[list[AuditRecord], str | None]:
        filters = [AuditRecord.project_id == project_id]
        if entity:
            filters.append(AuditRecord.entity == entity)
        if entity_id:
            filters.append(AuditRecord.entity_id == entity_id)
        if action:
            filters.append(AuditRecord.action == action)
        if actor:
            filters.append(AuditRecord.actor == actor)
        base: Select[tuple[AuditRecord]] = select(AuditRecord).where(and_(*filters))
        if cursor:
            anchor = await self.session.get(AuditRecord, cursor)
            if anchor is not None:
                base = base.where(
                    or_(
                        AuditRecord.created_at < anchor.created_at,
                        and_(AuditRecord.created_at == anchor.created_at, AuditRecord.id < anchor.id),
                    )
                )
        base = base.order_by(AuditRecord.created_at.desc(), AuditRecord.id.desc()).limit(limit + 1)
        rows = list((await self.session.execute(base)).scalars())
        return _page(rows, limit)


def _page(rows: list[Any], limit: int) -> tuple[list[Any], str | None]:
    if len(rows) > limit:
        items = rows[:limit]
        return items, items[-1].id
    return rows, None
