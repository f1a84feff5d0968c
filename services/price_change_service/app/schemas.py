"""Pydantic schemas for the price change service."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ConnectorStatusResponse(BaseModel):
    target: str
    state: str
    error_message: str | None = Field(default=None, alias="errorMessage")
    variant_id: str | None = Field(default=None, alias="variantId")
    external_id: str | None = Field(default=None, alias="externalId")
    updated_at: str | None = Field(default=None, alias="updatedAt")
    rolled_back: bool | None = Field(default=None, alias="rolledBack")

    model_config = ConfigDict(populate_by_name=True)


class PriceChangeResponse(BaseModel):
    id: str
    status: str
    currency: str
    from_amount: int = Field(alias="fromAmount")
    to_amount: int = Field(alias="toAmount")
    created_at: datetime = Field(alias="createdAt")
    source: str | None = None
    context: dict[str, Any] | None = None
    policy_result: dict[str, Any] | None = Field(default=None, alias="policyResult")
    approved_by: str | None = Field(default=None, alias="approvedBy")
    applied_at: datetime | None = Field(default=None, alias="appliedAt")
    connector_status: ConnectorStatusResponse | None = Field(default=None, alias="connectorStatus")

    model_config = ConfigDict(populate_by_name=True)


class PriceChangeActionResponse(BaseModel):
    ok: bool = True
    item: PriceChangeResponse


class PriceChangeListResponse(BaseModel):
    items: list[PriceChangeResponse]
    next_cursor: str | None = Field(default=None, alias="nextCursor")
    role: str

    model_config = ConfigDict(populate_by_name=True)


class AuditRecordResponse(BaseModel):
    id: str
    entity: str
    entity_id: str = Field(alias="entityId")
    action: str
    actor: str
    explain: dict[str, Any] | None = None
    correlation_id: str | None = Field(default=None, alias="correlationId")
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class AuditListResponse(BaseModel):
    items: list[AuditRecordResponse]
    next_cursor: str | None = Field(default=None, alias="nextCursor")

    model_config = ConfigDict(populate_by_name=True)
