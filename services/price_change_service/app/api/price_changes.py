"""HTTP routes for the price change lifecycle."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from ..access import ProjectAccess
from ..dependencies import get_correlation_id, get_lifecycle_engine, get_repository, require_project_access
from ..errors import BadRequest
from ..lifecycle import LifecycleEngine, TransitionRequest
from ..models import PriceChange, PriceChangeStatus, ProjectRole
from ..repository import PriceChangeRepository
from ..schemas import PriceChangeActionResponse, PriceChangeListResponse

router = APIRouter(prefix="/v1/price-changes", tags=["price-changes"])

_STATUS_ALL = "ALL"


def _serialize_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _clean_string(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _serialize_connector_status(raw: Any) -> dict[str, Any] | None:
    """Project the stored connector status onto the public shape."""

    if not isinstance(raw, dict):
        return None
    target = raw.get("target")
    state = raw.get("state")
    if not isinstance(target, str) or not isinstance(state, str):
        return None

    error_message = raw.get("errorMessage")
    payload: dict[str, Any] = {
        "target": target,
        "state": state,
        "errorMessage": error_message if isinstance(error_message, str) else None,
        "variantId": _clean_string(raw.get("variantId")),
        "externalId": _clean_string(raw.get("externalId")),
        "updatedAt": _clean_string(raw.get("updatedAt")),
    }
    if isinstance(raw.get("rolledBack"), bool):
        payload["rolledBack"] = raw["rolledBack"]
    return payload


def _serialize_price_change(price_change: PriceChange) -> dict[str, Any]:
    context = price_change.context if isinstance(price_change.context, dict) else None
    policy_result = price_change.policy_result if isinstance(price_change.policy_result, dict) else None
    return {
        "id": price_change.id,
        "status": price_change.status,
        "currency": price_change.currency,
        "fromAmount": price_change.from_amount,
        "toAmount": price_change.to_amount,
        "createdAt": _serialize_datetime(price_change.created_at),
        "source": price_change.source,
        "context": context,
        "policyResult": policy_result,
        "approvedBy": price_change.approved_by,
        "appliedAt": _serialize_datetime(price_change.applied_at),
        "connectorStatus": _serialize_connector_status(price_change.connector_status),
    }


def _transition_request(price_change_id: str, access: ProjectAccess, correlation_id: str) -> TransitionRequest:
    return TransitionRequest(
        price_change_id=price_change_id,
        project_id=access.project.id,
        actor=access.user_id,
        correlation_id=correlation_id,
    )


@router.get("", response_model=PriceChangeListResponse)
async def list_price_changes(
    request: Request,
    status: str = Query(default=PriceChangeStatus.PENDING.value),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    access: ProjectAccess = Depends(require_project_access(ProjectRole.VIEWER)),
    repository: PriceChangeRepository = Depends(get_repository),
) -> dict[str, Any]:
    status_filter: str | None = status.strip().upper()
    if status_filter == _STATUS_ALL:
        status_filter = None
    elif status_filter not in {member.value for member in PriceChangeStatus}:
        raise BadRequest(f"Unknown status '{status}'.")

    page_size = limit or request.app.state.settings.price_change_page_size
    items, next_cursor = await repository.list_price_changes(
        project_id=access.project.id,
        status=status_filter,
        query=_clean_string(q),
        cursor=cursor,
        limit=page_size,
    )
    return {
        "items": [_serialize_price_change(item) for item in items],
        "nextCursor": next_cursor,
        "role": access.role,
    }


@router.post("/{price_change_id}/approve", response_model=PriceChangeActionResponse)
async def approve_price_change(
    price_change_id: str,
    access: ProjectAccess = Depends(require_project_access(ProjectRole.EDITOR)),
    correlation_id: str = Depends(get_correlation_id),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
) -> dict[str, Any]:
    price_change = await engine.approve(_transition_request(price_change_id, access, correlation_id))
    return {"ok": True, "item": _serialize_price_change(price_change)}


@router.post("/{price_change_id}/reject", response_model=PriceChangeActionResponse)
async def reject_price_change(
    price_change_id: str,
    access: ProjectAccess = Depends(require_project_access(ProjectRole.EDITOR)),
    correlation_id: str = Depends(get_correlation_id),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
) -> dict[str, Any]:
    price_change = await engine.reject(_transition_request(price_change_id, access, correlation_id))
    return {"ok": True, "item": _serialize_price_change(price_change)}


@router.post("/{price_change_id}/apply", response_model=PriceChangeActionResponse)
async def apply_price_change(
    price_change_id: str,
    access: ProjectAccess = Depends(require_project_access(ProjectRole.ADMIN)),
    correlation_id: str = Depends(get_correlation_id),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
) -> dict[str, Any]:
    price_change = await engine.apply(_transition_request(price_change_id, access, correlation_id))
    return {"ok": True, "item": _serialize_price_change(price_change)}


@router.post("/{price_change_id}/rollback", response_model=PriceChangeActionResponse)
async def rollback_price_change(
    price_change_id: str,
    access: ProjectAccess = Depends(require_project_access(ProjectRole.ADMIN)),
    correlation_id: str = Depends(get_correlation_id),
    engine: LifecycleEngine = Depends(get_lifecycle_engine),
) -> dict[str, Any]:
    price_change = await engine.rollback(_transition_request(price_change_id, access, correlation_id))
    return {"ok": True, "item": _serialize_price_change(price_change)}
