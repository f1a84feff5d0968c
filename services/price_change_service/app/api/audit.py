"""Read access to the audit trail."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from ..access import ProjectAccess
from ..dependencies import get_repository, require_project_access
from ..models import ProjectRole
from ..repository import PriceChangeRepository
from ..schemas import AuditListResponse, AuditRecordResponse

router = APIRouter(prefix="/v1/audit", tags=["audit"])


@router.get("", response_model=AuditListResponse)
async def list_audit_records(
    request: Request,
    entity: str | None = Query(default=None),
    entity_id: str | None = Query(default=None, alias="entityId"),
    action: str | None = Query(default=None),
    actor: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    access: ProjectAccess = Depends(require_project_access(ProjectRole.VIEWER)),
    repository: PriceChangeRepository = Depends(get_repository),
) -> dict[str, Any]:
    records, next_cursor = await repository.list_audit(
        project_id=access.project.id,
        entity=entity,
        entity_id=entity_id,
        action=action,
        actor=actor,
        cursor=cursor,
        limit=limit or request.app.state.settings.price_change_page_size,
    )
    return {
        "items": [AuditRecordResponse.model_validate(record) for record in records],
        "nextCursor": next_cursor,
    }
