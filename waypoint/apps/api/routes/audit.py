from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.apps.api.deps import get_db, get_identity, get_store, is_platform_admin, require_self_or_admin
from waypoint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from waypoint.apps.api.response import SuccessEnvelope, success_response
from waypoint.domain.identity import Identity
from waypoint.persistence.repos import audit as audit_repo
from waypoint.persistence.store import SqlRelationshipStore, ensure_utc


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    organization_id: int | None
    actor_id: str | None
    action: str
    entity_type: str
    entity_id: str | None
    outcome: str
    error_code: str | None
    details: dict[str, Any] | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _to_response(event) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        occurred_at=ensure_utc(event.occurred_at).isoformat(),
        organization_id=event.organization_id,
        actor_id=event.actor_id,
        action=event.action,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        outcome=event.outcome,
        error_code=event.error_code,
        details=event.details_json,
    )


@router.get("/events", response_model=SuccessEnvelope[AuditEventsPage])
async def list_audit_events(
    request: Request,
    organization_id: int | None = None,
    action: str | None = None,
    outcome: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    identity: Identity = Depends(get_identity),
    store: SqlRelationshipStore = Depends(get_store),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Callers see their own organization's trail unless they are a platform admin.
    scoped_org_id = organization_id if organization_id is not None else identity.org_id
    await require_self_or_admin(store, identity, scoped_org_id)
    try:
        events = await audit_repo.list_events(
            db,
            organization_id=scoped_org_id,
            action=action,
            outcome=outcome,
            entity_type=entity_type,
            entity_id=entity_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit events") from exc

    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit
    page = AuditEventsPage(items=[_to_response(event) for event in events], next_offset=next_offset)
    return success_response(request=request, data=page)


@router.get("/events/{event_id}", response_model=SuccessEnvelope[AuditEventResponse])
async def get_audit_event(
    event_id: int,
    request: Request,
    identity: Identity = Depends(get_identity),
    store: SqlRelationshipStore = Depends(get_store),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    scoped_org_id = None if await is_platform_admin(store, identity.org_id) else identity.org_id
    try:
        event = await audit_repo.get_event_by_id(db, event_id=event_id, organization_id=scoped_org_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit event") from exc
    if event is None:
        raise HTTPException(status_code=404, detail="Audit event not found")
    return success_response(request=request, data=_to_response(event))
