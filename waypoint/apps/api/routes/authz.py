from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict

from waypoint.apps.api.deps import get_identity, get_resolver, get_store, require_self_or_admin
from waypoint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from waypoint.apps.api.response import SuccessEnvelope, success_response
from waypoint.domain.identity import Identity
from waypoint.persistence.store import SqlRelationshipStore
from waypoint.services.authz.resolver import CapabilityResolver


router = APIRouter(prefix="/authz", tags=["authz"], responses=DEFAULT_ERROR_RESPONSES)


class ResolveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: str
    asset_id: int
    data_type: str | None = None
    # Defaults to the caller's organization; other organizations need platform admin.
    org_id: int | None = None


class DecisionResponse(BaseModel):
    org_id: int
    action: str
    asset_id: int
    allowed: bool
    reason: str
    via: str | None = None
    grant_id: str | None = None
    grant_kind: str | None = None
    grantor_id: int | None = None


@router.post("/resolve", response_model=SuccessEnvelope[DecisionResponse])
async def resolve_capability(
    request: Request,
    payload: ResolveRequest,
    identity: Identity = Depends(get_identity),
    resolver: CapabilityResolver = Depends(get_resolver),
    store: SqlRelationshipStore = Depends(get_store),
) -> dict[str, Any]:
    org_id = payload.org_id if payload.org_id is not None else identity.org_id
    await require_self_or_admin(store, identity, org_id)
    decision = await resolver.resolve(org_id, payload.action, payload.asset_id, data_type=payload.data_type)
    data = DecisionResponse(
        org_id=org_id,
        action=payload.action,
        asset_id=payload.asset_id,
        **decision.as_dict(),
    )
    return success_response(request=request, data=data)
