from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from waypoint.apps.api.deps import get_identity, get_resolver, get_store, require_self_or_admin
from waypoint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from waypoint.apps.api.response import SuccessEnvelope, success_response
from waypoint.domain.identity import Identity
from waypoint.domain.scope import type_scope_to_wire
from waypoint.persistence.store import SqlRelationshipStore
from waypoint.services.authz.capabilities import ACTION_VIEW
from waypoint.services.authz.resolver import CapabilityResolver
from waypoint.services.org_context import build_org_context, delegatable_assets


router = APIRouter(tags=["organizations"], responses=DEFAULT_ERROR_RESPONSES)


class GrantEdgeResponse(BaseModel):
    kind: str
    id: str
    grantor_id: int
    asset_scope: str | list[int]
    data_types: str | list[str]
    capabilities: list[str]


class OrgContextResponse(BaseModel):
    org_id: int
    name: str
    kind: str
    managed_asset_ids: list[int]
    subscribed_asset_ids: list[int]
    received_grants: list[GrantEdgeResponse]


class AssetResponse(BaseModel):
    id: int
    name: str
    asset_type: str | None
    manager_id: int
    require_gp_approval_for_delegations: bool


@router.get("/organizations/{org_id}/context", response_model=SuccessEnvelope[OrgContextResponse])
async def get_org_context(
    org_id: int,
    request: Request,
    identity: Identity = Depends(get_identity),
    store: SqlRelationshipStore = Depends(get_store),
) -> dict[str, Any]:
    await require_self_or_admin(store, identity, org_id)
    context = await build_org_context(store, org_id)
    data = OrgContextResponse(
        org_id=context.organization.id,
        name=context.organization.name,
        kind=context.organization.kind,
        managed_asset_ids=context.managed_asset_ids,
        subscribed_asset_ids=context.subscribed_asset_ids,
        received_grants=[
            GrantEdgeResponse(
                kind=edge.kind,
                id=edge.id,
                grantor_id=edge.grantor_id,
                asset_scope=edge.scope.to_wire(),
                data_types=type_scope_to_wire(edge.data_types),
                capabilities=sorted(edge.capabilities),
            )
            for edge in context.received_grants
        ],
    )
    return success_response(request=request, data=data)


@router.get("/assets/delegatable", response_model=SuccessEnvelope[list[AssetResponse]])
async def list_delegatable_assets(
    request: Request,
    action: str = Query(default=ACTION_VIEW),
    identity: Identity = Depends(get_identity),
    resolver: CapabilityResolver = Depends(get_resolver),
    store: SqlRelationshipStore = Depends(get_store),
) -> dict[str, Any]:
    assets = await delegatable_assets(resolver, store, identity.org_id, action)
    data = [
        AssetResponse(
            id=asset.id,
            name=asset.name,
            asset_type=asset.asset_type,
            manager_id=asset.manager_id,
            require_gp_approval_for_delegations=asset.require_gp_approval_for_delegations,
        )
        for asset in assets
    ]
    return success_response(request=request, data=data)
