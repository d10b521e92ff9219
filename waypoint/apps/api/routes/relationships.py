from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict

from waypoint.apps.api.deps import get_identity, get_lifecycle_manager, get_store, is_platform_admin
from waypoint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from waypoint.apps.api.response import SuccessEnvelope, success_response
from waypoint.domain.identity import Identity
from waypoint.domain.models import AccessGrant, Delegation, PublishingRight, Subscription
from waypoint.domain.requests import (
    AccessGrantRequest,
    DelegationRequest,
    PublishingRightRequest,
    SubscriptionRequest,
)
from waypoint.domain.scope import type_scope_to_wire
from waypoint.persistence.store import SqlRelationshipStore, ensure_utc
from waypoint.services.authz.capabilities import ACTION_PUBLISH, capabilities_from_flags
from waypoint.services.lifecycle import (
    KIND_ACCESS_GRANT,
    KIND_DELEGATION,
    KIND_PUBLISHING_RIGHT,
    KIND_SUBSCRIPTION,
    RelationshipLifecycleManager,
)


router = APIRouter(tags=["relationships"], responses=DEFAULT_ERROR_RESPONSES)


class TransitionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_status: str


def _iso(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value is not None else None


async def serialize_relationship(store: SqlRelationshipStore, entity: Any) -> dict[str, Any]:
    if isinstance(entity, Subscription):
        return {
            "kind": KIND_SUBSCRIPTION,
            "id": entity.id,
            "status": entity.status,
            "asset_id": entity.asset_id,
            "subscriber_id": entity.subscriber_id,
            "request_message": entity.request_message,
            "requested_at": _iso(entity.requested_at),
            "decided_at": _iso(entity.decided_at),
            "expires_at": _iso(entity.expires_at),
            "valid_to": _iso(entity.valid_to),
        }
    scope = await store.scope_of(entity)
    if isinstance(entity, AccessGrant):
        return {
            "kind": KIND_ACCESS_GRANT,
            "id": entity.id,
            "status": entity.status,
            "grantor_id": entity.grantor_id,
            "grantee_id": entity.grantee_id,
            "asset_scope": scope.to_wire(),
            "data_type_scope": type_scope_to_wire(
                frozenset(entity.data_type_scope) if entity.data_type_scope else None
            ),
            "capabilities": sorted(capabilities_from_flags(entity)),
            "requires_approval": entity.requires_approval,
            "approval_asset_ids": entity.approval_asset_ids or [],
            "granted_at": _iso(entity.granted_at),
            "expires_at": _iso(entity.expires_at),
        }
    if isinstance(entity, Delegation):
        return {
            "kind": KIND_DELEGATION,
            "id": entity.id,
            "status": entity.status,
            "delegator_id": entity.delegator_id,
            "delegate_id": entity.delegate_id,
            "asset_scope": scope.to_wire(),
            "type_scope": type_scope_to_wire(frozenset(entity.type_scope) if entity.type_scope else None),
            "can_manage_subscriptions": entity.can_manage_subscriptions,
            "requires_gp_approval": entity.requires_gp_approval,
            "approval_asset_ids": entity.approval_asset_ids or [],
            "created_at": _iso(entity.created_at),
            "expires_at": _iso(entity.expires_at),
        }
    return {
        "kind": KIND_PUBLISHING_RIGHT,
        "id": entity.id,
        "status": entity.status,
        "asset_owner_id": entity.asset_owner_id,
        "publisher_id": entity.publisher_id,
        "asset_scope": scope.to_wire(),
        "capabilities": sorted(capabilities_from_flags(entity) | {ACTION_PUBLISH}),
        "granted_at": _iso(entity.granted_at),
    }


def _parties(entity: Any) -> set[int]:
    if isinstance(entity, Subscription):
        return {entity.subscriber_id}
    if isinstance(entity, AccessGrant):
        return {entity.grantor_id, entity.grantee_id}
    if isinstance(entity, Delegation):
        return {entity.delegator_id, entity.delegate_id}
    if isinstance(entity, PublishingRight):
        return {entity.asset_owner_id, entity.publisher_id}
    return set()


@router.post(
    "/subscriptions",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def request_subscription(
    request: Request,
    payload: SubscriptionRequest,
    identity: Identity = Depends(get_identity),
    manager: RelationshipLifecycleManager = Depends(get_lifecycle_manager),
    store: SqlRelationshipStore = Depends(get_store),
) -> dict:
    subscription = await manager.request_subscription(
        identity,
        payload.asset_id,
        message=payload.message,
        expires_at=payload.expires_at,
    )
    return success_response(request=request, data=await serialize_relationship(store, subscription))


@router.post(
    "/access-grants",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def create_access_grant(
    request: Request,
    payload: AccessGrantRequest,
    identity: Identity = Depends(get_identity),
    manager: RelationshipLifecycleManager = Depends(get_lifecycle_manager),
    store: SqlRelationshipStore = Depends(get_store),
) -> dict:
    grant = await manager.create_access_grant(identity, payload)
    return success_response(request=request, data=await serialize_relationship(store, grant))


@router.post(
    "/delegations",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def create_delegation(
    request: Request,
    payload: DelegationRequest,
    identity: Identity = Depends(get_identity),
    manager: RelationshipLifecycleManager = Depends(get_lifecycle_manager),
    store: SqlRelationshipStore = Depends(get_store),
) -> dict:
    delegation = await manager.create_delegation(identity, payload)
    return success_response(request=request, data=await serialize_relationship(store, delegation))


@router.post(
    "/publishing-rights",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def create_publishing_right(
    request: Request,
    payload: PublishingRightRequest,
    identity: Identity = Depends(get_identity),
    manager: RelationshipLifecycleManager = Depends(get_lifecycle_manager),
    store: SqlRelationshipStore = Depends(get_store),
) -> dict:
    right = await manager.create_publishing_right(identity, payload)
    return success_response(request=request, data=await serialize_relationship(store, right))


@router.post(
    "/relationships/{kind}/{entity_id}/transitions",
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def transition_relationship(
    kind: str,
    entity_id: str,
    request: Request,
    payload: TransitionRequest,
    identity: Identity = Depends(get_identity),
    manager: RelationshipLifecycleManager = Depends(get_lifecycle_manager),
    store: SqlRelationshipStore = Depends(get_store),
) -> dict:
    entity = await manager.transition(kind, entity_id, payload.target_status, identity)
    return success_response(request=request, data=await serialize_relationship(store, entity))


@router.get(
    "/relationships/{kind}/{entity_id}",
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def get_relationship(
    kind: str,
    entity_id: str,
    request: Request,
    identity: Identity = Depends(get_identity),
    store: SqlRelationshipStore = Depends(get_store),
) -> dict:
    loaders = {
        KIND_SUBSCRIPTION: store.get_subscription,
        KIND_ACCESS_GRANT: store.get_access_grant,
        KIND_DELEGATION: store.get_delegation,
        KIND_PUBLISHING_RIGHT: store.get_publishing_right,
    }
    loader = loaders.get(kind)
    entity = await loader(entity_id) if loader is not None else None
    visible = entity is not None and identity.org_id in _parties(entity)
    if entity is not None and not visible:
        # Asset managers also see subscriptions to their assets.
        if isinstance(entity, Subscription):
            asset = await store.get_asset(entity.asset_id)
            visible = asset is not None and asset.manager_id == identity.org_id
        visible = visible or await is_platform_admin(store, identity.org_id)
    if not visible:
        # 404 instead of 403 so record ids do not leak across organizations.
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": f"{kind} {entity_id} not found"},
        )
    return success_response(request=request, data=await serialize_relationship(store, entity))
