from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Iterable
from uuid import uuid4

from waypoint.core.errors import (
    AssetNotFoundError,
    ConflictingRelationshipError,
    DatabaseError,
    InsufficientPermissionsError,
    InvalidStateTransitionError,
    NotFoundError,
    RelationshipValidationError,
    WaypointError,
)
from waypoint.domain.identity import Identity
from waypoint.domain.models import (
    DELEGATION_ACTIVE,
    DELEGATION_PENDING,
    DELEGATION_REJECTED,
    DELEGATION_REVOKED,
    GRANT_ACTIVE,
    GRANT_PENDING,
    GRANT_REJECTED,
    GRANT_REVOKED,
    ORG_KIND_PLATFORM_ADMIN,
    PUBLISHING_RIGHT_ACTIVE,
    PUBLISHING_RIGHT_REVOKED,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CLOSED,
    SUBSCRIPTION_DECLINED,
    SUBSCRIPTION_PENDING,
    AccessGrant,
    Asset,
    Delegation,
    PublishingRight,
    Subscription,
)
from waypoint.domain.requests import (
    AccessGrantRequest,
    DelegationRequest,
    PublishingRightRequest,
    coerce_request,
)
from waypoint.domain.scope import AllAssets, AssetSet, Scope
from waypoint.persistence.store import RelationshipStore, ensure_utc
from waypoint.services.audit import OUTCOME_FAILURE, AuditRecord, AuditSink
from waypoint.services.authz.capabilities import (
    ACTION_APPROVE_DELEGATIONS,
    ACTION_APPROVE_SUBSCRIPTIONS,
    ACTION_MANAGE_SUBSCRIPTIONS,
    ACTION_PUBLISH,
    flags_from_capabilities,
)
from waypoint.services.authz.resolver import CapabilityResolver


logger = logging.getLogger(__name__)

KIND_SUBSCRIPTION = "subscription"
KIND_ACCESS_GRANT = "access_grant"
KIND_DELEGATION = "delegation"
KIND_PUBLISHING_RIGHT = "publishing_right"
RELATIONSHIP_KINDS: tuple[str, ...] = (
    KIND_SUBSCRIPTION,
    KIND_ACCESS_GRANT,
    KIND_DELEGATION,
    KIND_PUBLISHING_RIGHT,
)

GUARD_DECIDE_SUBSCRIPTION = "decide_subscription"
GUARD_CLOSE_SUBSCRIPTION = "close_subscription"
GUARD_DECIDE_GATED = "decide_gated"
GUARD_REVOKE_GRANT = "revoke_grant"
GUARD_REVOKE_PUBLISHING_RIGHT = "revoke_publishing_right"

# (kind, from, to) -> guard; anything missing here is an illegal transition.
TRANSITIONS: dict[tuple[str, str, str], str] = {
    (KIND_SUBSCRIPTION, SUBSCRIPTION_PENDING, SUBSCRIPTION_ACTIVE): GUARD_DECIDE_SUBSCRIPTION,
    (KIND_SUBSCRIPTION, SUBSCRIPTION_PENDING, SUBSCRIPTION_DECLINED): GUARD_DECIDE_SUBSCRIPTION,
    (KIND_SUBSCRIPTION, SUBSCRIPTION_ACTIVE, SUBSCRIPTION_CLOSED): GUARD_CLOSE_SUBSCRIPTION,
    (KIND_ACCESS_GRANT, GRANT_PENDING, GRANT_ACTIVE): GUARD_DECIDE_GATED,
    (KIND_ACCESS_GRANT, GRANT_PENDING, GRANT_REJECTED): GUARD_DECIDE_GATED,
    (KIND_ACCESS_GRANT, GRANT_ACTIVE, GRANT_REVOKED): GUARD_REVOKE_GRANT,
    (KIND_DELEGATION, DELEGATION_PENDING, DELEGATION_ACTIVE): GUARD_DECIDE_GATED,
    (KIND_DELEGATION, DELEGATION_PENDING, DELEGATION_REJECTED): GUARD_DECIDE_GATED,
    (KIND_DELEGATION, DELEGATION_ACTIVE, DELEGATION_REVOKED): GUARD_REVOKE_GRANT,
    (KIND_PUBLISHING_RIGHT, PUBLISHING_RIGHT_ACTIVE, PUBLISHING_RIGHT_REVOKED): GUARD_REVOKE_PUBLISHING_RIGHT,
}

_AUDIT_VERBS = {
    "active": "approved",
    SUBSCRIPTION_DECLINED: "declined",
    SUBSCRIPTION_CLOSED: "closed",
    "rejected": "rejected",
    "revoked": "revoked",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _grantor_of(entity: AccessGrant | Delegation) -> int:
    if isinstance(entity, Delegation):
        return entity.delegator_id
    return entity.grantor_id


class RelationshipLifecycleManager:
    """Create relationships and move them through their state machines.

    Every successful write is staged together with its audit record and
    committed once. Failed attempts roll back whatever was staged, then commit
    a failure audit record on its own before the error propagates.
    """

    def __init__(
        self,
        store: RelationshipStore,
        audit_sink: AuditSink,
        *,
        resolver: CapabilityResolver | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.audit = audit_sink
        self.clock = clock or _utc_now
        self.resolver = resolver or CapabilityResolver(store, clock=self.clock)

    async def request_subscription(
        self,
        actor: Identity,
        asset_id: int,
        *,
        message: str | None = None,
        expires_at: datetime | None = None,
    ) -> Subscription:
        audit_action = "subscription.requested"
        subscription_id = uuid4().hex
        try:
            asset = await self.store.get_asset(asset_id)
            if asset is None:
                raise AssetNotFoundError(asset_id)
            if asset.manager_id == actor.org_id:
                raise RelationshipValidationError("An asset manager cannot subscribe to its own asset")
            existing = await self.store.find_open_subscription(asset_id, actor.org_id)
            if existing is not None:
                raise ConflictingRelationshipError(
                    "An open subscription already exists for this asset",
                    details={"subscription_id": existing.id, "status": existing.status},
                )
            subscription = Subscription(
                id=subscription_id,
                asset_id=asset_id,
                subscriber_id=actor.org_id,
                status=SUBSCRIPTION_PENDING,
                request_message=message,
                requested_by_user_id=actor.user_id,
                requested_at=self.clock(),
                expires_at=ensure_utc(expires_at),
            )
            await self.store.save(subscription)
            await self._emit(actor, audit_action, KIND_SUBSCRIPTION, subscription_id, {"asset_id": asset_id})
            await self.store.commit()
        except WaypointError as exc:
            await self._record_failure(
                exc,
                actor=actor,
                action=audit_action,
                entity_type=KIND_SUBSCRIPTION,
                entity_id=None,
                details={"asset_id": asset_id},
            )
            raise
        logger.info(
            "subscription_requested id=%s asset_id=%s subscriber_id=%s",
            subscription_id,
            asset_id,
            actor.org_id,
        )
        return subscription

    async def create_access_grant(
        self,
        actor: Identity,
        request: AccessGrantRequest | dict[str, Any],
    ) -> AccessGrant:
        audit_action = "access_grant.created"
        grant_id = uuid4().hex
        details: dict[str, Any] = {}
        try:
            request = coerce_request(AccessGrantRequest, request)
            details = {"grantee_id": request.grantee_id, "asset_scope": request.asset_scope}
            await self._validate_parties(actor.org_id, request.grantee_id)
            scope = request.scope
            assets = await self._resolve_scope(actor.org_id, scope)
            asset_ids = [asset.id for asset in assets]
            await self._enforce_ceiling(actor.org_id, request.capabilities, asset_ids, request.data_types)
            gated = self._gated_asset_ids(actor.org_id, assets)
            grant = AccessGrant(
                id=grant_id,
                grantor_id=actor.org_id,
                grantee_id=request.grantee_id,
                asset_id=None,
                scope_all=isinstance(scope, AllAssets),
                data_type_scope=sorted(request.data_types) if request.data_types is not None else None,
                requires_approval=bool(gated),
                approval_asset_ids=gated or None,
                status=GRANT_PENDING if gated else GRANT_ACTIVE,
                granted_at=self.clock(),
                granted_by_user_id=actor.user_id,
                expires_at=request.expires_at,
                **flags_from_capabilities(request.capabilities),
            )
            await self.store.save(grant, asset_ids=asset_ids if isinstance(scope, AssetSet) else ())
            details.update({"status": grant.status, "gated_asset_ids": gated})
            await self._emit(actor, audit_action, KIND_ACCESS_GRANT, grant_id, details)
            await self.store.commit()
        except WaypointError as exc:
            await self._record_failure(
                exc,
                actor=actor,
                action=audit_action,
                entity_type=KIND_ACCESS_GRANT,
                entity_id=None,
                details=details,
            )
            raise
        logger.info(
            "access_grant_created id=%s grantor_id=%s grantee_id=%s status=%s",
            grant_id,
            actor.org_id,
            grant.grantee_id,
            grant.status,
        )
        return grant

    async def create_delegation(
        self,
        actor: Identity,
        request: DelegationRequest | dict[str, Any],
    ) -> Delegation:
        audit_action = "delegation.created"
        delegation_id = uuid4().hex
        details: dict[str, Any] = {}
        try:
            request = coerce_request(DelegationRequest, request)
            details = {"delegate_id": request.delegate_id, "asset_scope": request.asset_scope}
            await self._validate_parties(actor.org_id, request.delegate_id)
            scope = request.scope
            assets = await self._resolve_scope(actor.org_id, scope)
            asset_ids = [asset.id for asset in assets]
            await self._enforce_ceiling(actor.org_id, request.capabilities, asset_ids, request.data_types)
            gated = self._gated_asset_ids(actor.org_id, assets, requested=request.gp_approval_required)
            delegation = Delegation(
                id=delegation_id,
                delegator_id=actor.org_id,
                delegate_id=request.delegate_id,
                scope_all=isinstance(scope, AllAssets),
                type_scope=sorted(request.data_types) if request.data_types is not None else None,
                can_manage_subscriptions=request.can_manage_subscriptions,
                requires_gp_approval=bool(gated),
                approval_asset_ids=gated or None,
                status=DELEGATION_PENDING if gated else DELEGATION_ACTIVE,
                created_at=self.clock(),
                created_by_user_id=actor.user_id,
                expires_at=request.expires_at,
            )
            await self.store.save(delegation, asset_ids=asset_ids if isinstance(scope, AssetSet) else ())
            details.update({"status": delegation.status, "gated_asset_ids": gated})
            await self._emit(actor, audit_action, KIND_DELEGATION, delegation_id, details)
            await self.store.commit()
        except WaypointError as exc:
            await self._record_failure(
                exc,
                actor=actor,
                action=audit_action,
                entity_type=KIND_DELEGATION,
                entity_id=None,
                details=details,
            )
            raise
        logger.info(
            "delegation_created id=%s delegator_id=%s delegate_id=%s status=%s",
            delegation_id,
            actor.org_id,
            delegation.delegate_id,
            delegation.status,
        )
        return delegation

    async def create_publishing_right(
        self,
        actor: Identity,
        request: PublishingRightRequest | dict[str, Any],
    ) -> PublishingRight:
        audit_action = "publishing_right.created"
        right_id = uuid4().hex
        details: dict[str, Any] = {}
        try:
            request = coerce_request(PublishingRightRequest, request)
            details = {"publisher_id": request.publisher_id, "asset_scope": request.asset_scope}
            await self._validate_parties(actor.org_id, request.publisher_id)
            scope = request.scope
            assets = await self._resolve_scope(actor.org_id, scope, include_subscriptions=False)
            # Only the manager may hand out publishing on its assets.
            not_managed = {asset.id: [ACTION_PUBLISH] for asset in assets if asset.manager_id != actor.org_id}
            if not_managed:
                raise InsufficientPermissionsError(
                    "Only the asset manager may grant publishing rights",
                    per_asset=not_managed,
                )
            existing = await self.store.find_active_publishing_right(actor.org_id, request.publisher_id)
            if existing is not None:
                raise ConflictingRelationshipError(
                    "An active publishing right already exists for this publisher",
                    details={"publishing_right_id": existing.id},
                )
            right = PublishingRight(
                id=right_id,
                asset_owner_id=actor.org_id,
                publisher_id=request.publisher_id,
                scope_all=isinstance(scope, AllAssets),
                can_manage_subscriptions=request.can_manage_subscriptions,
                can_approve_subscriptions=request.can_approve_subscriptions,
                can_approve_delegations=request.can_approve_delegations,
                can_view_data=request.can_view_data,
                status=PUBLISHING_RIGHT_ACTIVE,
                granted_at=self.clock(),
                granted_by_user_id=actor.user_id,
            )
            asset_ids = [asset.id for asset in assets] if isinstance(scope, AssetSet) else []
            await self.store.save(right, asset_ids=asset_ids)
            await self._emit(actor, audit_action, KIND_PUBLISHING_RIGHT, right_id, details)
            await self.store.commit()
        except WaypointError as exc:
            await self._record_failure(
                exc,
                actor=actor,
                action=audit_action,
                entity_type=KIND_PUBLISHING_RIGHT,
                entity_id=None,
                details=details,
            )
            raise
        logger.info(
            "publishing_right_created id=%s owner_id=%s publisher_id=%s",
            right_id,
            actor.org_id,
            right.publisher_id,
        )
        return right

    async def transition(
        self,
        entity_kind: str,
        entity_id: str,
        target_status: str,
        actor: Identity,
    ) -> Subscription | AccessGrant | Delegation | PublishingRight:
        audit_action = f"{entity_kind}.{_AUDIT_VERBS.get(target_status, target_status)}"
        details: dict[str, Any] = {"to": target_status}
        try:
            if entity_kind not in RELATIONSHIP_KINDS:
                raise RelationshipValidationError(
                    f"Unknown relationship kind: {entity_kind}",
                    details={"kind": entity_kind},
                )
            entity = await self._load(entity_kind, entity_id)
            current = entity.status
            details["from"] = current
            guard = TRANSITIONS.get((entity_kind, current, target_status))
            if guard is None:
                raise InvalidStateTransitionError(
                    f"Cannot move {entity_kind} from {current} to {target_status}",
                    details={"from": current, "to": target_status},
                )
            await self._check_guard(guard, entity, actor)
            values = self._transition_values(entity_kind, target_status, actor)
            applied = await self.store.compare_and_set_status(entity, expected_status=current, values=values)
            if not applied:
                # Someone else moved the entity after we read it.
                raise InvalidStateTransitionError(
                    f"{entity_kind} {entity_id} changed status concurrently",
                    details={"from": current, "to": target_status, "observed": entity.status},
                )
            await self._emit(actor, audit_action, entity_kind, entity_id, details)
            await self.store.commit()
        except WaypointError as exc:
            await self._record_failure(
                exc,
                actor=actor,
                action=audit_action,
                entity_type=entity_kind,
                entity_id=entity_id,
                details=details,
            )
            raise
        logger.info(
            "relationship_transition kind=%s id=%s from=%s to=%s actor_org_id=%s",
            entity_kind,
            entity_id,
            current,
            target_status,
            actor.org_id,
        )
        return entity

    async def approve(self, entity_kind: str, entity_id: str, actor: Identity):
        return await self.transition(entity_kind, entity_id, "active", actor)

    async def reject(self, entity_kind: str, entity_id: str, actor: Identity):
        target = SUBSCRIPTION_DECLINED if entity_kind == KIND_SUBSCRIPTION else "rejected"
        return await self.transition(entity_kind, entity_id, target, actor)

    async def revoke(self, entity_kind: str, entity_id: str, actor: Identity):
        return await self.transition(entity_kind, entity_id, "revoked", actor)

    async def close_subscription(self, subscription_id: str, actor: Identity):
        return await self.transition(KIND_SUBSCRIPTION, subscription_id, SUBSCRIPTION_CLOSED, actor)

    async def _load(self, entity_kind: str, entity_id: str):
        loaders = {
            KIND_SUBSCRIPTION: self.store.get_subscription,
            KIND_ACCESS_GRANT: self.store.get_access_grant,
            KIND_DELEGATION: self.store.get_delegation,
            KIND_PUBLISHING_RIGHT: self.store.get_publishing_right,
        }
        entity = await loaders[entity_kind](entity_id)
        if entity is None:
            raise NotFoundError(
                f"{entity_kind} {entity_id} not found",
                details={"kind": entity_kind, "id": entity_id},
            )
        return entity

    async def _validate_parties(self, grantor_id: int, grantee_id: int) -> None:
        if grantor_id == grantee_id:
            raise RelationshipValidationError("Grantee must differ from grantor")
        if await self.store.get_organization(grantee_id) is None:
            raise NotFoundError(f"Organization {grantee_id} not found", details={"org_id": grantee_id})

    async def _resolve_scope(
        self,
        grantor_id: int,
        scope: Scope,
        *,
        include_subscriptions: bool = True,
    ) -> list[Asset]:
        # ALL is pinned to the grantor's current authority at the time of the call.
        if isinstance(scope, AllAssets):
            asset_ids = set(await self.store.list_managed_asset_ids(grantor_id))
            if include_subscriptions:
                asset_ids.update(await self.store.list_subscribed_asset_ids(grantor_id, now=self.clock()))
            if not asset_ids:
                return []
            return await self.store.list_assets(sorted(asset_ids))
        assets = await self.store.list_assets(sorted(scope.asset_ids))
        missing = scope.asset_ids.difference(asset.id for asset in assets)
        if missing:
            raise AssetNotFoundError(min(missing))
        return assets

    async def _enforce_ceiling(
        self,
        grantor_id: int,
        capabilities: Iterable[str],
        asset_ids: list[int],
        data_types: frozenset[str] | None,
    ) -> None:
        # A grantor can only hand on what it holds, on every asset in scope.
        missing = await self.resolver.missing_capabilities(
            grantor_id,
            sorted(capabilities),
            asset_ids,
            data_types=sorted(data_types) if data_types is not None else (None,),
        )
        if missing:
            raise InsufficientPermissionsError(
                "Grantor does not hold every capability being granted",
                per_asset=missing,
            )

    @staticmethod
    def _gated_asset_ids(grantor_id: int, assets: Iterable[Asset], *, requested: bool = False) -> list[int]:
        # A grantor may opt into approval for every asset it does not manage.
        return sorted(
            asset.id
            for asset in assets
            if (requested or asset.require_gp_approval_for_delegations) and asset.manager_id != grantor_id
        )

    async def _is_platform_admin(self, org_id: int) -> bool:
        organization = await self.store.get_organization(org_id)
        return organization is not None and organization.kind == ORG_KIND_PLATFORM_ADMIN

    async def _in_scope_asset_ids(self, entity: AccessGrant | Delegation) -> list[int]:
        scope = await self.store.scope_of(entity)
        if isinstance(scope, AssetSet):
            return sorted(scope.asset_ids)
        assets = await self._resolve_scope(_grantor_of(entity), scope)
        return [asset.id for asset in assets]

    async def _check_guard(self, guard: str, entity: Any, actor: Identity) -> None:
        if guard == GUARD_DECIDE_SUBSCRIPTION:
            await self.resolver.require(actor.org_id, ACTION_APPROVE_SUBSCRIPTIONS, entity.asset_id)
        elif guard == GUARD_CLOSE_SUBSCRIPTION:
            if actor.org_id != entity.subscriber_id:
                await self.resolver.require(actor.org_id, ACTION_MANAGE_SUBSCRIPTIONS, entity.asset_id)
        elif guard == GUARD_DECIDE_GATED:
            # Approval covers the gated set snapshotted at creation, all or nothing.
            asset_ids = list(entity.approval_asset_ids or []) or await self._in_scope_asset_ids(entity)
            missing = await self.resolver.missing_capabilities(
                actor.org_id, [ACTION_APPROVE_DELEGATIONS], asset_ids
            )
            if missing:
                raise InsufficientPermissionsError(
                    "Approver lacks approve_delegations on every gated asset",
                    per_asset=missing,
                )
        elif guard == GUARD_REVOKE_GRANT:
            if actor.org_id == _grantor_of(entity) or await self._is_platform_admin(actor.org_id):
                return
            assets = await self.store.list_assets(await self._in_scope_asset_ids(entity))
            if not any(asset.manager_id == actor.org_id for asset in assets):
                raise InsufficientPermissionsError(
                    "Only the grantor or a manager of an in-scope asset may revoke",
                    details={"actor_org_id": actor.org_id},
                )
        elif guard == GUARD_REVOKE_PUBLISHING_RIGHT:
            if actor.org_id != entity.asset_owner_id and not await self._is_platform_admin(actor.org_id):
                raise InsufficientPermissionsError(
                    "Only the asset owner may revoke a publishing right",
                    details={"actor_org_id": actor.org_id},
                )

    def _transition_values(self, entity_kind: str, target_status: str, actor: Identity) -> dict[str, Any]:
        now = self.clock()
        if entity_kind == KIND_SUBSCRIPTION:
            if target_status == SUBSCRIPTION_CLOSED:
                return {"status": target_status, "valid_to": now, "closed_by_org_id": actor.org_id}
            return {
                "status": target_status,
                "decided_at": now,
                "decided_by_org_id": actor.org_id,
                "decided_by_user_id": actor.user_id,
            }
        if target_status in {GRANT_REVOKED, DELEGATION_REVOKED, PUBLISHING_RIGHT_REVOKED}:
            return {"status": target_status, "revoked_at": now, "revoked_by_org_id": actor.org_id}
        if entity_kind == KIND_ACCESS_GRANT:
            if target_status == GRANT_ACTIVE:
                return {
                    "status": target_status,
                    "approved_at": now,
                    "approved_by_org_id": actor.org_id,
                    "approved_by_user_id": actor.user_id,
                }
            return {"status": GRANT_REJECTED, "rejected_at": now}
        return {
            "status": target_status,
            "decided_at": now,
            "decided_by_org_id": actor.org_id,
            "decided_by_user_id": actor.user_id,
        }

    async def _emit(
        self,
        actor: Identity,
        action: str,
        entity_type: str,
        entity_id: str | None,
        details: dict[str, Any],
    ) -> None:
        await self.audit.emit(
            AuditRecord(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                organization_id=actor.org_id,
                actor_id=actor.user_id,
                details=dict(details),
                occurred_at=self.clock(),
            )
        )

    async def _record_failure(
        self,
        exc: WaypointError,
        *,
        actor: Identity,
        action: str,
        entity_type: str,
        entity_id: str | None,
        details: dict[str, Any],
    ) -> None:
        # Discard anything staged for the failed attempt, then persist the failure alone.
        await self.store.rollback()
        await self.audit.emit(
            AuditRecord(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                organization_id=actor.org_id,
                actor_id=actor.user_id,
                outcome=OUTCOME_FAILURE,
                error_code=exc.code,
                details={**details, "message": exc.message},
                occurred_at=self.clock(),
            )
        )
        try:
            await self.store.commit()
        except DatabaseError as audit_exc:
            logger.error(
                "failure_audit_write_failed action=%s entity_id=%s",
                action,
                entity_id,
                exc_info=audit_exc,
            )
        logger.warning(
            "relationship_operation_failed action=%s entity_id=%s code=%s actor_org_id=%s",
            action,
            entity_id,
            exc.code,
            actor.org_id,
        )
