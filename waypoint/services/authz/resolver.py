from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Callable, Protocol, Sequence

from waypoint.core.errors import AssetNotFoundError, InsufficientPermissionsError
from waypoint.domain.edges import EDGE_ACCESS_GRANT, EDGE_PUBLISHING_RIGHT, GrantEdge
from waypoint.domain.models import ORG_KIND_PLATFORM_ADMIN, Asset, Organization
from waypoint.persistence.store import RelationshipStore
from waypoint.services.authz.capabilities import ACTION_VIEW, parse_action


logger = logging.getLogger(__name__)

VIA_PLATFORM_ADMIN = "platform_admin"
VIA_MANAGER = "manager"
VIA_SUBSCRIPTION = "subscription"
VIA_GRANT = "grant"

REASON_PLATFORM_ADMIN = "Platform administrator"
REASON_MANAGER = "Organization manages this asset"
REASON_SUBSCRIPTION = "Active subscription permits view"
REASON_SCOPED_GRANT = "Asset-scoped grant permits this action"
REASON_SCOPED_GRANT_DENIED = "Asset-scoped grant does not permit this action"
REASON_GLOBAL_GRANT = "Global grant permits this action"
REASON_NO_PERMISSION = "No permission found for this action"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Decision:
    # Explainable outcome; grant fields identify the edge that allowed the action.
    allowed: bool
    reason: str
    via: str | None = None
    grant_id: str | None = None
    grant_kind: str | None = None
    grantor_id: int | None = None

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(allowed=False, reason=reason)

    @classmethod
    def from_edge(cls, edge: GrantEdge, reason: str) -> "Decision":
        return cls(
            allowed=True,
            reason=reason,
            via=VIA_GRANT,
            grant_id=edge.id,
            grant_kind=edge.kind,
            grantor_id=edge.grantor_id,
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "via": self.via,
            "grant_id": self.grant_id,
            "grant_kind": self.grant_kind,
            "grantor_id": self.grantor_id,
        }


@dataclass
class ResolutionContext:
    """Inputs shared by every step of one resolution."""

    store: RelationshipStore
    org_id: int
    action: str
    asset: Asset
    now: datetime
    data_type: str | None = None
    _organization: Organization | None = field(default=None, repr=False)
    _organization_loaded: bool = field(default=False, repr=False)

    async def organization(self) -> Organization | None:
        if not self._organization_loaded:
            self._organization = await self.store.get_organization(self.org_id)
            self._organization_loaded = True
        return self._organization


class CapabilityCheck(Protocol):
    async def check(self, ctx: ResolutionContext) -> Decision | None: ...


class PlatformAdminCheck:
    async def check(self, ctx: ResolutionContext) -> Decision | None:
        organization = await ctx.organization()
        if organization is not None and organization.kind == ORG_KIND_PLATFORM_ADMIN:
            return Decision(allowed=True, reason=REASON_PLATFORM_ADMIN, via=VIA_PLATFORM_ADMIN)
        return None


class ManagerCheck:
    async def check(self, ctx: ResolutionContext) -> Decision | None:
        # The manager is root authority for every capability on its asset.
        if ctx.asset.manager_id == ctx.org_id:
            return Decision(allowed=True, reason=REASON_MANAGER, via=VIA_MANAGER)
        return None


class SubscriptionViewCheck:
    async def check(self, ctx: ResolutionContext) -> Decision | None:
        if ctx.action != ACTION_VIEW:
            return None
        subscription = await ctx.store.find_active_subscription(ctx.asset.id, ctx.org_id, now=ctx.now)
        if subscription is None:
            return None
        return Decision(allowed=True, reason=REASON_SUBSCRIPTION, via=VIA_SUBSCRIPTION)


class ScopedGrantCheck:
    """Access grants naming the asset explicitly decide alone when any exist.

    Scoped delegations and publishing rights only ever add an allow; they never
    shadow a broader grant from someone else.
    """

    async def check(self, ctx: ResolutionContext) -> Decision | None:
        edges = await ctx.store.find_active_grants(ctx.org_id, now=ctx.now, asset_id=ctx.asset.id)
        edges = [edge for edge in edges if edge.covers_data_type(ctx.data_type)]
        for edge in edges:
            if edge.permits(ctx.action):
                return Decision.from_edge(edge, REASON_SCOPED_GRANT)
        if any(edge.kind == EDGE_ACCESS_GRANT for edge in edges):
            return Decision.deny(REASON_SCOPED_GRANT_DENIED)
        return None


class GlobalGrantCheck:
    """ALL-scoped edges pass on only what the grantor itself holds on the asset now."""

    async def check(self, ctx: ResolutionContext) -> Decision | None:
        edges = await ctx.store.find_active_grants(ctx.org_id, now=ctx.now, global_only=True)
        for edge in edges:
            if not edge.covers_data_type(ctx.data_type) or not edge.permits(ctx.action):
                continue
            if await self._grantor_holds(ctx, edge):
                return Decision.from_edge(edge, REASON_GLOBAL_GRANT)
        return None

    async def _grantor_holds(self, ctx: ResolutionContext, edge: GrantEdge) -> bool:
        if ctx.asset.manager_id == edge.grantor_id:
            return True
        # A publishing right only ever spans assets its owner manages.
        if edge.kind == EDGE_PUBLISHING_RIGHT:
            return False
        # A subscription confers view and nothing else, so that is all it can pass on.
        if ctx.action != ACTION_VIEW:
            return False
        subscription = await ctx.store.find_active_subscription(ctx.asset.id, edge.grantor_id, now=ctx.now)
        return subscription is not None


DEFAULT_CHECKS: tuple[CapabilityCheck, ...] = (
    PlatformAdminCheck(),
    ManagerCheck(),
    SubscriptionViewCheck(),
    ScopedGrantCheck(),
    GlobalGrantCheck(),
)


class CapabilityResolver:
    """Decide whether an organization may perform an action on an asset.

    Checks run in order and the first one returning a Decision wins; when none
    applies the request is denied. Nothing is cached, so every call observes the
    store as it is at call time, including expiry.
    """

    def __init__(
        self,
        store: RelationshipStore,
        *,
        checks: Sequence[CapabilityCheck] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.checks = tuple(checks) if checks is not None else DEFAULT_CHECKS
        self.clock = clock or _utc_now

    async def resolve(
        self,
        org_id: int,
        action: str,
        asset_id: int,
        *,
        data_type: str | None = None,
    ) -> Decision:
        action = parse_action(action)
        asset = await self.store.get_asset(asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)
        ctx = ResolutionContext(
            store=self.store,
            org_id=org_id,
            action=action,
            asset=asset,
            now=self.clock(),
            data_type=data_type,
        )
        for step in self.checks:
            decision = await step.check(ctx)
            if decision is not None:
                break
        else:
            decision = Decision.deny(REASON_NO_PERMISSION)
        logger.debug(
            "capability_resolved org_id=%s action=%s asset_id=%s allowed=%s via=%s",
            org_id,
            action,
            asset_id,
            decision.allowed,
            decision.via,
        )
        return decision

    async def require(
        self,
        org_id: int,
        action: str,
        asset_id: int,
        *,
        data_type: str | None = None,
    ) -> Decision:
        decision = await self.resolve(org_id, action, asset_id, data_type=data_type)
        if not decision.allowed:
            raise InsufficientPermissionsError(
                decision.reason,
                per_asset={asset_id: [action]},
                details={"org_id": org_id, "action": action, "asset_id": asset_id},
            )
        return decision

    async def missing_capabilities(
        self,
        org_id: int,
        actions: Sequence[str],
        asset_ids: Sequence[int],
        *,
        data_types: Sequence[str | None] = (None,),
    ) -> dict[int, list[str]]:
        # Per-asset breakdown of actions the org does not hold; empty when it holds them all.
        missing: dict[int, list[str]] = {}
        for asset_id in asset_ids:
            lacking = []
            for action in actions:
                for data_type in data_types:
                    decision = await self.resolve(org_id, action, asset_id, data_type=data_type)
                    if not decision.allowed:
                        lacking.append(action)
                        break
            if lacking:
                missing[asset_id] = lacking
        return missing
