from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from waypoint.core.errors import NotFoundError
from waypoint.domain.edges import GrantEdge
from waypoint.domain.models import ORG_KIND_PLATFORM_ADMIN, Asset, Organization
from waypoint.domain.scope import AssetSet
from waypoint.persistence.store import RelationshipStore
from waypoint.services.authz.capabilities import ACTION_VIEW, parse_action
from waypoint.services.authz.resolver import CapabilityResolver


logger = logging.getLogger(__name__)


@dataclass
class OrgContext:
    organization: Organization
    managed_asset_ids: list[int] = field(default_factory=list)
    subscribed_asset_ids: list[int] = field(default_factory=list)
    received_grants: list[GrantEdge] = field(default_factory=list)


async def build_org_context(
    store: RelationshipStore,
    org_id: int,
    *,
    now: datetime | None = None,
) -> OrgContext:
    # Snapshot of what an organization holds right now; nothing here is cached.
    organization = await store.get_organization(org_id)
    if organization is None:
        raise NotFoundError(f"Organization {org_id} not found", details={"org_id": org_id})
    moment = now or datetime.now(timezone.utc)
    return OrgContext(
        organization=organization,
        managed_asset_ids=await store.list_managed_asset_ids(org_id),
        subscribed_asset_ids=await store.list_subscribed_asset_ids(org_id, now=moment),
        received_grants=await store.find_active_grants(org_id, now=moment),
    )


async def delegatable_assets(
    resolver: CapabilityResolver,
    store: RelationshipStore,
    org_id: int,
    action: str = ACTION_VIEW,
) -> list[Asset]:
    """Assets on which ``org_id`` currently holds ``action``.

    Candidates are gathered from the organization's own relationships, then
    each one is confirmed through the resolver so the result never disagrees
    with an authorization check.
    """
    action = parse_action(action)
    context = await build_org_context(store, org_id)
    candidates = set(context.managed_asset_ids) | set(context.subscribed_asset_ids)
    grantors: set[int] = set()
    for edge in context.received_grants:
        if isinstance(edge.scope, AssetSet):
            candidates.update(edge.scope.asset_ids)
        else:
            grantors.add(edge.grantor_id)
    for grantor_id in sorted(grantors):
        candidates.update(await store.list_managed_asset_ids(grantor_id))
        candidates.update(await store.list_subscribed_asset_ids(grantor_id, now=resolver.clock()))
    if context.organization.kind == ORG_KIND_PLATFORM_ADMIN:
        candidates.update(asset.id for asset in await store.list_assets())
    if not candidates:
        return []

    allowed: list[Asset] = []
    for asset in await store.list_assets(sorted(candidates)):
        decision = await resolver.resolve(org_id, action, asset.id)
        if decision.allowed:
            allowed.append(asset)
    logger.debug(
        "delegatable_assets org_id=%s action=%s candidates=%s allowed=%s",
        org_id,
        action,
        len(candidates),
        len(allowed),
    )
    return allowed
