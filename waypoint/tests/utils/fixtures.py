from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.domain.identity import Identity
from waypoint.domain.models import (
    GRANT_ACTIVE,
    ORG_KIND_ASSET_MANAGER,
    ORG_KIND_DELEGATE,
    ORG_KIND_LIMITED_PARTNER,
    ORG_KIND_PLATFORM_ADMIN,
    SUBSCRIPTION_ACTIVE,
    AccessGrant,
    AccessGrantAsset,
    Asset,
    Organization,
    Subscription,
)
from waypoint.persistence.store import SqlRelationshipStore
from waypoint.services.audit import SqlAuditSink
from waypoint.services.lifecycle import RelationshipLifecycleManager


ADMIN_ORG = 1
GP_KLEINER = 10
GP_SEQUOIA = 20
LP_OHIO = 30
LP_HARVARD = 31
DELEGATE_DELOITTE = 40
DELEGATE_CHRONOGRAPH = 41

FUND_GATED = 100
FUND_OPEN = 101
FUND_SEQUOIA = 200


def utc_now() -> datetime:
    # Keep timestamps consistent for test-generated relationship records.
    return datetime.now(timezone.utc)


def identity(org_id: int) -> Identity:
    return Identity(user_id=f"user-{org_id}", org_id=org_id)


@dataclass
class World:
    store: SqlRelationshipStore
    manager: RelationshipLifecycleManager


def build_world(session: AsyncSession, *, clock: Callable[[], datetime] | None = None) -> World:
    # Store, audit sink and manager share the caller's session like the API wiring does.
    store = SqlRelationshipStore(session)
    manager = RelationshipLifecycleManager(store, SqlAuditSink(session), clock=clock)
    return World(store=store, manager=manager)


async def create_organization(
    session: AsyncSession,
    *,
    org_id: int,
    kind: str = ORG_KIND_LIMITED_PARTNER,
    name: str | None = None,
) -> Organization:
    organization = Organization(id=org_id, name=name or f"org-{org_id}", kind=kind)
    session.add(organization)
    await session.flush()
    return organization


async def create_asset(
    session: AsyncSession,
    *,
    asset_id: int,
    manager_id: int,
    gated: bool = False,
    deleted: bool = False,
) -> Asset:
    asset = Asset(
        id=asset_id,
        name=f"fund-{asset_id}",
        asset_type="fund",
        manager_id=manager_id,
        require_gp_approval_for_delegations=gated,
        deleted_at=utc_now() if deleted else None,
    )
    session.add(asset)
    await session.flush()
    return asset


async def create_subscription(
    session: AsyncSession,
    *,
    asset_id: int,
    subscriber_id: int,
    status: str = SUBSCRIPTION_ACTIVE,
    expires_at: datetime | None = None,
) -> Subscription:
    # Insert the row directly; lifecycle tests go through the manager instead.
    subscription = Subscription(
        id=uuid4().hex,
        asset_id=asset_id,
        subscriber_id=subscriber_id,
        status=status,
        requested_at=utc_now(),
        expires_at=expires_at,
    )
    session.add(subscription)
    await session.flush()
    return subscription


async def create_access_grant(
    session: AsyncSession,
    *,
    grantor_id: int,
    grantee_id: int,
    asset_ids: list[int] | None = None,
    legacy_asset_id: int | None = None,
    data_types: list[str] | None = None,
    status: str = GRANT_ACTIVE,
    expires_at: datetime | None = None,
    **flags: bool,
) -> AccessGrant:
    # asset_ids=None with no legacy asset means an ALL-scoped grant.
    grant = AccessGrant(
        id=uuid4().hex,
        grantor_id=grantor_id,
        grantee_id=grantee_id,
        asset_id=legacy_asset_id,
        scope_all=asset_ids is None and legacy_asset_id is None,
        data_type_scope=data_types,
        status=status,
        granted_at=utc_now(),
        expires_at=expires_at,
        **flags,
    )
    session.add(grant)
    await session.flush()
    for asset_id in asset_ids or []:
        session.add(AccessGrantAsset(grant_id=grant.id, asset_id=asset_id))
    await session.flush()
    return grant


async def seed_fund_world(session: AsyncSession) -> None:
    """Two managers, two LPs, two third parties and a platform admin.

    Ohio subscribes to both Kleiner funds; Harvard subscribes to the open one.
    The Kleiner flagship fund gates subscriber delegations behind approval.
    """
    await create_organization(session, org_id=ADMIN_ORG, kind=ORG_KIND_PLATFORM_ADMIN)
    await create_organization(session, org_id=GP_KLEINER, kind=ORG_KIND_ASSET_MANAGER)
    await create_organization(session, org_id=GP_SEQUOIA, kind=ORG_KIND_ASSET_MANAGER)
    await create_organization(session, org_id=LP_OHIO)
    await create_organization(session, org_id=LP_HARVARD)
    await create_organization(session, org_id=DELEGATE_DELOITTE, kind=ORG_KIND_DELEGATE)
    await create_organization(session, org_id=DELEGATE_CHRONOGRAPH, kind=ORG_KIND_DELEGATE)
    await create_asset(session, asset_id=FUND_GATED, manager_id=GP_KLEINER, gated=True)
    await create_asset(session, asset_id=FUND_OPEN, manager_id=GP_KLEINER)
    await create_asset(session, asset_id=FUND_SEQUOIA, manager_id=GP_SEQUOIA)
    await create_subscription(session, asset_id=FUND_GATED, subscriber_id=LP_OHIO)
    await create_subscription(session, asset_id=FUND_OPEN, subscriber_id=LP_OHIO)
    await create_subscription(session, asset_id=FUND_OPEN, subscriber_id=LP_HARVARD)
    await session.commit()
