from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.domain.models import (
    AccessGrant,
    AccessGrantAsset,
    Asset,
    Delegation,
    DelegationAsset,
    GRANT_ACTIVE,
    DELEGATION_ACTIVE,
    Organization,
    PUBLISHING_RIGHT_ACTIVE,
    PublishingRight,
    PublishingRightAsset,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_PENDING,
    Subscription,
)


async def get_organization(session: AsyncSession, *, org_id: int) -> Organization | None:
    result = await session.execute(select(Organization).where(Organization.id == org_id))
    return result.scalar_one_or_none()


async def get_asset(session: AsyncSession, *, asset_id: int) -> Asset | None:
    # Soft-deleted assets are invisible to authorization.
    result = await session.execute(
        select(Asset).where(Asset.id == asset_id, Asset.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def list_assets(session: AsyncSession, *, asset_ids: Iterable[int] | None = None) -> list[Asset]:
    stmt = select(Asset).where(Asset.deleted_at.is_(None))
    if asset_ids is not None:
        stmt = stmt.where(Asset.id.in_(list(asset_ids)))
    result = await session.execute(stmt.order_by(Asset.id.asc()))
    return list(result.scalars().all())


async def list_managed_assets(session: AsyncSession, *, org_id: int) -> list[Asset]:
    result = await session.execute(
        select(Asset)
        .where(Asset.manager_id == org_id, Asset.deleted_at.is_(None))
        .order_by(Asset.id.asc())
    )
    return list(result.scalars().all())


def _subscription_live(now: datetime):
    # Active and not past its optional expiry at the time of the check.
    return and_(
        Subscription.status == SUBSCRIPTION_ACTIVE,
        or_(Subscription.expires_at.is_(None), Subscription.expires_at > now),
    )


async def find_active_subscription(
    session: AsyncSession,
    *,
    asset_id: int,
    subscriber_id: int,
    now: datetime,
) -> Subscription | None:
    result = await session.execute(
        select(Subscription)
        .where(
            Subscription.asset_id == asset_id,
            Subscription.subscriber_id == subscriber_id,
            _subscription_live(now),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_open_subscription(
    session: AsyncSession,
    *,
    asset_id: int,
    subscriber_id: int,
) -> Subscription | None:
    # Open means neither declined nor closed; expiry does not reopen the pair.
    result = await session.execute(
        select(Subscription)
        .where(
            Subscription.asset_id == asset_id,
            Subscription.subscriber_id == subscriber_id,
            Subscription.status.in_([SUBSCRIPTION_PENDING, SUBSCRIPTION_ACTIVE]),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_subscribed_asset_ids(session: AsyncSession, *, subscriber_id: int, now: datetime) -> list[int]:
    result = await session.execute(
        select(Subscription.asset_id)
        .join(Asset, Asset.id == Subscription.asset_id)
        .where(
            Subscription.subscriber_id == subscriber_id,
            Asset.deleted_at.is_(None),
            _subscription_live(now),
        )
        .order_by(Subscription.asset_id.asc())
    )
    return sorted(set(result.scalars().all()))


async def get_subscription(session: AsyncSession, *, subscription_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.id == subscription_id))
    return result.scalar_one_or_none()


async def get_access_grant(session: AsyncSession, *, grant_id: str) -> AccessGrant | None:
    result = await session.execute(select(AccessGrant).where(AccessGrant.id == grant_id))
    return result.scalar_one_or_none()


async def get_delegation(session: AsyncSession, *, delegation_id: str) -> Delegation | None:
    result = await session.execute(select(Delegation).where(Delegation.id == delegation_id))
    return result.scalar_one_or_none()


async def get_publishing_right(session: AsyncSession, *, right_id: str) -> PublishingRight | None:
    result = await session.execute(select(PublishingRight).where(PublishingRight.id == right_id))
    return result.scalar_one_or_none()


async def find_active_publishing_right(
    session: AsyncSession,
    *,
    asset_owner_id: int,
    publisher_id: int,
) -> PublishingRight | None:
    result = await session.execute(
        select(PublishingRight)
        .where(
            PublishingRight.asset_owner_id == asset_owner_id,
            PublishingRight.publisher_id == publisher_id,
            PublishingRight.status == PUBLISHING_RIGHT_ACTIVE,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _junction_ids(
    session: AsyncSession,
    *,
    junction: Any,
    owner_column: Any,
    owner_ids: list[str],
) -> dict[str, list[int]]:
    # Batch junction lookups so scope reconstruction stays one query per relationship type.
    if not owner_ids:
        return {}
    result = await session.execute(
        select(owner_column, junction.asset_id).where(owner_column.in_(owner_ids))
    )
    grouped: dict[str, list[int]] = defaultdict(list)
    for owner_id, asset_id in result.all():
        grouped[owner_id].append(asset_id)
    return dict(grouped)


async def access_grant_asset_ids(session: AsyncSession, *, grant_ids: list[str]) -> dict[str, list[int]]:
    return await _junction_ids(
        session, junction=AccessGrantAsset, owner_column=AccessGrantAsset.grant_id, owner_ids=grant_ids
    )


async def delegation_asset_ids(session: AsyncSession, *, delegation_ids: list[str]) -> dict[str, list[int]]:
    return await _junction_ids(
        session,
        junction=DelegationAsset,
        owner_column=DelegationAsset.delegation_id,
        owner_ids=delegation_ids,
    )


async def publishing_right_asset_ids(session: AsyncSession, *, right_ids: list[str]) -> dict[str, list[int]]:
    return await _junction_ids(
        session,
        junction=PublishingRightAsset,
        owner_column=PublishingRightAsset.publishing_right_id,
        owner_ids=right_ids,
    )


async def find_active_access_grants(
    session: AsyncSession,
    *,
    grantee_id: int,
    now: datetime,
    asset_id: int | None = None,
    global_only: bool = False,
) -> list[AccessGrant]:
    """Return active, unexpired grants held by ``grantee_id``.

    ``asset_id`` narrows to grants whose explicit scope names the asset, either
    through the legacy column or the junction table. ``global_only`` narrows to
    ALL-scoped grants, including legacy rows with no asset at all.
    """
    in_junction = exists().where(
        AccessGrantAsset.grant_id == AccessGrant.id,
    )
    stmt = select(AccessGrant).where(
        AccessGrant.grantee_id == grantee_id,
        AccessGrant.status == GRANT_ACTIVE,
        or_(AccessGrant.expires_at.is_(None), AccessGrant.expires_at > now),
    )
    if asset_id is not None:
        stmt = stmt.where(
            AccessGrant.scope_all.is_(False),
            or_(
                AccessGrant.asset_id == asset_id,
                exists().where(
                    AccessGrantAsset.grant_id == AccessGrant.id,
                    AccessGrantAsset.asset_id == asset_id,
                ),
            ),
        )
    if global_only:
        stmt = stmt.where(
            or_(
                AccessGrant.scope_all.is_(True),
                and_(AccessGrant.asset_id.is_(None), ~in_junction),
            )
        )
    result = await session.execute(stmt.order_by(AccessGrant.granted_at.asc(), AccessGrant.id.asc()))
    return list(result.scalars().all())


async def find_active_delegations(
    session: AsyncSession,
    *,
    delegate_id: int,
    now: datetime,
    asset_id: int | None = None,
    global_only: bool = False,
) -> list[Delegation]:
    stmt = select(Delegation).where(
        Delegation.delegate_id == delegate_id,
        Delegation.status == DELEGATION_ACTIVE,
        or_(Delegation.expires_at.is_(None), Delegation.expires_at > now),
    )
    if asset_id is not None:
        stmt = stmt.where(
            Delegation.scope_all.is_(False),
            exists().where(
                DelegationAsset.delegation_id == Delegation.id,
                DelegationAsset.asset_id == asset_id,
            ),
        )
    if global_only:
        stmt = stmt.where(Delegation.scope_all.is_(True))
    result = await session.execute(stmt.order_by(Delegation.created_at.asc(), Delegation.id.asc()))
    return list(result.scalars().all())


async def find_active_publishing_rights(
    session: AsyncSession,
    *,
    publisher_id: int,
    asset_id: int | None = None,
    global_only: bool = False,
) -> list[PublishingRight]:
    stmt = select(PublishingRight).where(
        PublishingRight.publisher_id == publisher_id,
        PublishingRight.status == PUBLISHING_RIGHT_ACTIVE,
    )
    if asset_id is not None:
        stmt = stmt.where(
            PublishingRight.scope_all.is_(False),
            exists().where(
                PublishingRightAsset.publishing_right_id == PublishingRight.id,
                PublishingRightAsset.asset_id == asset_id,
            ),
        )
    if global_only:
        stmt = stmt.where(PublishingRight.scope_all.is_(True))
    result = await session.execute(stmt.order_by(PublishingRight.granted_at.asc(), PublishingRight.id.asc()))
    return list(result.scalars().all())


async def compare_and_set_status(
    session: AsyncSession,
    *,
    model: Any,
    entity_id: str,
    expected_status: str,
    values: dict[str, Any],
) -> bool:
    # Condition the write on the status we observed so a double-submit applies at most once.
    result = await session.execute(
        update(model)
        .where(model.id == entity_id, model.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def list_legacy_access_grants(session: AsyncSession) -> list[AccessGrant]:
    # Grants still carrying the single-asset column and no junction rows.
    stmt = select(AccessGrant).where(
        AccessGrant.asset_id.is_not(None),
        ~exists().where(AccessGrantAsset.grant_id == AccessGrant.id),
    )
    result = await session.execute(stmt.order_by(AccessGrant.granted_at.asc()))
    return list(result.scalars().all())
