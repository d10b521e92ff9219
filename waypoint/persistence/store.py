from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Iterable, Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.core.errors import ConflictingRelationshipError, DatabaseError
from waypoint.domain.edges import (
    EDGE_ACCESS_GRANT,
    EDGE_DELEGATION,
    EDGE_PUBLISHING_RIGHT,
    GrantEdge,
)
from waypoint.domain.models import (
    AccessGrant,
    AccessGrantAsset,
    Asset,
    Delegation,
    DelegationAsset,
    Organization,
    PublishingRight,
    PublishingRightAsset,
    Subscription,
)
from waypoint.domain.scope import Scope, scope_from_storage
from waypoint.persistence.repos import relationships as repo
from waypoint.services.authz.capabilities import (
    ACTION_MANAGE_SUBSCRIPTIONS,
    ACTION_PUBLISH,
    ACTION_VIEW,
    capabilities_from_flags,
)


logger = logging.getLogger(__name__)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class RelationshipStore(Protocol):
    """Read/write access to relationship records consumed by the core.

    Implementations decide the storage engine. Writes are staged until
    ``commit``; ``compare_and_set_status`` must only apply when the stored
    status still equals ``expected_status``.
    """

    async def get_organization(self, org_id: int) -> Organization | None: ...

    async def get_asset(self, asset_id: int) -> Asset | None: ...

    async def list_assets(self, asset_ids: Iterable[int] | None = None) -> list[Asset]: ...

    async def list_managed_asset_ids(self, org_id: int) -> list[int]: ...

    async def list_subscribed_asset_ids(self, org_id: int, *, now: datetime) -> list[int]: ...

    async def find_active_subscription(self, asset_id: int, org_id: int, *, now: datetime) -> Subscription | None: ...

    async def find_open_subscription(self, asset_id: int, subscriber_id: int) -> Subscription | None: ...

    async def find_active_grants(
        self,
        grantee_id: int,
        *,
        now: datetime,
        asset_id: int | None = None,
        global_only: bool = False,
    ) -> list[GrantEdge]: ...

    async def find_active_publishing_right(self, asset_owner_id: int, publisher_id: int) -> PublishingRight | None: ...

    async def get_subscription(self, subscription_id: str) -> Subscription | None: ...

    async def get_access_grant(self, grant_id: str) -> AccessGrant | None: ...

    async def get_delegation(self, delegation_id: str) -> Delegation | None: ...

    async def get_publishing_right(self, right_id: str) -> PublishingRight | None: ...

    async def scope_of(self, entity: Any) -> Scope: ...

    async def save(self, entity: Any, *, asset_ids: Iterable[int] = ()) -> None: ...

    async def compare_and_set_status(self, entity: Any, *, expected_status: str, values: dict[str, Any]) -> bool: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


def access_grant_edge(row: AccessGrant, junction_ids: Iterable[int]) -> GrantEdge:
    return GrantEdge(
        kind=EDGE_ACCESS_GRANT,
        id=row.id,
        grantor_id=row.grantor_id,
        grantee_id=row.grantee_id,
        scope=scope_from_storage(
            scope_all=row.scope_all, junction_ids=junction_ids, legacy_asset_id=row.asset_id
        ),
        capabilities=capabilities_from_flags(row),
        data_types=frozenset(row.data_type_scope) if row.data_type_scope else None,
        expires_at=ensure_utc(row.expires_at),
    )


def delegation_edge(row: Delegation, junction_ids: Iterable[int]) -> GrantEdge:
    # A delegation only ever hands over view, plus subscription management when flagged.
    capabilities = {ACTION_VIEW}
    if row.can_manage_subscriptions:
        capabilities.add(ACTION_MANAGE_SUBSCRIPTIONS)
    return GrantEdge(
        kind=EDGE_DELEGATION,
        id=row.id,
        grantor_id=row.delegator_id,
        grantee_id=row.delegate_id,
        scope=scope_from_storage(scope_all=row.scope_all, junction_ids=junction_ids, legacy_asset_id=None),
        capabilities=frozenset(capabilities),
        data_types=frozenset(row.type_scope) if row.type_scope else None,
        expires_at=ensure_utc(row.expires_at),
    )


def publishing_right_edge(row: PublishingRight, junction_ids: Iterable[int]) -> GrantEdge:
    return GrantEdge(
        kind=EDGE_PUBLISHING_RIGHT,
        id=row.id,
        grantor_id=row.asset_owner_id,
        grantee_id=row.publisher_id,
        scope=scope_from_storage(scope_all=row.scope_all, junction_ids=junction_ids, legacy_asset_id=None),
        capabilities=capabilities_from_flags(row) | {ACTION_PUBLISH},
    )


_JUNCTIONS: dict[type, tuple[type, str]] = {
    AccessGrant: (AccessGrantAsset, "grant_id"),
    Delegation: (DelegationAsset, "delegation_id"),
    PublishingRight: (PublishingRightAsset, "publishing_right_id"),
}


class SqlRelationshipStore:
    """RelationshipStore backed by one SQLAlchemy AsyncSession (one unit of work)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_organization(self, org_id: int) -> Organization | None:
        return await repo.get_organization(self.session, org_id=org_id)

    async def get_asset(self, asset_id: int) -> Asset | None:
        return await repo.get_asset(self.session, asset_id=asset_id)

    async def list_assets(self, asset_ids: Iterable[int] | None = None) -> list[Asset]:
        return await repo.list_assets(self.session, asset_ids=asset_ids)

    async def list_managed_asset_ids(self, org_id: int) -> list[int]:
        return [asset.id for asset in await repo.list_managed_assets(self.session, org_id=org_id)]

    async def list_subscribed_asset_ids(self, org_id: int, *, now: datetime) -> list[int]:
        return await repo.list_subscribed_asset_ids(self.session, subscriber_id=org_id, now=now)

    async def find_active_subscription(self, asset_id: int, org_id: int, *, now: datetime) -> Subscription | None:
        return await repo.find_active_subscription(
            self.session, asset_id=asset_id, subscriber_id=org_id, now=now
        )

    async def find_open_subscription(self, asset_id: int, subscriber_id: int) -> Subscription | None:
        return await repo.find_open_subscription(self.session, asset_id=asset_id, subscriber_id=subscriber_id)

    async def find_active_grants(
        self,
        grantee_id: int,
        *,
        now: datetime,
        asset_id: int | None = None,
        global_only: bool = False,
    ) -> list[GrantEdge]:
        grants = await repo.find_active_access_grants(
            self.session, grantee_id=grantee_id, now=now, asset_id=asset_id, global_only=global_only
        )
        delegations = await repo.find_active_delegations(
            self.session, delegate_id=grantee_id, now=now, asset_id=asset_id, global_only=global_only
        )
        rights = await repo.find_active_publishing_rights(
            self.session, publisher_id=grantee_id, asset_id=asset_id, global_only=global_only
        )
        grant_assets = await repo.access_grant_asset_ids(self.session, grant_ids=[row.id for row in grants])
        delegation_assets = await repo.delegation_asset_ids(
            self.session, delegation_ids=[row.id for row in delegations]
        )
        right_assets = await repo.publishing_right_asset_ids(self.session, right_ids=[row.id for row in rights])
        edges = [access_grant_edge(row, grant_assets.get(row.id, [])) for row in grants]
        edges.extend(delegation_edge(row, delegation_assets.get(row.id, [])) for row in delegations)
        edges.extend(publishing_right_edge(row, right_assets.get(row.id, [])) for row in rights)
        return edges

    async def find_active_publishing_right(self, asset_owner_id: int, publisher_id: int) -> PublishingRight | None:
        return await repo.find_active_publishing_right(
            self.session, asset_owner_id=asset_owner_id, publisher_id=publisher_id
        )

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        return await repo.get_subscription(self.session, subscription_id=subscription_id)

    async def get_access_grant(self, grant_id: str) -> AccessGrant | None:
        return await repo.get_access_grant(self.session, grant_id=grant_id)

    async def get_delegation(self, delegation_id: str) -> Delegation | None:
        return await repo.get_delegation(self.session, delegation_id=delegation_id)

    async def get_publishing_right(self, right_id: str) -> PublishingRight | None:
        return await repo.get_publishing_right(self.session, right_id=right_id)

    async def scope_of(self, entity: Any) -> Scope:
        if isinstance(entity, AccessGrant):
            ids = await repo.access_grant_asset_ids(self.session, grant_ids=[entity.id])
            return scope_from_storage(
                scope_all=entity.scope_all, junction_ids=ids.get(entity.id, []), legacy_asset_id=entity.asset_id
            )
        if isinstance(entity, Delegation):
            ids = await repo.delegation_asset_ids(self.session, delegation_ids=[entity.id])
        elif isinstance(entity, PublishingRight):
            ids = await repo.publishing_right_asset_ids(self.session, right_ids=[entity.id])
        else:
            raise TypeError(f"{type(entity).__name__} has no asset scope")
        return scope_from_storage(scope_all=entity.scope_all, junction_ids=ids.get(entity.id, []), legacy_asset_id=None)

    async def save(self, entity: Any, *, asset_ids: Iterable[int] = ()) -> None:
        # Flush the parent first so junction rows never precede it; nothing commits here.
        self.session.add(entity)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConflictingRelationshipError("Relationship conflicts with an existing record") from exc
        junction = _JUNCTIONS.get(type(entity))
        if junction is None:
            return
        model, owner_field = junction
        for asset_id in sorted(set(asset_ids)):
            self.session.add(model(**{owner_field: entity.id, "asset_id": asset_id}))

    async def compare_and_set_status(self, entity: Any, *, expected_status: str, values: dict[str, Any]) -> bool:
        applied = await repo.compare_and_set_status(
            self.session,
            model=type(entity),
            entity_id=entity.id,
            expected_status=expected_status,
            values=values,
        )
        # Reload so callers see what actually committed, including a concurrent winner's status.
        await self.session.refresh(entity)
        return applied

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except IntegrityError as exc:
            # Only the open-pair unique indexes can trip here.
            await self.session.rollback()
            raise ConflictingRelationshipError("Relationship conflicts with an existing record") from exc
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("relationship_store_commit_failed", exc_info=exc)
            raise DatabaseError("Failed to commit relationship changes") from exc

    async def rollback(self) -> None:
        await self.session.rollback()
