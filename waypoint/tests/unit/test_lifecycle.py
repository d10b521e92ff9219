from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import func, select, update

from waypoint.core.errors import (
    AssetNotFoundError,
    ConflictingRelationshipError,
    InsufficientPermissionsError,
    InvalidStateTransitionError,
    NotFoundError,
    RelationshipValidationError,
)
from waypoint.domain.models import (
    DELEGATION_ACTIVE,
    DELEGATION_PENDING,
    GRANT_ACTIVE,
    GRANT_PENDING,
    GRANT_REVOKED,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CLOSED,
    SUBSCRIPTION_PENDING,
    AccessGrant,
    AccessGrantAsset,
    AuditEvent,
    Delegation,
)
from waypoint.persistence.db import SessionLocal
from waypoint.persistence.store import SqlRelationshipStore
from waypoint.services.audit import OUTCOME_FAILURE, OUTCOME_SUCCESS, SqlAuditSink
from waypoint.services.authz.resolver import CapabilityResolver
from waypoint.services.lifecycle import (
    KIND_ACCESS_GRANT,
    KIND_DELEGATION,
    KIND_PUBLISHING_RIGHT,
    KIND_SUBSCRIPTION,
    RelationshipLifecycleManager,
)
from waypoint.tests.utils.fixtures import (
    DELEGATE_CHRONOGRAPH,
    DELEGATE_DELOITTE,
    FUND_GATED,
    FUND_OPEN,
    FUND_SEQUOIA,
    GP_KLEINER,
    GP_SEQUOIA,
    LP_HARVARD,
    LP_OHIO,
    build_world,
    identity,
    seed_fund_world,
)


async def _count(model: Any) -> int:
    async with SessionLocal() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return int(result.scalar() or 0)


async def _audit_events(action: str) -> list[AuditEvent]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(AuditEvent).where(AuditEvent.action == action).order_by(AuditEvent.id.asc())
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_grant_exceeding_grantor_ceiling_writes_nothing() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        with pytest.raises(InsufficientPermissionsError) as exc_info:
            await world.manager.create_access_grant(
                identity(LP_OHIO),
                {
                    "grantee_id": DELEGATE_DELOITTE,
                    "asset_scope": [FUND_OPEN],
                    "can_view_data": True,
                    "can_publish": True,
                },
            )
    assert exc_info.value.per_asset == {FUND_OPEN: ["publish"]}
    assert await _count(AccessGrant) == 0
    assert await _count(AccessGrantAsset) == 0

    events = await _audit_events("access_grant.created")
    assert len(events) == 1
    assert events[0].outcome == OUTCOME_FAILURE
    assert events[0].error_code == "INSUFFICIENT_PERMISSIONS"
    assert events[0].organization_id == LP_OHIO


@pytest.mark.asyncio
async def test_grant_within_ceiling_is_active_and_audited() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        grant = await world.manager.create_access_grant(
            identity(LP_HARVARD),
            {"grantee_id": DELEGATE_CHRONOGRAPH, "asset_scope": [FUND_OPEN], "can_view_data": True},
        )
        assert grant.status == GRANT_ACTIVE
        assert grant.requires_approval is False
        decision = await world.manager.resolver.resolve(DELEGATE_CHRONOGRAPH, "view", FUND_OPEN)
        assert decision.allowed is True
        assert decision.grant_id == grant.id

    events = await _audit_events("access_grant.created")
    assert [event.outcome for event in events] == [OUTCOME_SUCCESS]
    assert events[0].entity_id == grant.id


@pytest.mark.asyncio
async def test_gated_delegation_waits_for_manager_approval() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        delegation = await world.manager.create_delegation(
            identity(LP_OHIO),
            {"delegate_id": DELEGATE_DELOITTE, "asset_scope": "ALL"},
        )
        delegation_id = delegation.id
        assert delegation.status == DELEGATION_PENDING
        assert delegation.approval_asset_ids == [FUND_GATED]

        # Pending delegations confer nothing, not even on the ungated fund.
        pending_view = await world.manager.resolver.resolve(DELEGATE_DELOITTE, "view", FUND_OPEN)
        assert pending_view.allowed is False

        with pytest.raises(InsufficientPermissionsError) as exc_info:
            await world.manager.approve(KIND_DELEGATION, delegation_id, identity(GP_SEQUOIA))
        assert exc_info.value.per_asset == {FUND_GATED: ["approve_delegations"]}

        approved = await world.manager.approve(KIND_DELEGATION, delegation_id, identity(GP_KLEINER))
        assert approved.status == DELEGATION_ACTIVE
        assert approved.decided_by_org_id == GP_KLEINER

        view = await world.manager.resolver.resolve(DELEGATE_DELOITTE, "view", FUND_GATED)
        assert view.allowed is True
        assert view.grantor_id == LP_OHIO
        publish = await world.manager.resolver.resolve(DELEGATE_DELOITTE, "publish", FUND_GATED)
        assert publish.allowed is False

    approvals = await _audit_events("delegation.approved")
    assert [event.outcome for event in approvals] == [OUTCOME_FAILURE, OUTCOME_SUCCESS]


@pytest.mark.asyncio
async def test_manager_delegation_on_gated_asset_is_not_gated() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        delegation = await world.manager.create_delegation(
            identity(GP_KLEINER),
            {"delegate_id": DELEGATE_DELOITTE, "asset_scope": [FUND_GATED], "can_manage_subscriptions": True},
        )
        assert delegation.status == DELEGATION_ACTIVE
        assert delegation.approval_asset_ids is None


@pytest.mark.asyncio
async def test_subscriber_cannot_delegate_subscription_management() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        with pytest.raises(InsufficientPermissionsError):
            await world.manager.create_delegation(
                identity(LP_HARVARD),
                {"delegate_id": DELEGATE_DELOITTE, "asset_scope": [FUND_OPEN], "can_manage_subscriptions": True},
            )
    assert await _count(Delegation) == 0


@pytest.mark.asyncio
async def test_gated_access_grant_requires_approval() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        grant = await world.manager.create_access_grant(
            identity(LP_OHIO),
            {"grantee_id": DELEGATE_CHRONOGRAPH, "asset_scope": [FUND_GATED], "can_view_data": True},
        )
        grant_id = grant.id
        assert grant.status == GRANT_PENDING
        assert grant.requires_approval is True

        approved = await world.manager.approve(KIND_ACCESS_GRANT, grant_id, identity(GP_KLEINER))
        assert approved.status == GRANT_ACTIVE
        assert approved.approved_by_org_id == GP_KLEINER


@pytest.mark.asyncio
async def test_second_approval_is_an_invalid_transition() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        subscription = await world.manager.request_subscription(identity(LP_HARVARD), FUND_GATED)
        subscription_id = subscription.id
        await world.manager.approve(KIND_SUBSCRIPTION, subscription_id, identity(GP_KLEINER))
        with pytest.raises(InvalidStateTransitionError):
            await world.manager.approve(KIND_SUBSCRIPTION, subscription_id, identity(GP_KLEINER))
        reloaded = await world.store.get_subscription(subscription_id)
        assert reloaded is not None
        assert reloaded.status == SUBSCRIPTION_ACTIVE


@pytest.mark.asyncio
async def test_open_subscription_pair_conflicts() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        pending = await world.manager.request_subscription(identity(LP_HARVARD), FUND_SEQUOIA, message="hello")
        assert pending.status == SUBSCRIPTION_PENDING
        with pytest.raises(ConflictingRelationshipError):
            await world.manager.request_subscription(identity(LP_HARVARD), FUND_SEQUOIA)
        with pytest.raises(ConflictingRelationshipError):
            await world.manager.request_subscription(identity(LP_OHIO), FUND_OPEN)


@pytest.mark.asyncio
async def test_manager_cannot_subscribe_to_own_asset() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        with pytest.raises(RelationshipValidationError):
            await world.manager.request_subscription(identity(GP_KLEINER), FUND_OPEN)
        with pytest.raises(AssetNotFoundError):
            await world.manager.request_subscription(identity(LP_HARVARD), 4242)


@pytest.mark.asyncio
async def test_subscription_decision_requires_approve_subscriptions() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        subscription = await world.manager.request_subscription(identity(LP_HARVARD), FUND_GATED)
        subscription_id = subscription.id
        with pytest.raises(InsufficientPermissionsError):
            await world.manager.reject(KIND_SUBSCRIPTION, subscription_id, identity(LP_OHIO))

        await world.manager.create_publishing_right(
            identity(GP_KLEINER),
            {"publisher_id": DELEGATE_DELOITTE, "asset_scope": "ALL", "can_approve_subscriptions": True},
        )
        approved = await world.manager.approve(KIND_SUBSCRIPTION, subscription_id, identity(DELEGATE_DELOITTE))
        assert approved.status == SUBSCRIPTION_ACTIVE
        assert approved.decided_by_org_id == DELEGATE_DELOITTE
        view = await world.manager.resolver.resolve(LP_HARVARD, "view", FUND_GATED)
        assert view.allowed is True


@pytest.mark.asyncio
async def test_subscriber_closes_own_subscription() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        subscription = await world.manager.request_subscription(identity(LP_HARVARD), FUND_SEQUOIA)
        subscription_id = subscription.id
        await world.manager.approve(KIND_SUBSCRIPTION, subscription_id, identity(GP_SEQUOIA))
        closed = await world.manager.close_subscription(subscription_id, identity(LP_HARVARD))
        assert closed.status == SUBSCRIPTION_CLOSED
        assert closed.closed_by_org_id == LP_HARVARD
        assert (await world.manager.resolver.resolve(LP_HARVARD, "view", FUND_SEQUOIA)).allowed is False
        with pytest.raises(InvalidStateTransitionError):
            await world.manager.close_subscription(subscription_id, identity(LP_HARVARD))

        # A closed pair may be requested again.
        again = await world.manager.request_subscription(identity(LP_HARVARD), FUND_SEQUOIA)
        assert again.status == SUBSCRIPTION_PENDING


@pytest.mark.asyncio
async def test_revoke_is_limited_to_grantor_and_asset_manager() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        grant = await world.manager.create_access_grant(
            identity(LP_OHIO),
            {"grantee_id": DELEGATE_CHRONOGRAPH, "asset_scope": [FUND_OPEN], "can_view_data": True},
        )
        grant_id = grant.id
        with pytest.raises(InsufficientPermissionsError):
            await world.manager.revoke(KIND_ACCESS_GRANT, grant_id, identity(LP_HARVARD))

        revoked = await world.manager.revoke(KIND_ACCESS_GRANT, grant_id, identity(GP_KLEINER))
        assert revoked.status == GRANT_REVOKED
        assert revoked.revoked_by_org_id == GP_KLEINER
        decision = await world.manager.resolver.resolve(DELEGATE_CHRONOGRAPH, "view", FUND_OPEN)
        assert decision.allowed is False


class _RacingStore(SqlRelationshipStore):
    """Let a competing writer flip the status right before our conditional update."""

    def __init__(self, session, winner_status: str) -> None:
        super().__init__(session)
        self.winner_status = winner_status

    async def compare_and_set_status(self, entity, *, expected_status, values):
        await self.session.execute(
            update(type(entity)).where(type(entity).id == entity.id).values(status=self.winner_status)
        )
        return await super().compare_and_set_status(entity, expected_status=expected_status, values=values)


@pytest.mark.asyncio
async def test_concurrent_decision_loses_with_invalid_transition() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        subscription = await world.manager.request_subscription(identity(LP_HARVARD), FUND_SEQUOIA)
        subscription_id = subscription.id

        store = _RacingStore(session, winner_status="declined")
        racing = RelationshipLifecycleManager(store, SqlAuditSink(session), resolver=CapabilityResolver(store))
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await racing.approve(KIND_SUBSCRIPTION, subscription_id, identity(GP_SEQUOIA))
        assert exc_info.value.details["observed"] == "declined"


@pytest.mark.asyncio
async def test_unknown_kind_and_missing_entity() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        with pytest.raises(RelationshipValidationError):
            await world.manager.transition("friendship", "abc", "active", identity(GP_KLEINER))
        with pytest.raises(NotFoundError):
            await world.manager.approve(KIND_DELEGATION, "missing", identity(GP_KLEINER))


@pytest.mark.asyncio
async def test_publishing_rights_are_manager_only_and_unique() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        with pytest.raises(InsufficientPermissionsError) as exc_info:
            await world.manager.create_publishing_right(
                identity(LP_OHIO), {"publisher_id": DELEGATE_DELOITTE, "asset_scope": [FUND_OPEN]}
            )
        assert exc_info.value.per_asset == {FUND_OPEN: ["publish"]}

        right = await world.manager.create_publishing_right(
            identity(GP_KLEINER), {"publisher_id": DELEGATE_DELOITTE, "asset_scope": "ALL"}
        )
        right_id = right.id
        assert right.scope_all is True
        with pytest.raises(ConflictingRelationshipError):
            await world.manager.create_publishing_right(
                identity(GP_KLEINER), {"publisher_id": DELEGATE_DELOITTE, "asset_scope": [FUND_OPEN]}
            )

        resolver = world.manager.resolver
        assert (await resolver.resolve(DELEGATE_DELOITTE, "publish", FUND_GATED)).allowed is True
        assert (await resolver.resolve(DELEGATE_DELOITTE, "publish", FUND_SEQUOIA)).allowed is False

        with pytest.raises(InsufficientPermissionsError):
            await world.manager.revoke(KIND_PUBLISHING_RIGHT, right_id, identity(GP_SEQUOIA))
        await world.manager.revoke(KIND_PUBLISHING_RIGHT, right_id, identity(GP_KLEINER))
        assert (await resolver.resolve(DELEGATE_DELOITTE, "publish", FUND_GATED)).allowed is False


@pytest.mark.asyncio
async def test_malformed_requests_are_rejected() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        actor = identity(GP_KLEINER)
        with pytest.raises(RelationshipValidationError):
            await world.manager.create_access_grant(
                actor, {"grantee_id": DELEGATE_DELOITTE, "asset_scope": [FUND_OPEN]}
            )
        with pytest.raises(RelationshipValidationError):
            await world.manager.create_access_grant(
                actor, {"grantee_id": DELEGATE_DELOITTE, "asset_scope": [], "can_view_data": True}
            )
        with pytest.raises(RelationshipValidationError):
            await world.manager.create_access_grant(
                actor, {"grantee_id": GP_KLEINER, "asset_scope": [FUND_OPEN], "can_view_data": True}
            )
        with pytest.raises(AssetNotFoundError):
            await world.manager.create_access_grant(
                actor, {"grantee_id": DELEGATE_DELOITTE, "asset_scope": [FUND_OPEN, 777], "can_view_data": True}
            )
        with pytest.raises(NotFoundError):
            await world.manager.create_access_grant(
                actor, {"grantee_id": 5555, "asset_scope": [FUND_OPEN], "can_view_data": True}
            )
    assert await _count(AccessGrant) == 0


@pytest.mark.asyncio
async def test_all_scope_with_no_authority_creates_empty_grant() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        grant = await world.manager.create_access_grant(
            identity(DELEGATE_DELOITTE),
            {"grantee_id": DELEGATE_CHRONOGRAPH, "asset_scope": "ALL", "can_view_data": True},
        )
        assert grant.status == GRANT_ACTIVE
        assert grant.scope_all is True
        decision = await world.manager.resolver.resolve(DELEGATE_CHRONOGRAPH, "view", FUND_OPEN)
        assert decision.allowed is False


@pytest.mark.asyncio
async def test_all_scope_grant_never_exceeds_what_grantor_later_holds() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        grant = await world.manager.create_access_grant(
            identity(DELEGATE_DELOITTE),
            {
                "grantee_id": LP_HARVARD,
                "asset_scope": "ALL",
                "can_view_data": True,
                "can_publish": True,
                "can_approve_delegations": True,
            },
        )
        assert grant.status == GRANT_ACTIVE

        subscription = await world.manager.request_subscription(identity(DELEGATE_DELOITTE), FUND_SEQUOIA)
        await world.manager.approve(KIND_SUBSCRIPTION, subscription.id, identity(GP_SEQUOIA))

        resolver = world.manager.resolver
        assert (await resolver.resolve(DELEGATE_DELOITTE, "publish", FUND_SEQUOIA)).allowed is False
        assert (await resolver.resolve(LP_HARVARD, "publish", FUND_SEQUOIA)).allowed is False
        assert (await resolver.resolve(LP_HARVARD, "approve_delegations", FUND_SEQUOIA)).allowed is False
        view = await resolver.resolve(LP_HARVARD, "view", FUND_SEQUOIA)
        assert view.allowed is True
        assert view.grantor_id == DELEGATE_DELOITTE


@pytest.mark.asyncio
async def test_delegator_can_request_approval_on_ungated_assets() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        world = build_world(session)
        delegation = await world.manager.create_delegation(
            identity(LP_HARVARD),
            {"delegate_id": DELEGATE_CHRONOGRAPH, "asset_scope": [FUND_OPEN], "gp_approval_required": True},
        )
        delegation_id = delegation.id
        assert delegation.status == DELEGATION_PENDING
        assert delegation.requires_gp_approval is True
        assert delegation.approval_asset_ids == [FUND_OPEN]
        assert (await world.manager.resolver.resolve(DELEGATE_CHRONOGRAPH, "view", FUND_OPEN)).allowed is False

        approved = await world.manager.approve(KIND_DELEGATION, delegation_id, identity(GP_KLEINER))
        assert approved.status == DELEGATION_ACTIVE
        assert (await world.manager.resolver.resolve(DELEGATE_CHRONOGRAPH, "view", FUND_OPEN)).allowed is True

        # A manager asking for approval on its own assets has nobody to ask.
        own = await world.manager.create_delegation(
            identity(GP_KLEINER),
            {"delegate_id": DELEGATE_DELOITTE, "asset_scope": [FUND_OPEN], "gp_approval_required": True},
        )
        assert own.status == DELEGATION_ACTIVE
        assert own.approval_asset_ids is None
