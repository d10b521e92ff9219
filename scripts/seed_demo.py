from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

from waypoint.core.logging import configure_logging
from waypoint.domain.identity import Identity
from waypoint.domain.models import (
    ORG_KIND_ASSET_MANAGER,
    ORG_KIND_DELEGATE,
    ORG_KIND_LIMITED_PARTNER,
    ORG_KIND_PLATFORM_ADMIN,
    Asset,
    Organization,
)
from waypoint.persistence.db import SessionLocal, create_schema
from waypoint.persistence.store import SqlRelationshipStore
from waypoint.services.audit import SqlAuditSink
from waypoint.services.lifecycle import KIND_DELEGATION, KIND_SUBSCRIPTION, RelationshipLifecycleManager


PLATFORM_ORG_ID = 1
GENII_ORG_ID = 1001
KLEINER_ORG_ID = 2001
SEQUOIA_ORG_ID = 2002
OHIO_ORG_ID = 3001
HARVARD_ORG_ID = 3002
DELOITTE_ORG_ID = 4001
CHRONOGRAPH_ORG_ID = 4003

KP_FUND_ID = 9001
KP_GROWTH_ID = 9002
SEQUOIA_SEED_ID = 9003


@dataclass(frozen=True)
class DemoAsset:
    id: int
    name: str
    asset_type: str
    manager_id: int
    gated: bool = False


def build_demo_organizations() -> tuple[Organization, ...]:
    # Stable ids keep demo requests and docs reproducible across resets.
    return (
        Organization(id=PLATFORM_ORG_ID, name="Waypoint Platform", kind=ORG_KIND_PLATFORM_ADMIN),
        Organization(id=GENII_ORG_ID, name="Genii Admin Services", kind=ORG_KIND_DELEGATE),
        Organization(id=KLEINER_ORG_ID, name="Kleiner Perkins", kind=ORG_KIND_ASSET_MANAGER),
        Organization(id=SEQUOIA_ORG_ID, name="Sequoia Capital", kind=ORG_KIND_ASSET_MANAGER),
        Organization(id=OHIO_ORG_ID, name="State of Ohio Pension", kind=ORG_KIND_LIMITED_PARTNER),
        Organization(id=HARVARD_ORG_ID, name="Harvard Management Co.", kind=ORG_KIND_LIMITED_PARTNER),
        Organization(id=DELOITTE_ORG_ID, name="Deloitte Audit", kind=ORG_KIND_DELEGATE),
        Organization(id=CHRONOGRAPH_ORG_ID, name="Chronograph", kind=ORG_KIND_DELEGATE),
    )


def build_demo_assets() -> tuple[DemoAsset, ...]:
    return (
        DemoAsset(KP_FUND_ID, "KP Fund XVIII", "fund", KLEINER_ORG_ID, gated=True),
        DemoAsset(KP_GROWTH_ID, "KP Growth III", "fund", KLEINER_ORG_ID),
        DemoAsset(SEQUOIA_SEED_ID, "Sequoia Seed 2025", "fund", SEQUOIA_ORG_ID),
    )


def _actor(org_id: int) -> Identity:
    return Identity(user_id=f"seed-{org_id}", org_id=org_id)


async def _seed_relationships(manager: RelationshipLifecycleManager) -> int:
    # Drive everything through the lifecycle manager so the audit trail matches real usage.
    created = 0
    for subscriber_id, asset_id, manager_id in (
        (OHIO_ORG_ID, KP_FUND_ID, KLEINER_ORG_ID),
        (OHIO_ORG_ID, SEQUOIA_SEED_ID, SEQUOIA_ORG_ID),
        (HARVARD_ORG_ID, KP_GROWTH_ID, KLEINER_ORG_ID),
    ):
        subscription = await manager.request_subscription(
            _actor(subscriber_id), asset_id, message="Demo subscription request"
        )
        await manager.approve(KIND_SUBSCRIPTION, subscription.id, _actor(manager_id))
        created += 1

    await manager.create_publishing_right(
        _actor(KLEINER_ORG_ID),
        {
            "publisher_id": GENII_ORG_ID,
            "asset_scope": "ALL",
            "can_manage_subscriptions": True,
            "can_approve_subscriptions": True,
        },
    )
    created += 1

    # KP Fund XVIII is gated, so the auditor delegation waits for Kleiner Perkins.
    delegation = await manager.create_delegation(
        _actor(OHIO_ORG_ID),
        {"delegate_id": DELOITTE_ORG_ID, "asset_scope": [KP_FUND_ID], "type_scope": ["K-1_TAX_FORM"]},
    )
    await manager.approve(KIND_DELEGATION, delegation.id, _actor(KLEINER_ORG_ID))
    created += 1

    await manager.create_access_grant(
        _actor(HARVARD_ORG_ID),
        {"grantee_id": CHRONOGRAPH_ORG_ID, "asset_scope": [KP_GROWTH_ID], "can_view_data": True},
    )
    created += 1
    return created


async def seed_demo() -> int:
    await create_schema()
    async with SessionLocal() as session:
        if await session.get(Organization, PLATFORM_ORG_ID) is not None:
            print("Demo organizations already seeded; skipping.")
            return 0

        session.add_all(build_demo_organizations())
        await session.flush()
        session.add_all(
            Asset(
                id=item.id,
                name=item.name,
                asset_type=item.asset_type,
                manager_id=item.manager_id,
                require_gp_approval_for_delegations=item.gated,
            )
            for item in build_demo_assets()
        )
        await session.commit()

        store = SqlRelationshipStore(session)
        manager = RelationshipLifecycleManager(store, SqlAuditSink(session))
        created = await _seed_relationships(manager)
        print(f"Seeded {len(build_demo_organizations())} organizations and {created} relationships.")
        return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
