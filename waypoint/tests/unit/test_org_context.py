from __future__ import annotations

import pytest

from waypoint.core.errors import NotFoundError
from waypoint.persistence.db import SessionLocal
from waypoint.persistence.store import SqlRelationshipStore
from waypoint.services.authz.resolver import CapabilityResolver
from waypoint.services.org_context import build_org_context, delegatable_assets
from waypoint.tests.utils.fixtures import (
    ADMIN_ORG,
    DELEGATE_CHRONOGRAPH,
    FUND_GATED,
    FUND_OPEN,
    FUND_SEQUOIA,
    GP_KLEINER,
    LP_HARVARD,
    LP_OHIO,
    create_access_grant,
    seed_fund_world,
)


@pytest.mark.asyncio
async def test_org_context_lists_current_holdings() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        store = SqlRelationshipStore(session)
        manager_context = await build_org_context(store, GP_KLEINER)
        assert manager_context.managed_asset_ids == [FUND_GATED, FUND_OPEN]
        assert manager_context.subscribed_asset_ids == []

        lp_context = await build_org_context(store, LP_OHIO)
        assert lp_context.subscribed_asset_ids == [FUND_GATED, FUND_OPEN]

        with pytest.raises(NotFoundError):
            await build_org_context(store, 8080)


@pytest.mark.asyncio
async def test_delegatable_assets_agree_with_resolver() -> None:
    async with SessionLocal() as session:
        await seed_fund_world(session)
        await create_access_grant(
            session, grantor_id=LP_HARVARD, grantee_id=DELEGATE_CHRONOGRAPH, can_view_data=True
        )
        await session.commit()
        store = SqlRelationshipStore(session)
        resolver = CapabilityResolver(store)

        third_party = await delegatable_assets(resolver, store, DELEGATE_CHRONOGRAPH)
        assert [asset.id for asset in third_party] == [FUND_OPEN]

        publishable = await delegatable_assets(resolver, store, LP_OHIO, action="publish")
        assert publishable == []

        everything = await delegatable_assets(resolver, store, ADMIN_ORG)
        assert [asset.id for asset in everything] == [FUND_GATED, FUND_OPEN, FUND_SEQUOIA]
