from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.domain.models import AccessGrantAsset
from waypoint.persistence.repos import relationships as relationships_repo


logger = logging.getLogger(__name__)


async def backfill_legacy_grant_assets(session: AsyncSession, *, dry_run: bool = False) -> int:
    """Copy single-asset grants into the junction table.

    The legacy ``asset_id`` column is left in place; scope reads union both, so
    running this twice is harmless. The caller owns the commit.
    """
    grants = await relationships_repo.list_legacy_access_grants(session)
    for grant in grants:
        logger.info("legacy_grant_backfill grant_id=%s asset_id=%s dry_run=%s", grant.id, grant.asset_id, dry_run)
        if not dry_run:
            session.add(AccessGrantAsset(grant_id=grant.id, asset_id=grant.asset_id))
    return len(grants)
