from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.domain.models import AuditEvent


async def list_events(
    session: AsyncSession,
    *,
    organization_id: int | None = None,
    action: str | None = None,
    outcome: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Callers outside the platform admin role always pass organization_id.
    stmt = select(AuditEvent)
    if organization_id is not None:
        stmt = stmt.where(AuditEvent.organization_id == organization_id)
    if action:
        stmt = stmt.where(AuditEvent.action == action)
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if entity_type:
        stmt = stmt.where(AuditEvent.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditEvent.entity_id == entity_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_event_by_id(
    session: AsyncSession,
    *,
    event_id: int,
    organization_id: int | None = None,
) -> AuditEvent | None:
    stmt = select(AuditEvent).where(AuditEvent.id == event_id)
    if organization_id is not None:
        stmt = stmt.where(AuditEvent.organization_id == organization_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
