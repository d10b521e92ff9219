from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.core.config import get_settings
from waypoint.domain.identity import Identity
from waypoint.domain.models import ORG_KIND_PLATFORM_ADMIN
from waypoint.persistence.db import get_session
from waypoint.persistence.store import SqlRelationshipStore
from waypoint.services.audit import SqlAuditSink
from waypoint.services.authz.resolver import CapabilityResolver
from waypoint.services.lifecycle import RelationshipLifecycleManager


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def get_store(db: AsyncSession = Depends(get_db)) -> SqlRelationshipStore:
    return SqlRelationshipStore(db)


def get_resolver(store: SqlRelationshipStore = Depends(get_store)) -> CapabilityResolver:
    return CapabilityResolver(store)


def get_audit_sink(db: AsyncSession = Depends(get_db)) -> SqlAuditSink:
    return SqlAuditSink(db)


def get_lifecycle_manager(
    db: AsyncSession = Depends(get_db),
    store: SqlRelationshipStore = Depends(get_store),
    resolver: CapabilityResolver = Depends(get_resolver),
) -> RelationshipLifecycleManager:
    # Audit rows share the store's session so they commit with the state change.
    return RelationshipLifecycleManager(store, SqlAuditSink(db), resolver=resolver)


async def get_identity(
    request: Request,
    store: SqlRelationshipStore = Depends(get_store),
) -> Identity:
    """Read the identity forwarded by the upstream authenticator.

    Session issuance happens elsewhere; this layer only checks that the
    forwarded organization exists.
    """
    settings = get_settings()
    user_id = request.headers.get(settings.api_identity_header_user)
    raw_org_id = request.headers.get(settings.api_identity_header_org)
    if not user_id or not raw_org_id:
        raise _auth_error("Missing identity headers")
    try:
        org_id = int(raw_org_id)
    except ValueError as exc:
        raise _auth_error("Organization header must be an integer id") from exc
    if await store.get_organization(org_id) is None:
        raise _auth_error("Unknown organization")
    return Identity(user_id=user_id, org_id=org_id)


async def is_platform_admin(store: SqlRelationshipStore, org_id: int) -> bool:
    organization = await store.get_organization(org_id)
    return organization is not None and organization.kind == ORG_KIND_PLATFORM_ADMIN


async def require_self_or_admin(store: SqlRelationshipStore, identity: Identity, org_id: int) -> None:
    # Organizations see their own records; platform admins see everyone's.
    if org_id != identity.org_id and not await is_platform_admin(store, identity.org_id):
        raise _forbidden_error("Organization scope does not match caller")
