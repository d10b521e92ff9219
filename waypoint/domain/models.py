from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")

ORG_KIND_ASSET_MANAGER = "asset_manager"
ORG_KIND_LIMITED_PARTNER = "limited_partner"
ORG_KIND_DELEGATE = "delegate"
ORG_KIND_PLATFORM_ADMIN = "platform_admin"

SUBSCRIPTION_PENDING = "pending_owner_approval"
SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_DECLINED = "declined"
SUBSCRIPTION_CLOSED = "closed"

GRANT_PENDING = "pending_approval"
GRANT_ACTIVE = "active"
GRANT_REJECTED = "rejected"
GRANT_REVOKED = "revoked"

DELEGATION_PENDING = "pending_gp_approval"
DELEGATION_ACTIVE = "active"
DELEGATION_REJECTED = "rejected"
DELEGATION_REVOKED = "revoked"

PUBLISHING_RIGHT_ACTIVE = "active"
PUBLISHING_RIGHT_REVOKED = "revoked"

_OPEN_SUBSCRIPTION_WHERE = "status IN ('pending_owner_approval', 'active')"
_ACTIVE_RIGHT_WHERE = "status = 'active'"


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String)
    # Informational only; capabilities come from relationships (platform_admin excepted).
    kind: Mapped[str] = mapped_column(String, default=ORG_KIND_LIMITED_PARTNER)
    status: Mapped[str] = mapped_column(String, default="verified")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String)
    asset_type: Mapped[str | None] = mapped_column(String, nullable=True)
    # Exactly one manager per asset; the manager is root authority for it.
    manager_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), index=True)
    # Gate subscriber delegations touching this asset behind manager approval.
    require_gp_approval_for_delegations: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_open_pair",
            "asset_id",
            "subscriber_id",
            unique=True,
            postgresql_where=text(_OPEN_SUBSCRIPTION_WHERE),
            sqlite_where=text(_OPEN_SUBSCRIPTION_WHERE),
        ),
        Index("ix_subscriptions_subscriber_status", "subscriber_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    asset_id: Mapped[int] = mapped_column(Integer, ForeignKey("assets.id"), index=True)
    subscriber_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"))
    status: Mapped[str] = mapped_column(String)
    request_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    decided_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Evaluated at check time; an expired active subscription confers nothing.
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class AccessGrant(Base):
    __tablename__ = "access_grants"
    __table_args__ = (
        Index("ix_access_grants_grantee_status", "grantee_id", "status"),
        Index("ix_access_grants_grantor_status", "grantor_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    grantor_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"))
    grantee_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"))
    # Legacy single-asset column; new rows use access_grant_assets instead.
    asset_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("assets.id"), nullable=True)
    scope_all: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Null means every data type.
    data_type_scope: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    can_publish: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_view_data: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_manage_subscriptions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_approve_delegations: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_approve_subscriptions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Gated assets snapshotted at creation; approvers must cover all of them.
    approval_asset_ids: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    granted_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class AccessGrantAsset(Base):
    __tablename__ = "access_grant_assets"
    __table_args__ = (
        UniqueConstraint("grant_id", "asset_id", name="uq_access_grant_assets_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    grant_id: Mapped[str] = mapped_column(String, ForeignKey("access_grants.id"), index=True)
    asset_id: Mapped[int] = mapped_column(Integer, ForeignKey("assets.id"), index=True)


class Delegation(Base):
    __tablename__ = "delegations"
    __table_args__ = (
        Index("ix_delegations_delegate_status", "delegate_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # The subscriber handing part of its own access to a third party.
    delegator_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"))
    delegate_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"))
    scope_all: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    type_scope: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    can_manage_subscriptions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_gp_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    approval_asset_ids: Mapped[list[int] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    decided_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class DelegationAsset(Base):
    __tablename__ = "delegation_assets"
    __table_args__ = (
        UniqueConstraint("delegation_id", "asset_id", name="uq_delegation_assets_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    delegation_id: Mapped[str] = mapped_column(String, ForeignKey("delegations.id"), index=True)
    asset_id: Mapped[int] = mapped_column(Integer, ForeignKey("assets.id"), index=True)


class PublishingRight(Base):
    __tablename__ = "publishing_rights"
    __table_args__ = (
        Index(
            "uq_publishing_rights_active_pair",
            "asset_owner_id",
            "publisher_id",
            unique=True,
            postgresql_where=text(_ACTIVE_RIGHT_WHERE),
            sqlite_where=text(_ACTIVE_RIGHT_WHERE),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    asset_owner_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"))
    publisher_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), index=True)
    scope_all: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_manage_subscriptions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_approve_subscriptions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_approve_delegations: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_view_data: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[str] = mapped_column(String)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    granted_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by_org_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class PublishingRightAsset(Base):
    __tablename__ = "publishing_right_assets"
    __table_args__ = (
        UniqueConstraint("publishing_right_id", "asset_id", name="uq_publishing_right_assets_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    publishing_right_id: Mapped[str] = mapped_column(String, ForeignKey("publishing_rights.id"), index=True)
    asset_id: Mapped[int] = mapped_column(Integer, ForeignKey("assets.id"), index=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_entity", "entity_type", "entity_id"),
    )

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    organization_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
