from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from waypoint.core.errors import RelationshipValidationError
from waypoint.domain.scope import Scope, scope_from_wire, type_scope_from_wire
from waypoint.services.authz.capabilities import (
    ACTION_MANAGE_SUBSCRIPTIONS,
    ACTION_PUBLISH,
    ACTION_VIEW,
    capabilities_from_flags,
)


ScopeWire = Literal["ALL"] | list[int]
TypeScopeWire = Literal["ALL"] | list[str]

RequestT = TypeVar("RequestT", bound=BaseModel)


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive timestamps from clients are read as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class _ScopedRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    asset_scope: ScopeWire

    @field_validator("asset_scope")
    @classmethod
    def _validate_asset_scope(cls, value: Any) -> Any:
        scope_from_wire(value)
        return value

    @property
    def scope(self) -> Scope:
        return scope_from_wire(self.asset_scope)


class AccessGrantRequest(_ScopedRequest):
    grantee_id: int
    data_type_scope: TypeScopeWire = "ALL"
    can_publish: bool = False
    can_view_data: bool = False
    can_manage_subscriptions: bool = False
    can_approve_delegations: bool = False
    can_approve_subscriptions: bool = False
    expires_at: datetime | None = None

    @field_validator("data_type_scope")
    @classmethod
    def _validate_types(cls, value: Any) -> Any:
        type_scope_from_wire(value)
        return value

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def _require_capability(self) -> "AccessGrantRequest":
        if not self.capabilities:
            raise ValueError("At least one capability flag must be set")
        return self

    @property
    def capabilities(self) -> frozenset[str]:
        return capabilities_from_flags(self)

    @property
    def data_types(self) -> frozenset[str] | None:
        return type_scope_from_wire(self.data_type_scope)


class DelegationRequest(_ScopedRequest):
    delegate_id: int
    type_scope: TypeScopeWire = "ALL"
    can_manage_subscriptions: bool = False
    # Ask the managers to approve even when no asset in scope is gated.
    gp_approval_required: bool = False
    expires_at: datetime | None = None

    @field_validator("type_scope")
    @classmethod
    def _validate_types(cls, value: Any) -> Any:
        type_scope_from_wire(value)
        return value

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def capabilities(self) -> frozenset[str]:
        # View always travels with a delegation.
        if self.can_manage_subscriptions:
            return frozenset({ACTION_VIEW, ACTION_MANAGE_SUBSCRIPTIONS})
        return frozenset({ACTION_VIEW})

    @property
    def data_types(self) -> frozenset[str] | None:
        return type_scope_from_wire(self.type_scope)


class PublishingRightRequest(_ScopedRequest):
    publisher_id: int
    can_manage_subscriptions: bool = False
    can_approve_subscriptions: bool = False
    can_approve_delegations: bool = False
    can_view_data: bool = True

    @property
    def capabilities(self) -> frozenset[str]:
        return capabilities_from_flags(self) | {ACTION_PUBLISH}


class SubscriptionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    asset_id: int
    message: str | None = Field(default=None, max_length=2000)
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


def coerce_request(model: type[RequestT], value: RequestT | dict[str, Any]) -> RequestT:
    # Accept a parsed model or raw mapping; pydantic failures surface as domain validation errors.
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as exc:
        errors = [
            {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
            for error in exc.errors()
        ]
        raise RelationshipValidationError(
            f"Invalid {model.__name__}", details={"errors": errors}
        ) from exc
