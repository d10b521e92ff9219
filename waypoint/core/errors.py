from __future__ import annotations

from typing import Any


class WaypointError(Exception):
    """Base error for the Waypoint authorization core."""

    code = "WAYPOINT_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(WaypointError):
    """Referenced asset or relationship record does not exist."""

    code = "NOT_FOUND"


class AssetNotFoundError(NotFoundError):
    """Asset is missing or soft-deleted."""

    code = "ASSET_NOT_FOUND"

    def __init__(self, asset_id: int) -> None:
        super().__init__(f"Asset {asset_id} not found", details={"asset_id": asset_id})
        self.asset_id = asset_id


class InsufficientPermissionsError(WaypointError):
    """Actor lacks a capability required for the action or transition."""

    code = "INSUFFICIENT_PERMISSIONS"

    def __init__(
        self,
        message: str,
        *,
        per_asset: dict[int, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if per_asset:
            # Keys become strings once serialized; normalize here so callers see one shape.
            merged["per_asset"] = {str(asset_id): sorted(caps) for asset_id, caps in per_asset.items()}
        super().__init__(message, details=merged)
        self.per_asset = dict(per_asset or {})


class InvalidStateTransitionError(WaypointError):
    """Requested transition is not legal from the entity's current status."""

    code = "INVALID_STATE_TRANSITION"


class ConflictingRelationshipError(WaypointError):
    """A second open subscription or publishing right for the same pair."""

    code = "CONFLICTING_RELATIONSHIP"


class UnknownActionError(WaypointError):
    """Action string outside the fixed capability set."""

    code = "UNKNOWN_ACTION"

    def __init__(self, action: str) -> None:
        super().__init__(f"Unknown action: {action}", details={"action": action})
        self.action = action


class RelationshipValidationError(WaypointError):
    """Create request is malformed (scope, capabilities or parties)."""

    code = "RELATIONSHIP_INVALID"


class RedactionError(WaypointError):
    """Payload could not be redacted safely."""

    code = "REDACTION_FAILED"


class DatabaseError(WaypointError):
    """Database layer failure."""

    code = "DATABASE_ERROR"
