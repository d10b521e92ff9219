from __future__ import annotations

from typing import Any

from waypoint.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response(
        "Missing or unknown identity",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing identity headers"),
    ),
    403: _error_response(
        "Capability check failed",
        _error_example(
            code="INSUFFICIENT_PERMISSIONS",
            message="Grantor does not hold every capability being granted",
            details={"per_asset": {"2": ["view"]}},
        ),
    ),
    404: _error_response(
        "Asset or relationship not found",
        _error_example(code="ASSET_NOT_FOUND", message="Asset 99 not found", details={"asset_id": 99}),
    ),
    409: _error_response(
        "Conflicting relationship or illegal transition",
        _error_example(
            code="INVALID_STATE_TRANSITION",
            message="Cannot move delegation from active to active",
            details={"from": "active", "to": "active"},
        ),
    ),
    422: _error_response(
        "Validation error",
        _error_example(code="UNKNOWN_ACTION", message="Unknown action: delete", details={"action": "delete"}),
    ),
}
