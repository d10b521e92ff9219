from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from waypoint.apps.api.response import error_response
from waypoint.core.errors import (
    ConflictingRelationshipError,
    DatabaseError,
    InsufficientPermissionsError,
    InvalidStateTransitionError,
    NotFoundError,
    RedactionError,
    RelationshipValidationError,
    UnknownActionError,
    WaypointError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}

# Checked in order, so subclasses must precede their bases.
_STATUS_BY_ERROR: tuple[tuple[type[WaypointError], int], ...] = (
    (NotFoundError, 404),
    (InsufficientPermissionsError, 403),
    (ConflictingRelationshipError, 409),
    (InvalidStateTransitionError, 409),
    (UnknownActionError, 422),
    (RelationshipValidationError, 422),
    (RedactionError, 422),
    (DatabaseError, 500),
)


def status_for_error(exc: WaypointError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    default_code = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or default_code)
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return default_code, detail, None
    return default_code, "Request failed", None


async def waypoint_error_handler(request: Request, exc: WaypointError) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s", request.url.path, exc.code, exc_info=exc)
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        details=exc.details or None,
    )
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Validator ValueErrors land in ctx; encode them so the body stays JSON.
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(errors)},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; log them instead.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
