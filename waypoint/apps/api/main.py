from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from waypoint.apps.api.errors import (
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    waypoint_error_handler,
)
from waypoint.apps.api.response import API_VERSION
from waypoint.apps.api.routes.audit import router as audit_router
from waypoint.apps.api.routes.authz import router as authz_router
from waypoint.apps.api.routes.health import router as health_router
from waypoint.apps.api.routes.organizations import router as organizations_router
from waypoint.apps.api.routes.payloads import router as payloads_router
from waypoint.apps.api.routes.relationships import router as relationships_router
from waypoint.core.config import get_settings
from waypoint.core.errors import WaypointError
from waypoint.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title="Waypoint API",
        version=API_VERSION,
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(WaypointError, waypoint_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    prefix = f"/{API_VERSION}"
    app.include_router(health_router, prefix=prefix)
    app.include_router(authz_router, prefix=prefix)
    app.include_router(relationships_router, prefix=prefix)
    app.include_router(payloads_router, prefix=prefix)
    app.include_router(organizations_router, prefix=prefix)
    app.include_router(audit_router, prefix=prefix)

    logger.debug("app_created name=%s", settings.app_name)
    return app


app = create_app()
