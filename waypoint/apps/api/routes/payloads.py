from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict

from waypoint.apps.api.deps import get_audit_sink, get_identity, get_resolver
from waypoint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from waypoint.apps.api.response import SuccessEnvelope, success_response
from waypoint.domain.identity import Identity
from waypoint.services.audit import SqlAuditSink
from waypoint.services.authz.resolver import CapabilityResolver
from waypoint.services.payloads import read_payload
from waypoint.services.redaction import redact_payload


router = APIRouter(tags=["payloads"], responses=DEFAULT_ERROR_RESPONSES)


class RedactRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payload: Any = None


class ReadPayloadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payload: Any = None
    data_type: str | None = None


class PayloadResponse(BaseModel):
    payload: Any = None
    redacted_for: int | None = None
    via: str | None = None


@router.post("/payloads/redact", response_model=SuccessEnvelope[PayloadResponse])
async def redact(
    request: Request,
    body: RedactRequest,
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    # Pure transformation for the caller's own view; no authorization lookup.
    redacted = redact_payload(body.payload, identity.org_id)
    return success_response(
        request=request,
        data=PayloadResponse(payload=redacted, redacted_for=identity.org_id),
    )


@router.post("/assets/{asset_id}/payloads/read", response_model=SuccessEnvelope[PayloadResponse])
async def read_asset_payload(
    asset_id: int,
    request: Request,
    body: ReadPayloadRequest,
    identity: Identity = Depends(get_identity),
    resolver: CapabilityResolver = Depends(get_resolver),
    audit_sink: SqlAuditSink = Depends(get_audit_sink),
) -> dict[str, Any]:
    view = await read_payload(
        resolver,
        identity.org_id,
        asset_id,
        body.payload,
        data_type=body.data_type,
        audit_sink=audit_sink,
        actor_id=identity.user_id,
    )
    return success_response(
        request=request,
        data=PayloadResponse(payload=view.payload, redacted_for=view.redacted_for, via=view.decision.via),
    )
