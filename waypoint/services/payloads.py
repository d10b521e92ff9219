from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from waypoint.core.errors import AssetNotFoundError, DatabaseError, InsufficientPermissionsError
from waypoint.services.audit import OUTCOME_FAILURE, AuditRecord, AuditSink
from waypoint.services.authz.capabilities import ACTION_VIEW
from waypoint.services.authz.resolver import (
    VIA_GRANT,
    VIA_SUBSCRIPTION,
    CapabilityResolver,
    Decision,
)
from waypoint.services.redaction import redact_payload


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayloadView:
    payload: Any
    decision: Decision
    # Organization whose entries were kept; None when the payload is returned whole.
    redacted_for: int | None = None


async def read_payload(
    resolver: CapabilityResolver,
    org_id: int,
    asset_id: int,
    payload: Any,
    *,
    data_type: str | None = None,
    audit_sink: AuditSink | None = None,
    actor_id: str | None = None,
) -> PayloadView:
    """Authorize a view of ``payload`` and shape it for the reader.

    Managers, platform admins and anyone granted access by the manager read the
    full payload. Subscribers read their own entries, and a subscriber's
    delegate reads exactly what the delegating subscriber would. A refused read
    is recorded through ``audit_sink`` when one is given.
    """
    try:
        decision = await resolver.require(org_id, ACTION_VIEW, asset_id, data_type=data_type)
    except InsufficientPermissionsError as exc:
        if audit_sink is not None:
            await _record_denied_read(resolver, audit_sink, exc, org_id, asset_id, data_type, actor_id)
        raise
    recipient: int | None = None
    if decision.via == VIA_SUBSCRIPTION:
        recipient = org_id
    elif decision.via == VIA_GRANT and decision.grantor_id is not None:
        asset = await resolver.store.get_asset(asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)
        if asset.manager_id != decision.grantor_id:
            recipient = decision.grantor_id
    shaped = payload if recipient is None else redact_payload(payload, recipient)
    logger.info(
        "payload_read org_id=%s asset_id=%s via=%s redacted_for=%s",
        org_id,
        asset_id,
        decision.via,
        recipient,
    )
    return PayloadView(payload=shaped, decision=decision, redacted_for=recipient)


async def _record_denied_read(
    resolver: CapabilityResolver,
    audit_sink: AuditSink,
    exc: InsufficientPermissionsError,
    org_id: int,
    asset_id: int,
    data_type: str | None,
    actor_id: str | None,
) -> None:
    await audit_sink.emit(
        AuditRecord(
            action="payload.read",
            entity_type="asset",
            entity_id=str(asset_id),
            organization_id=org_id,
            actor_id=actor_id,
            outcome=OUTCOME_FAILURE,
            error_code=exc.code,
            details={"asset_id": asset_id, "data_type": data_type, "message": exc.message},
            occurred_at=resolver.clock(),
        )
    )
    try:
        await resolver.store.commit()
    except DatabaseError as audit_exc:
        logger.error("failure_audit_write_failed action=payload.read asset_id=%s", asset_id, exc_info=audit_exc)
    logger.warning("payload_read_denied org_id=%s asset_id=%s code=%s", org_id, asset_id, exc.code)
