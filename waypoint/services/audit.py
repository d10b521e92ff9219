from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from waypoint.core.config import get_settings
from waypoint.domain.models import AuditEvent


logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "payload"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively; payload bodies never enter the trail.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value) if isinstance(value, (set, frozenset)) else value
        return [sanitize_metadata(item) for item in items]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def bounded_details(details: dict[str, Any] | None, *, max_bytes: int | None = None) -> dict[str, Any]:
    # Sanitize, then replace oversized detail blobs with a size marker.
    limit = max_bytes if max_bytes is not None else get_settings().audit_details_max_bytes
    sanitized = sanitize_metadata(details or {})
    encoded = json.dumps(sanitized, default=str, sort_keys=True)
    size = len(encoded.encode("utf-8"))
    if limit > 0 and size > limit:
        return {"truncated": True, "size_bytes": size}
    return sanitized


@dataclass
class AuditRecord:
    """One audit trail entry as emitted by the lifecycle manager."""

    action: str
    entity_type: str
    entity_id: str | None
    organization_id: int | None
    actor_id: str | None
    outcome: str = OUTCOME_SUCCESS
    error_code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime | None = None


class AuditSink(Protocol):
    async def emit(self, record: AuditRecord) -> None: ...


class SqlAuditSink:
    """Stage audit rows on the caller's session so they commit with the state change."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def emit(self, record: AuditRecord) -> None:
        event = AuditEvent(
            occurred_at=record.occurred_at or datetime.now(timezone.utc),
            organization_id=record.organization_id,
            actor_id=record.actor_id,
            action=record.action,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            outcome=record.outcome,
            error_code=record.error_code,
            details_json=bounded_details(record.details),
        )
        self.session.add(event)
        logger.info(
            "audit_event_staged action=%s entity_type=%s entity_id=%s outcome=%s",
            record.action,
            record.entity_type,
            record.entity_id,
            record.outcome,
        )
