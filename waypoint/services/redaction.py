from __future__ import annotations

from typing import Any

from waypoint.core.config import get_settings
from waypoint.core.errors import RedactionError


# Both spellings appear in published payloads; snake_case wins when an entry carries both.
RECIPIENT_KEYS: tuple[str, ...] = ("lp_id", "lpId")


def _recipient_of(entry: dict[str, Any]) -> Any:
    for key in RECIPIENT_KEYS:
        value = entry.get(key)
        if value is not None:
            return value
    return None


def _id_key(value: Any) -> str:
    # JSON decoders may hand integral ids back as floats (402.0).
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_partitioned(items: list[Any]) -> bool:
    # One tagged entry is enough to treat the whole list as per-recipient.
    return any(isinstance(item, dict) and _recipient_of(item) is not None for item in items)


def redact_payload(payload: Any, org_id: int | str, *, max_depth: int | None = None) -> Any:
    """Return a copy of ``payload`` with other recipients' entries removed.

    Lists whose entries carry ``lp_id``/``lpId`` keep only entries addressed to
    ``org_id``; untagged lists and mappings are walked recursively. Ids are
    compared as strings so ``"401"``, ``401`` and ``401.0`` match. The input is never
    mutated and applying the function twice gives the same result.
    """
    limit = max_depth if max_depth is not None else get_settings().redaction_max_depth
    return _redact(payload, _id_key(org_id), 0, limit)


def _redact(value: Any, org_key: str, depth: int, limit: int) -> Any:
    if isinstance(value, (dict, list)) and depth > limit:
        raise RedactionError(
            "Payload nesting exceeds the redaction depth limit",
            details={"max_depth": limit},
        )
    if isinstance(value, dict):
        return {key: _redact(item, org_key, depth + 1, limit) for key, item in value.items()}
    if isinstance(value, list):
        if not _is_partitioned(value):
            return [_redact(item, org_key, depth + 1, limit) for item in value]
        kept = []
        for item in value:
            # Untagged or foreign entries in a per-recipient list are dropped.
            if isinstance(item, dict) and _id_key(_recipient_of(item)) == org_key:
                kept.append(_redact(item, org_key, depth + 1, limit))
        return kept
    return value
