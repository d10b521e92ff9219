from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    # Authenticated actor handed over by the upstream session layer; opaque to the core.
    user_id: str
    org_id: int
