from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from waypoint.domain.scope import AllAssets, Scope


EDGE_ACCESS_GRANT = "access_grant"
EDGE_DELEGATION = "delegation"
EDGE_PUBLISHING_RIGHT = "publishing_right"


@dataclass(frozen=True)
class GrantEdge:
    """Storage-neutral view of one capability-bearing relationship.

    Access grants, delegations and publishing rights are all read into this
    shape so the resolver never branches on how a relationship is persisted.
    """

    kind: str
    id: str
    grantor_id: int
    grantee_id: int
    scope: Scope
    capabilities: frozenset[str]
    data_types: frozenset[str] | None = None
    expires_at: datetime | None = None

    @property
    def is_global(self) -> bool:
        return isinstance(self.scope, AllAssets)

    def covers_data_type(self, data_type: str | None) -> bool:
        if data_type is None or self.data_types is None:
            return True
        return data_type in self.data_types

    def permits(self, action: str) -> bool:
        return action in self.capabilities
