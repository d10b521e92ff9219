from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Union


ALL_SENTINEL = "ALL"

DATA_TYPES: tuple[str, ...] = (
    "CAPITAL_CALL",
    "DISTRIBUTION",
    "NAV_UPDATE",
    "QUARTERLY_REPORT",
    "K-1_TAX_FORM",
    "SOI_UPDATE",
    "LEGAL_NOTICE",
)


@dataclass(frozen=True)
class AllAssets:
    """Scope covering every asset within the grantor's authority."""

    def includes(self, asset_id: int) -> bool:
        return True

    def to_wire(self) -> str:
        return ALL_SENTINEL


@dataclass(frozen=True)
class AssetSet:
    """Scope covering an explicit, non-empty set of asset ids."""

    asset_ids: frozenset[int]

    def includes(self, asset_id: int) -> bool:
        return asset_id in self.asset_ids

    def to_wire(self) -> list[int]:
        return sorted(self.asset_ids)


Scope = Union[AllAssets, AssetSet]


def scope_from_wire(value: Any) -> Scope:
    # Accept the literal ALL sentinel or an iterable of asset ids; never a mix.
    if value == ALL_SENTINEL:
        return AllAssets()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ValueError("Scope must be 'ALL' or a list of asset ids")
    ids = frozenset(int(item) for item in value)
    if not ids:
        raise ValueError("Explicit scope must name at least one asset")
    return AssetSet(ids)


def scope_from_storage(*, scope_all: bool, junction_ids: Iterable[int], legacy_asset_id: int | None) -> Scope:
    # Legacy rows carry a single asset_id and no junction rows; a row with neither is global.
    ids = set(junction_ids)
    if legacy_asset_id is not None:
        ids.add(legacy_asset_id)
    if scope_all or not ids:
        return AllAssets()
    return AssetSet(frozenset(ids))


def type_scope_from_wire(value: Any) -> frozenset[str] | None:
    # None stands for ALL data types.
    if value is None or value == ALL_SENTINEL:
        return None
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ValueError("Type scope must be 'ALL' or a list of data types")
    types = frozenset(str(item) for item in value)
    if not types:
        raise ValueError("Explicit type scope must name at least one data type")
    unknown = types.difference(DATA_TYPES)
    if unknown:
        raise ValueError(f"Unknown data types: {', '.join(sorted(unknown))}")
    return types


def type_scope_to_wire(types: frozenset[str] | None) -> str | list[str]:
    if types is None:
        return ALL_SENTINEL
    return sorted(types)
