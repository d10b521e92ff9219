from __future__ import annotations

import pytest

from waypoint.core.errors import RelationshipValidationError
from waypoint.domain.requests import AccessGrantRequest, DelegationRequest, PublishingRightRequest, coerce_request
from waypoint.domain.scope import (
    AllAssets,
    AssetSet,
    scope_from_storage,
    scope_from_wire,
    type_scope_from_wire,
    type_scope_to_wire,
)


def test_scope_wire_forms() -> None:
    assert scope_from_wire("ALL") == AllAssets()
    assert scope_from_wire([3, 1, 3]) == AssetSet(frozenset({1, 3}))
    assert scope_from_wire([3, 1]).to_wire() == [1, 3]
    for bad in ([], "all", "9001", None, 7):
        with pytest.raises(ValueError):
            scope_from_wire(bad)


def test_storage_scope_unions_legacy_column() -> None:
    assert scope_from_storage(scope_all=False, junction_ids=[5], legacy_asset_id=4) == AssetSet(frozenset({4, 5}))
    assert scope_from_storage(scope_all=True, junction_ids=[5], legacy_asset_id=None) == AllAssets()
    # A legacy row with no asset at all reads as global.
    assert scope_from_storage(scope_all=False, junction_ids=[], legacy_asset_id=None) == AllAssets()


def test_type_scope_validation() -> None:
    assert type_scope_from_wire("ALL") is None
    assert type_scope_from_wire(["NAV_UPDATE", "CAPITAL_CALL"]) == frozenset({"NAV_UPDATE", "CAPITAL_CALL"})
    assert type_scope_to_wire(frozenset({"NAV_UPDATE", "CAPITAL_CALL"})) == ["CAPITAL_CALL", "NAV_UPDATE"]
    with pytest.raises(ValueError):
        type_scope_from_wire(["PODCAST"])
    with pytest.raises(ValueError):
        type_scope_from_wire([])


def test_request_capabilities() -> None:
    grant = coerce_request(
        AccessGrantRequest,
        {"grantee_id": 2, "asset_scope": "ALL", "can_view_data": True, "can_publish": True},
    )
    assert grant.capabilities == frozenset({"view", "publish"})
    assert grant.data_types is None

    delegation = coerce_request(DelegationRequest, {"delegate_id": 2, "asset_scope": [1]})
    assert delegation.capabilities == frozenset({"view"})

    right = coerce_request(PublishingRightRequest, {"publisher_id": 2, "asset_scope": [1]})
    assert right.capabilities == frozenset({"publish", "view"})


def test_request_errors_become_validation_errors() -> None:
    with pytest.raises(RelationshipValidationError) as exc_info:
        coerce_request(AccessGrantRequest, {"grantee_id": 2, "asset_scope": "ALL", "surprise": 1})
    assert exc_info.value.details["errors"]
