from __future__ import annotations

from typing import Any, Iterable

from waypoint.core.errors import UnknownActionError


ACTION_PUBLISH = "publish"
ACTION_VIEW = "view"
ACTION_MANAGE_SUBSCRIPTIONS = "manage_subscriptions"
ACTION_APPROVE_DELEGATIONS = "approve_delegations"
ACTION_APPROVE_SUBSCRIPTIONS = "approve_subscriptions"

# Fixed capability set; each action maps 1:1 to a boolean flag on grants and publishing rights.
ACTION_FLAGS: dict[str, str] = {
    ACTION_PUBLISH: "can_publish",
    ACTION_VIEW: "can_view_data",
    ACTION_MANAGE_SUBSCRIPTIONS: "can_manage_subscriptions",
    ACTION_APPROVE_DELEGATIONS: "can_approve_delegations",
    ACTION_APPROVE_SUBSCRIPTIONS: "can_approve_subscriptions",
}
ACTIONS: tuple[str, ...] = tuple(ACTION_FLAGS)


def parse_action(action: str) -> str:
    # Reject anything outside the enum instead of silently denying.
    if action not in ACTION_FLAGS:
        raise UnknownActionError(str(action))
    return action


def capabilities_from_flags(source: Any) -> frozenset[str]:
    # Read can_* flags off a row or request object; missing flags count as unset.
    return frozenset(
        action for action, flag in ACTION_FLAGS.items() if bool(getattr(source, flag, False))
    )


def flags_from_capabilities(capabilities: Iterable[str]) -> dict[str, bool]:
    granted = set(capabilities)
    return {flag: action in granted for action, flag in ACTION_FLAGS.items()}
