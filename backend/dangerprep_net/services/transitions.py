from __future__ import annotations

from ..errors import InvalidTransitionError, UsageError
from ..models.network import NetworkState


# Operations that bring up or select an internet uplink
WAN_ACTIONS = frozenset({"set-wan", "wifi-connect", "wifi-repeater-start", "routing-start"})

ALWAYS_ALLOWED = frozenset({
    "clear-wan",
    "wifi-disconnect",
    "wifi-repeater-stop",
    "wifi-ap",
    "local-only",
    "normal",
    "reset",
    "auto",
    "manual",
    "evaluate",
    "enumerate",
    "routing-stop",
    "firewall",
})


def check_transition(state: NetworkState, action: str) -> None:
    """Reject ``action`` when the current state does not allow it."""
    if action in WAN_ACTIONS:
        if state.local_only_forced:
            raise InvalidTransitionError(
                f"'{action}' is not allowed while local-only mode is forced. "
                "Run 'network-manager normal' first."
            )
        return
    if action in ALWAYS_ALLOWED:
        return
    raise UsageError(f"Unknown action: {action}")
