"""Subscription activation state machine.

Subscriptions start INACTIVE and may cycle between the two states forever.
Self-transitions are allowed so that replayed activations/deactivations are
safe no-ops rather than errors.
"""

INACTIVE = "INACTIVE"
ACTIVE = "ACTIVE"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    INACTIVE: {INACTIVE, ACTIVE},
    ACTIVE: {ACTIVE, INACTIVE},
}


def state_of(active: bool) -> str:
    return ACTIVE if active else INACTIVE


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def is_noop(current: str, new: str) -> bool:
    """True when applying `new` would not change anything."""

    validate_transition(current, new)
    return current == new
