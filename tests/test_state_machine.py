"""Unit tests for subscription activation state-machine guardrails."""

import pytest

from paygate.common.state_machine import ACTIVE, INACTIVE, is_noop, state_of, validate_transition


def test_valid_transition():
    """Both directions are legal; subscriptions may cycle forever."""

    validate_transition(INACTIVE, ACTIVE)
    validate_transition(ACTIVE, INACTIVE)


def test_invalid_transition():
    """Unknown states must raise to protect activation correctness."""

    with pytest.raises(ValueError):
        validate_transition("CANCELLED", ACTIVE)


def test_self_transition_is_noop():
    assert is_noop(state_of(True), ACTIVE)
    assert is_noop(INACTIVE, state_of(False))
    assert not is_noop(INACTIVE, ACTIVE)
