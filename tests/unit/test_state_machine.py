import pytest

from delivery_engine.domain.models import DeliveryState
from delivery_engine.domain.state_machine import (
    TERMINAL_STATES,
    InvalidTransitionError,
    can_transition,
    sources_for,
)


def test_happy_path_transitions_allowed():
    assert can_transition(DeliveryState.PENDING, DeliveryState.QUEUED)
    assert can_transition(DeliveryState.QUEUED, DeliveryState.PROCESSING)
    assert can_transition(DeliveryState.PROCESSING, DeliveryState.SENT)
    assert can_transition(DeliveryState.PROCESSING, DeliveryState.FAILED)
    assert can_transition(DeliveryState.PROCESSING, DeliveryState.PENDING)


def test_cancel_never_from_processing():
    assert sources_for(DeliveryState.CANCELLED) == {DeliveryState.PENDING, DeliveryState.QUEUED}
    assert not can_transition(DeliveryState.PROCESSING, DeliveryState.CANCELLED)


@pytest.mark.parametrize(
    "terminal", [DeliveryState.SENT, DeliveryState.FAILED, DeliveryState.CANCELLED]
)
def test_terminal_states_have_no_exits(terminal):
    assert terminal in TERMINAL_STATES
    assert not any(can_transition(terminal, target) for target in DeliveryState)


def test_invalid_transition_error_message():
    error = InvalidTransitionError("d-1", DeliveryState.SENT, DeliveryState.PENDING)
    assert "d-1" in str(error)
    assert "sent" in str(error)

    missing = InvalidTransitionError("d-2", None, DeliveryState.PROCESSING)
    assert "missing" in str(missing)


def test_claim_release_returns_queued_to_pending():
    assert can_transition(DeliveryState.QUEUED, DeliveryState.PENDING)
    assert sources_for(DeliveryState.PENDING) == {DeliveryState.QUEUED, DeliveryState.PROCESSING}
