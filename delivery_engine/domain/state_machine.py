"""
Delivery state machine.

    pending -> queued -> processing -> {sent | failed}
    processing -> pending          (recoverable failure or deferral)
    queued -> pending              (claim released unprocessed)
    pending | queued -> cancelled  (campaign withdrawn)

Cancellation is never allowed from processing so an in-flight send is not
raced. Terminal states have no outgoing transitions.
"""

from delivery_engine.domain.models import DeliveryState

ALLOWED_TRANSITIONS: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.PENDING: frozenset({DeliveryState.QUEUED, DeliveryState.CANCELLED}),
    DeliveryState.QUEUED: frozenset(
        {DeliveryState.PROCESSING, DeliveryState.PENDING, DeliveryState.CANCELLED}
    ),
    DeliveryState.PROCESSING: frozenset(
        {DeliveryState.SENT, DeliveryState.FAILED, DeliveryState.PENDING}
    ),
    DeliveryState.SENT: frozenset(),
    DeliveryState.FAILED: frozenset(),
    DeliveryState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(
    state for state, targets in ALLOWED_TRANSITIONS.items() if not targets
)


class InvalidTransitionError(Exception):
    """Raised when a delivery cannot move to the requested state."""

    def __init__(self, delivery_id: str, current: DeliveryState | None, target: DeliveryState):
        current_label = current.value if current else "missing"
        super().__init__(
            f"Delivery {delivery_id} cannot move from {current_label} to {target.value}"
        )
        self.delivery_id = delivery_id
        self.current = current
        self.target = target


def can_transition(current: DeliveryState, target: DeliveryState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def sources_for(target: DeliveryState) -> frozenset[DeliveryState]:
    """All states from which `target` is reachable in one step."""
    return frozenset(
        state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )
