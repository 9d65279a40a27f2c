"""
Domain subpackage for the delivery engine.
"""

from .models import (
    AccessGrant,
    AuditEvent,
    Creative,
    DeleteOutcome,
    DeliveredMessageRef,
    Delivery,
    DeliveryMetrics,
    DeliveryRecord,
    DeliveryState,
    DestinationConstraint,
    EngineSettings,
    GrantStatus,
    MediaType,
    OutboundMessage,
    ScheduleMode,
    SlotReservation,
)
from .state_machine import InvalidTransitionError, can_transition

__all__ = [
    "AccessGrant",
    "AuditEvent",
    "Creative",
    "DeleteOutcome",
    "DeliveredMessageRef",
    "Delivery",
    "DeliveryMetrics",
    "DeliveryRecord",
    "DeliveryState",
    "DestinationConstraint",
    "EngineSettings",
    "GrantStatus",
    "InvalidTransitionError",
    "MediaType",
    "OutboundMessage",
    "ScheduleMode",
    "SlotReservation",
    "can_transition",
]
