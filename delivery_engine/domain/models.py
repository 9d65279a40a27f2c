"""
Domain models for the delivery engine.

Lightweight dataclasses describing the entities the engine consumes and
produces. They carry no persistence logic so repositories, services and
jobs can share them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4


def new_id() -> str:
    return uuid4().hex


class DeliveryState(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScheduleMode(StrEnum):
    FIXED = "fixed"
    SMART = "smart"
    RANDOMIZED = "randomized"


class GrantStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class MediaType(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


class DeleteOutcome(StrEnum):
    OK = "ok"
    NOT_FOUND = "not_found"


@dataclass(slots=True)
class Delivery:
    """One scheduled instance of a creative being sent to one destination."""

    campaign_ref: str
    creative_ref: str
    destination_ref: str
    scheduled_for: datetime
    schedule_mode: ScheduleMode = ScheduleMode.FIXED
    priority: int = 0
    id: str = field(default_factory=new_id)
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    last_error: str | None = None
    sent_at: datetime | None = None
    external_message_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class DestinationConstraint:
    """Posting rules for one destination (a chat group or channel)."""

    destination_ref: str
    chat_id: str
    max_per_day: int = 10
    cooldown_minutes: int = 60
    allowed_categories: frozenset[str] = frozenset()
    is_active: bool = True
    posts_today: int = 0
    last_sent_at: datetime | None = None
    total_posts: int = 0


@dataclass(slots=True, frozen=True)
class SlotReservation:
    """Result of an atomic cap/cooldown check that claimed one posting slot."""

    destination_ref: str
    reserved_at: datetime
    previous_last_sent_at: datetime | None
    posts_today: int


@dataclass(slots=True)
class Creative:
    """Ad content authored in the dashboard."""

    id: str
    category: str
    caption: str
    media_type: MediaType = MediaType.TEXT
    media_url: str | None = None
    cta_text: str | None = None
    cta_url: str | None = None
    times_used: int = 0


@dataclass(slots=True, frozen=True)
class OutboundMessage:
    """Rendered content handed to the channel gateway."""

    text: str
    media_type: MediaType = MediaType.TEXT
    media_url: str | None = None
    parse_mode: str = "HTML"

    @classmethod
    def from_creative(cls, creative: Creative) -> "OutboundMessage":
        text = creative.caption
        if creative.cta_text and creative.cta_url:
            text += f'\n\n<a href="{creative.cta_url}">{creative.cta_text}</a>'
        elif creative.cta_url:
            text += f"\n\n{creative.cta_url}"
        return cls(text=text, media_type=creative.media_type, media_url=creative.media_url)


@dataclass(slots=True)
class DeliveryMetrics:
    views: int = 0
    clicks: int = 0
    reactions: int = 0
    replies: int = 0
    shares: int = 0


@dataclass(slots=True)
class DeliveryRecord:
    """Immutable history entry for a completed send."""

    delivery_id: str
    campaign_ref: str
    creative_ref: str
    destination_ref: str
    external_message_id: str
    sent_at: datetime
    processing_duration_ms: int
    metrics: DeliveryMetrics = field(default_factory=DeliveryMetrics)


@dataclass(slots=True)
class DeliveredMessageRef:
    channel_id: str
    message_ids: list[str]


@dataclass(slots=True)
class AccessGrant:
    """A buyer's time-bounded right to content (paid subscription)."""

    holder_ref: str
    granted_product_ref: str
    status: GrantStatus = GrantStatus.PENDING
    access_expires_at: datetime | None = None
    delivered_message_refs: list[DeliveredMessageRef] = field(default_factory=list)
    notified_7d: bool = False
    notified_1d: bool = False
    product_name: str | None = None
    id: str = field(default_factory=new_id)

    def message_count(self) -> int:
        return sum(len(ref.message_ids) for ref in self.delivered_message_refs)


@dataclass(slots=True)
class AuditEvent:
    """One mutating action, recorded for compliance review."""

    action: str
    entity_type: str
    entity_id: str | None = None
    actor_ref: str = "system"
    severity: str = "info"
    changes: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    occurred_at: datetime | None = None


@dataclass(slots=True)
class EngineSettings:
    """Versioned global settings record, read fresh by every worker iteration."""

    version: int = 0
    emergency_stop_active: bool = False
    updated_at: datetime | None = None
    updated_by: str | None = None
