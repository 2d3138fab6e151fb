"""Shared Pydantic data models for the Meta webhook relay."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class Platform(str, Enum):
    INSTAGRAM = "instagram"
    MESSENGER = "messenger"


class EventKind(str, Enum):
    MESSAGE = "message"
    POSTBACK = "postback"
    COMMENT = "comment"
    READ = "read"
    DELIVERY = "delivery"
    UNSUPPORTED = "unsupported"


class AuditEventType(str, Enum):
    HANDSHAKE_SUCCESS = "handshake_success"
    HANDSHAKE_FAILURE = "handshake_failure"
    SIGNATURE_INVALID = "signature_invalid"
    WEBHOOK_RELAY = "webhook_relay"
    PRODUCER_FAILURE = "producer_failure"
    DELIVERY_FAILURE = "delivery_failure"
    DUPLICATE_EVENT = "duplicate_event"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Webhook Models ---


class NormalizedEvent(BaseModel):
    """Platform-agnostic record for one classified inbound item.

    ``raw_source`` keeps the originating messaging/change item for
    diagnostics only; nothing downstream parses it again.
    """

    model_config = ConfigDict(frozen=True)

    platform: Platform
    kind: EventKind
    sender_id: str = Field(min_length=1)
    recipient_id: str | None = None
    conversation_id: str
    text: str = ""
    timestamp: int | None = None
    message_id: str | None = None
    postback_payload: str | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    is_echo: bool = False
    raw_source: dict[str, Any] = Field(default_factory=dict, repr=False)


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    platform: Platform | None = None
    sender_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "skipped"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
