"""Wire models for Meta webhook payloads and relay pipeline records.

Messaging items carry at most one of ``message``, ``postback``, ``read`` or
``delivery``. ``MessagingItem.classify`` resolves that presence check once
into a ``ClassifiedMessaging`` with an explicit kind, so nothing downstream
repeats it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

from src.models import EventKind


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)


class ObjectRef(_WireModel):
    id: str = Field(min_length=1)


class Actor(_WireModel):
    id: str = Field(min_length=1)
    username: str | None = None
    name: str | None = None


# --- messaging[] variants ---


class MessagePayload(_WireModel):
    mid: str | None = None
    text: str | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    quick_reply: dict[str, Any] | None = None
    is_echo: bool = False


class PostbackPayload(_WireModel):
    mid: str | None = None
    title: str | None = None
    payload: str | None = None


class ReadReceipt(_WireModel):
    mid: str | None = None
    watermark: int | None = None


class DeliveryReceipt(_WireModel):
    mids: list[str] = Field(default_factory=list)
    watermark: int | None = None


MessagingBody = Union[MessagePayload, PostbackPayload, ReadReceipt, DeliveryReceipt]


@dataclass(frozen=True)
class ClassifiedMessaging:
    """A messaging item with its variant resolved."""

    kind: EventKind
    sender_id: str
    recipient_id: str | None
    timestamp: int | None
    body: MessagingBody


class MessagingItem(_WireModel):
    sender: ObjectRef
    recipient: ObjectRef | None = None
    timestamp: int | None = None
    message: MessagePayload | None = None
    postback: PostbackPayload | None = None
    read: ReadReceipt | None = None
    delivery: DeliveryReceipt | None = None

    def classify(self) -> ClassifiedMessaging | None:
        """Resolve the populated variant; None when no known tag is set."""
        variants: tuple[tuple[EventKind, MessagingBody | None], ...] = (
            (EventKind.MESSAGE, self.message),
            (EventKind.POSTBACK, self.postback),
            (EventKind.READ, self.read),
            (EventKind.DELIVERY, self.delivery),
        )
        for kind, body in variants:
            if body is not None:
                return ClassifiedMessaging(
                    kind=kind,
                    sender_id=self.sender.id,
                    recipient_id=self.recipient.id if self.recipient else None,
                    timestamp=self.timestamp,
                    body=body,
                )
        return None


# --- changes[] values ---


class InstagramComment(_WireModel):
    id: str | None = None
    text: str | None = None
    from_: Actor = Field(alias="from")
    media: ObjectRef | None = None
    parent_id: str | None = None


class FeedComment(_WireModel):
    """Messenger page ``feed`` change for a comment."""

    item: str
    verb: str | None = None
    comment_id: str | None = None
    post_id: str = Field(min_length=1)
    parent_id: str | None = None
    message: str | None = None
    from_: Actor = Field(alias="from")
    created_time: int | None = None


class ChangeItem(_WireModel):
    field: str
    value: dict[str, Any] = Field(default_factory=dict)


# --- relay pipeline records ---


@dataclass(frozen=True)
class HistoryTurn:
    """One exchange in a sender's conversation history."""

    user_text: str
    response_text: str
