"""Converts Meta webhook entries into NormalizedEvent records.

Pure functions: no I/O, no clock. A malformed item is logged and skipped
without affecting its siblings; output order follows input order.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from src.models import EventKind, NormalizedEvent, Platform
from src.webhook.models import (
    ChangeItem,
    ClassifiedMessaging,
    FeedComment,
    InstagramComment,
    MessagePayload,
    MessagingItem,
    PostbackPayload,
)

logger = logging.getLogger(__name__)

ChangeHandler = Callable[
    [Platform, dict[str, Any], int | None, str | None], list[NormalizedEvent],
]


def normalize_payload(platform: Platform, payload: dict[str, Any]) -> list[NormalizedEvent]:
    """Normalize every entry of a webhook payload, preserving order."""
    entries = payload.get("entry")
    if not isinstance(entries, list):
        logger.warning("Payload for %s has no entry list", platform.value)
        return []
    events: list[NormalizedEvent] = []
    for entry in entries:
        events.extend(normalize_entry(platform, entry))
    return events


def normalize_entry(platform: Platform, entry: Any) -> list[NormalizedEvent]:
    """Normalize the ``messaging`` and ``changes`` items of one entry."""
    if not isinstance(entry, dict):
        logger.warning("Skipping non-object entry for %s", platform.value)
        return []

    entry_time = entry.get("time") if isinstance(entry.get("time"), int) else None
    entry_id = entry.get("id") if isinstance(entry.get("id"), str) else None
    events: list[NormalizedEvent] = []

    for raw in _as_list(entry.get("messaging")):
        event = _normalize_messaging(platform, raw, entry_time)
        if event is not None:
            events.append(event)

    for raw in _as_list(entry.get("changes")):
        events.extend(_normalize_change(platform, raw, entry_time, entry_id))

    return events


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _normalize_messaging(
    platform: Platform, raw: Any, entry_time: int | None,
) -> NormalizedEvent | None:
    try:
        item = MessagingItem.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "Skipping malformed %s messaging item: %s",
            platform.value, exc.errors(include_url=False),
        )
        return None

    classified = item.classify()
    if classified is None:
        logger.debug("Dropping unclassified %s messaging item", platform.value)
        return None
    return _from_classified(platform, classified, raw, entry_time)


def _from_classified(
    platform: Platform,
    classified: ClassifiedMessaging,
    raw: dict[str, Any],
    entry_time: int | None,
) -> NormalizedEvent:
    body = classified.body
    text = ""
    message_id = getattr(body, "mid", None)
    postback_payload = None
    attachments: list[dict[str, Any]] = []
    is_echo = False

    if isinstance(body, MessagePayload):
        text = body.text or ""
        attachments = list(body.attachments)
        is_echo = body.is_echo
    elif isinstance(body, PostbackPayload):
        text = body.title or body.payload or ""
        postback_payload = body.payload

    return NormalizedEvent(
        platform=platform,
        kind=classified.kind,
        sender_id=classified.sender_id,
        recipient_id=classified.recipient_id,
        conversation_id=classified.sender_id,
        text=text,
        timestamp=classified.timestamp if classified.timestamp is not None else entry_time,
        message_id=message_id,
        postback_payload=postback_payload,
        attachments=attachments,
        is_echo=is_echo,
        raw_source=raw,
    )


def _normalize_change(
    platform: Platform, raw: Any, entry_time: int | None, entry_id: str | None,
) -> list[NormalizedEvent]:
    try:
        change = ChangeItem.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "Skipping malformed %s change item: %s",
            platform.value, exc.errors(include_url=False),
        )
        return []

    handler = _CHANGE_HANDLERS.get((platform, change.field))
    if handler is None:
        logger.debug("Ignoring %s change field %r", platform.value, change.field)
        return []

    try:
        events = handler(platform, change.value, entry_time, entry_id)
    except ValidationError as exc:
        logger.warning(
            "Skipping malformed %s %s change: %s",
            platform.value, change.field, exc.errors(include_url=False),
        )
        return []
    return [event.model_copy(update={"raw_source": raw}) for event in events]


def _instagram_comment(
    platform: Platform, value: dict[str, Any], entry_time: int | None, entry_id: str | None,
) -> list[NormalizedEvent]:
    comment = InstagramComment.model_validate(value)
    return [NormalizedEvent(
        platform=platform,
        kind=EventKind.COMMENT,
        sender_id=comment.from_.id,
        recipient_id=entry_id,
        conversation_id=comment.media.id if comment.media else comment.from_.id,
        text=comment.text or "",
        timestamp=entry_time,
        message_id=comment.id,
    )]


def _instagram_message_field(
    platform: Platform, value: dict[str, Any], entry_time: int | None, entry_id: str | None,
) -> list[NormalizedEvent]:
    # The value has the same shape as a messaging[] item
    event = _normalize_messaging(platform, value, entry_time)
    return [event] if event is not None else []


def _messenger_feed(
    platform: Platform, value: dict[str, Any], entry_time: int | None, entry_id: str | None,
) -> list[NormalizedEvent]:
    if value.get("item") != "comment" or value.get("verb") != "add":
        logger.debug(
            "Ignoring feed change item=%r verb=%r", value.get("item"), value.get("verb"),
        )
        return []
    comment = FeedComment.model_validate(value)
    timestamp = comment.created_time * 1000 if comment.created_time else entry_time
    return [NormalizedEvent(
        platform=platform,
        kind=EventKind.COMMENT,
        sender_id=comment.from_.id,
        recipient_id=entry_id,
        conversation_id=comment.post_id,
        text=comment.message or "",
        timestamp=timestamp,
        message_id=comment.comment_id,
    )]


_CHANGE_HANDLERS: dict[tuple[Platform, str], ChangeHandler] = {
    (Platform.INSTAGRAM, "comments"): _instagram_comment,
    (Platform.INSTAGRAM, "messages"): _instagram_message_field,
    (Platform.MESSENGER, "feed"): _messenger_feed,
}
