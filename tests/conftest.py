"""Shared test fixtures for the Meta webhook relay."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.audit.logger import AuditLogger
from src.config import MetaSettings, PlatformCredentials, Settings
from src.models import AuditEvent, AuditEventType, EventKind, NormalizedEvent, Platform, RiskLevel

APP_SECRET = "test_app_secret"
VERIFY_TOKEN = "test_verify_token"


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def mock_delivery() -> AsyncMock:
    delivery = AsyncMock()
    delivery.deliver.return_value = True
    delivery.reply_to_comment.return_value = True
    delivery.send_sender_action.return_value = True
    return delivery


@pytest.fixture
def mock_producer() -> AsyncMock:
    producer = AsyncMock()
    producer.produce.return_value = "reply"
    return producer


# --- Factory functions for test data ---


def make_meta_settings(**kwargs: Any) -> MetaSettings:
    """Factory for MetaSettings with one global secret and token."""
    defaults: dict[str, Any] = {
        "app_secret": APP_SECRET,
        "verify_token": VERIFY_TOKEN,
        "access_token": "global_access_token",
    }
    defaults.update(kwargs)
    return MetaSettings(**defaults)


def make_settings(**meta_kwargs: Any) -> Settings:
    return Settings(meta=make_meta_settings(**meta_kwargs))


def make_platform_credentials(**kwargs: Any) -> PlatformCredentials:
    return PlatformCredentials(**kwargs)


def make_event(**kwargs: Any) -> NormalizedEvent:
    """Factory for NormalizedEvent with sensible defaults."""
    defaults: dict[str, Any] = {
        "platform": Platform.MESSENGER,
        "kind": EventKind.MESSAGE,
        "sender_id": "U1",
        "recipient_id": "PAGE1",
        "conversation_id": kwargs.get("sender_id", "U1"),
        "text": "Hello",
        "timestamp": 1700000000000,
        "message_id": None,
    }
    defaults.update(kwargs)
    return NormalizedEvent(**defaults)


def make_audit_event(**kwargs: Any) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, object] = {
        "event_type": AuditEventType.SIGNATURE_INVALID,
        "action": "test_action",
        "result": "failure",
        "risk_level": RiskLevel.HIGH,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)  # type: ignore[arg-type]


def make_messaging_item(
    sender: str = "U1",
    recipient: str = "PAGE1",
    text: str | None = "Hello",
    mid: str = "mid.1",
    timestamp: int = 1700000000000,
    **extra: Any,
) -> dict[str, Any]:
    message: dict[str, Any] = {"mid": mid}
    if text is not None:
        message["text"] = text
    item: dict[str, Any] = {
        "sender": {"id": sender},
        "recipient": {"id": recipient},
        "timestamp": timestamp,
        "message": message,
    }
    item.update(extra)
    return item


def make_payload(
    object_type: str = "page",
    messaging: list[dict[str, Any]] | None = None,
    changes: list[dict[str, Any]] | None = None,
    entry_id: str = "PAGE1",
) -> dict[str, Any]:
    entry: dict[str, Any] = {"id": entry_id, "time": 1700000000000}
    if messaging is not None:
        entry["messaging"] = messaging
    if changes is not None:
        entry["changes"] = changes
    return {"object": object_type, "entry": [entry]}
