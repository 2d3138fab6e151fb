"""Maps the payload ``object`` field to a platform."""

from __future__ import annotations

from typing import Any

from src.models import Platform

_OBJECT_PLATFORMS: dict[str, Platform] = {
    "instagram": Platform.INSTAGRAM,
    "page": Platform.MESSENGER,
}


def detect_platform(object_field: Any) -> Platform | None:
    """Return the platform for a subscription object type, or None if unsupported."""
    if not isinstance(object_field, str):
        return None
    return _OBJECT_PLATFORMS.get(object_field)
