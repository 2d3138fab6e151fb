"""Graph API delivery of replies to Instagram and Messenger.

Every call reports success as a bool and never raises for HTTP or
transport failures. Failed sends are logged and not retried.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from src.models import Platform
from src.webhook.credentials import CredentialResolver

logger = logging.getLogger(__name__)

GRAPH_API_BASES: dict[Platform, str] = {
    Platform.INSTAGRAM: "https://graph.instagram.com/v24.0",
    Platform.MESSENGER: "https://graph.facebook.com/v24.0",
}

# Instagram threads comment replies under /replies, Facebook under /comments
_COMMENT_REPLY_EDGES: dict[Platform, str] = {
    Platform.INSTAGRAM: "replies",
    Platform.MESSENGER: "comments",
}

SENDER_ACTIONS = frozenset({"typing_on", "typing_off", "mark_seen"})


class DeliveryCallback(Protocol):
    async def deliver(self, platform: Platform, recipient_id: str, text: str) -> bool: ...

    async def reply_to_comment(self, platform: Platform, comment_id: str, text: str) -> bool: ...

    async def send_sender_action(
        self, platform: Platform, recipient_id: str, action: str,
    ) -> bool: ...


class GraphDeliveryClient:
    """Sends replies through the platform messaging endpoints."""

    def __init__(
        self,
        credentials: CredentialResolver,
        api_bases: dict[Platform, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._credentials = credentials
        self._api_bases = {**GRAPH_API_BASES, **(api_bases or {})}
        self._timeout = timeout

    def messages_url(self, platform: Platform) -> str:
        return f"{self._api_bases[platform]}/me/messages"

    def comment_reply_url(self, platform: Platform, comment_id: str) -> str:
        return f"{self._api_bases[platform]}/{comment_id}/{_COMMENT_REPLY_EDGES[platform]}"

    async def deliver(self, platform: Platform, recipient_id: str, text: str) -> bool:
        """Send a text message to ``recipient_id``."""
        payload = {
            "recipient": {"id": recipient_id},
            "message": {"text": text},
            "messaging_type": "RESPONSE",
        }
        return await self._post(platform, self.messages_url(platform), payload)

    async def reply_to_comment(self, platform: Platform, comment_id: str, text: str) -> bool:
        """Post a public reply under a comment."""
        url = self.comment_reply_url(platform, comment_id)
        return await self._post(platform, url, {"message": text})

    async def send_sender_action(
        self, platform: Platform, recipient_id: str, action: str,
    ) -> bool:
        """Send ``typing_on``, ``typing_off`` or ``mark_seen``."""
        if action not in SENDER_ACTIONS:
            raise ValueError(f"Unknown sender action: {action}")
        payload = {"recipient": {"id": recipient_id}, "sender_action": action}
        return await self._post(platform, self.messages_url(platform), payload)

    async def _post(self, platform: Platform, url: str, payload: dict[str, Any]) -> bool:
        token = self._credentials.access_token(platform)
        if not token:
            logger.error("No access token configured for %s delivery", platform.value)
            return False
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(verify=True, timeout=self._timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Graph API request to %s failed: %s", url, exc)
            return False

        if resp.status_code >= 400:
            logger.error(
                "Graph API rejected %s delivery: status=%s body=%s",
                platform.value, resp.status_code, resp.text,
            )
            return False
        return True
