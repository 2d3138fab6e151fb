"""Response producers: turn an inbound user message into reply text.

Two adapters talk to an OpenClaw instance:

* ``AgentHookProducer`` posts the event to the agent hook endpoint along
  with Graph API callbacks. The agent may reply inline (``reply``/``text``
  in its JSON response) or deliver on its own through the callbacks, in
  which case nothing is returned here.
* ``ChatCompletionsProducer`` calls the OpenAI-compatible
  ``/v1/chat/completions`` endpoint with the sender's history as prior turns.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx

from src.models import EventKind, NormalizedEvent, Platform
from src.webhook.credentials import CredentialResolver
from src.webhook.delivery import GraphDeliveryClient
from src.webhook.models import HistoryTurn

logger = logging.getLogger(__name__)

HOOK_SOURCE = "meta-webhook"


class ProducerError(Exception):
    """Raised when the response producer fails to produce a reply."""


class ResponseProducer(Protocol):
    async def produce(
        self,
        platform: Platform,
        sender_id: str,
        text: str,
        history: list[HistoryTurn],
        *,
        event: NormalizedEvent | None = None,
    ) -> str | None: ...


def _auth_headers(api_key: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


class AgentHookProducer:
    """Forwards events to the OpenClaw agent hook."""

    def __init__(
        self,
        hook_url: str,
        credentials: CredentialResolver,
        delivery: GraphDeliveryClient,
        api_key: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._hook_url = hook_url
        self._credentials = credentials
        self._delivery = delivery
        self._api_key = api_key
        self._timeout = timeout

    def build_payload(
        self,
        platform: Platform,
        sender_id: str,
        text: str,
        history: list[HistoryTurn],
        event: NormalizedEvent | None = None,
    ) -> dict[str, Any]:
        """Build the hook request body for one event."""
        kind = event.kind if event else EventKind.MESSAGE
        token = self._credentials.access_token(platform)
        conversation_id = event.conversation_id if event else sender_id

        body: dict[str, Any] = {
            "type": kind.value,
            "sender": {"id": sender_id},
            "message": {
                "id": event.message_id if event else None,
                "text": text,
                "timestamp": event.timestamp if event else None,
                "attachments": event.attachments if event else [],
            },
            "conversation": {"id": conversation_id},
            "history": [
                {"user": turn.user_text, "assistant": turn.response_text}
                for turn in history
            ],
        }
        if event and event.kind is EventKind.POSTBACK:
            body["postback"] = {"title": text, "payload": event.postback_payload}

        metadata: dict[str, Any] = {"receivedAt": datetime.now(UTC).isoformat()}
        if event and event.recipient_id:
            metadata["pageId"] = event.recipient_id
        if event and event.kind is EventKind.COMMENT and conversation_id != sender_id:
            metadata["mediaId"] = conversation_id

        if event and event.kind is EventKind.COMMENT and event.message_id:
            callbacks = {
                "replyToComment": {
                    "url": self._delivery.comment_reply_url(platform, event.message_id),
                    "token": token,
                    "method": "POST",
                },
            }
        else:
            callbacks = {
                "sendMessage": {
                    "url": self._delivery.messages_url(platform),
                    "token": token,
                    "method": "POST",
                    "recipientId": sender_id,
                },
            }

        return {
            "source": HOOK_SOURCE,
            "platform": platform.value,
            "event": body,
            "metadata": metadata,
            "callbacks": callbacks,
        }

    async def produce(
        self,
        platform: Platform,
        sender_id: str,
        text: str,
        history: list[HistoryTurn],
        *,
        event: NormalizedEvent | None = None,
    ) -> str | None:
        payload = self.build_payload(platform, sender_id, text, history, event)
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    self._hook_url,
                    json=payload,
                    headers=_auth_headers(self._api_key),
                    timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise ProducerError(f"Agent hook unavailable: {exc}") from exc

        if resp.status_code >= 400:
            raise ProducerError(
                f"Agent hook returned {resp.status_code}: {resp.text[:200]}"
            )
        logger.info("Agent hook accepted %s event: %s", platform.value, resp.status_code)

        try:
            data = resp.json()
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        reply = data.get("reply") or data.get("text")
        return reply if isinstance(reply, str) and reply.strip() else None


class ChatCompletionsProducer:
    """Asks an OpenAI-compatible upstream for the reply text."""

    def __init__(
        self,
        upstream_url: str,
        api_key: str | None = None,
        model: str = "default",
        timeout: float = 30.0,
    ) -> None:
        self._upstream_url = upstream_url
        self._api_key = api_key
        self._model = model
        self._timeout = timeout

    def build_request(
        self,
        platform: Platform,
        sender_id: str,
        text: str,
        history: list[HistoryTurn],
    ) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        for turn in history:
            messages.append({"role": "user", "content": turn.user_text})
            messages.append({"role": "assistant", "content": turn.response_text})
        messages.append({"role": "user", "content": text})
        return {
            "model": self._model,
            "messages": messages,
            "metadata": {"source": platform.value, "sender_id": sender_id},
        }

    async def produce(
        self,
        platform: Platform,
        sender_id: str,
        text: str,
        history: list[HistoryTurn],
        *,
        event: NormalizedEvent | None = None,
    ) -> str | None:
        if not text.strip():
            return None

        url = f"{self._upstream_url.rstrip('/')}/v1/chat/completions"
        request_body = self.build_request(platform, sender_id, text, history)
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    url,
                    json=request_body,
                    headers=_auth_headers(self._api_key),
                    timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise ProducerError(f"Upstream unavailable: {exc}") from exc

        if resp.status_code != 200:
            raise ProducerError(f"Upstream returned {resp.status_code}")

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (json.JSONDecodeError, IndexError, KeyError, TypeError) as exc:
            raise ProducerError("Upstream response has no assistant message") from exc
        if not isinstance(content, str) or not content.strip():
            return None
        return content.strip()
