"""Routes normalized events to the response producer and delivers replies.

Per event: received -> classified -> skipped | filtered | producing ->
produced -> delivered -> recorded, or production_failed / delivery_failed.
Every outcome is terminal and silent to the caller: failures are logged
and audited but not retried or raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from src.models import AuditEvent, AuditEventType, EventKind, NormalizedEvent, RiskLevel
from src.webhook.models import HistoryTurn

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.webhook.dedup import MessageDeduplicator
    from src.webhook.delivery import DeliveryCallback
    from src.webhook.history import ConversationHistoryStore
    from src.webhook.producer import ResponseProducer

logger = logging.getLogger(__name__)

PRODUCIBLE_KINDS = frozenset({EventKind.MESSAGE, EventKind.POSTBACK, EventKind.COMMENT})


class Dispatcher:
    """Runs the reply pipeline for each normalized event."""

    def __init__(
        self,
        producer: ResponseProducer,
        delivery: DeliveryCallback,
        history_store: ConversationHistoryStore | None = None,
        deduplicator: MessageDeduplicator | None = None,
        business_account_id: str | None = None,
        typing_indicator: bool = False,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._producer = producer
        self._delivery = delivery
        self._history = history_store
        self._dedup = deduplicator
        self._business_account_id = business_account_id
        self._typing_indicator = typing_indicator
        self._audit = audit_logger
        self._sender_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def handle_events(self, events: Iterable[NormalizedEvent]) -> None:
        """Process events in order; never raises."""
        for event in events:
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception(
                    "Unhandled error dispatching %s %s event from %s",
                    event.platform.value, event.kind.value, event.sender_id,
                )

    async def handle_event(self, event: NormalizedEvent) -> None:
        if not self._should_process(event):
            return

        # Serialize history read-modify-append per sender
        async with self._sender_lock(event.sender_id):
            await self._produce_and_deliver(event)

    def _should_process(self, event: NormalizedEvent) -> bool:
        if event.kind is EventKind.UNSUPPORTED:
            logger.debug("Skipping unsupported event from %s", event.sender_id)
            return False
        if event.kind not in PRODUCIBLE_KINDS:
            logger.debug(
                "Skipping %s receipt from %s", event.kind.value, event.sender_id,
            )
            return False
        if event.is_echo:
            logger.debug("Skipping echo of outbound message %s", event.message_id)
            return False
        if self._business_account_id and event.recipient_id != self._business_account_id:
            logger.info(
                "Skipping %s event for recipient %s not matching business account %s",
                event.platform.value, event.recipient_id, self._business_account_id,
            )
            return False
        if self._dedup and event.message_id and not self._dedup.check(event.message_id):
            logger.info("Skipping redelivered message %s", event.message_id)
            self._audit_event(
                event, AuditEventType.DUPLICATE_EVENT, "dedup", "skipped", RiskLevel.LOW,
            )
            return False
        return True

    @asynccontextmanager
    async def _sender_lock(self, sender_id: str) -> AsyncIterator[None]:
        """Hold the sender's lock; the entry is dropped once nobody uses it."""
        lock = self._sender_locks.get(sender_id)
        if lock is None:
            lock = asyncio.Lock()
            self._sender_locks[sender_id] = lock
        self._lock_users[sender_id] = self._lock_users.get(sender_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[sender_id] -= 1
            if not self._lock_users[sender_id]:
                del self._lock_users[sender_id]
                del self._sender_locks[sender_id]

    async def _produce_and_deliver(self, event: NormalizedEvent) -> None:
        history = self._load_history(event)

        if self._typing_indicator and event.kind is not EventKind.COMMENT:
            await self._send_typing(event)

        try:
            reply = await self._producer.produce(
                event.platform, event.sender_id, event.text, history, event=event,
            )
        except Exception as exc:
            logger.error(
                "Response producer failed for %s %s from %s: %s",
                event.platform.value, event.kind.value, event.sender_id, exc,
            )
            self._audit_event(
                event, AuditEventType.PRODUCER_FAILURE, "produce", "failure",
                RiskLevel.MEDIUM, {"error": str(exc)},
            )
            return

        if not reply:
            logger.info(
                "No reply produced for %s %s from %s",
                event.platform.value, event.kind.value, event.sender_id,
            )
            return

        if not await self._deliver(event, reply):
            logger.error(
                "Delivery failed for %s %s to %s",
                event.platform.value, event.kind.value, event.sender_id,
            )
            self._audit_event(
                event, AuditEventType.DELIVERY_FAILURE, "deliver", "failure", RiskLevel.MEDIUM,
            )
            return

        self._audit_event(
            event, AuditEventType.WEBHOOK_RELAY, "relay", "success", RiskLevel.INFO,
        )
        self._record_history(event, reply)

    async def _deliver(self, event: NormalizedEvent, reply: str) -> bool:
        try:
            if event.kind is EventKind.COMMENT and event.message_id:
                return await self._delivery.reply_to_comment(
                    event.platform, event.message_id, reply,
                )
            return await self._delivery.deliver(event.platform, event.sender_id, reply)
        except Exception:
            logger.exception("Delivery callback raised for %s", event.sender_id)
            return False

    async def _send_typing(self, event: NormalizedEvent) -> None:
        try:
            await self._delivery.send_sender_action(event.platform, event.sender_id, "typing_on")
        except Exception:
            logger.warning(
                "Typing indicator failed for %s", event.sender_id, exc_info=True,
            )

    def _load_history(self, event: NormalizedEvent) -> list[HistoryTurn]:
        if self._history is None:
            return []
        try:
            return self._history.load(event.sender_id)
        except Exception:
            logger.exception("Failed to load history for %s", event.sender_id)
            return []

    def _record_history(self, event: NormalizedEvent, reply: str) -> None:
        if self._history is None:
            return
        try:
            self._history.append(event.sender_id, event.text, reply)
        except Exception:
            logger.exception("Failed to append history for %s", event.sender_id)

    def _audit_event(
        self,
        event: NormalizedEvent,
        event_type: AuditEventType,
        action: str,
        result: str,
        risk_level: RiskLevel,
        details: dict[str, object] | None = None,
    ) -> None:
        if not self._audit:
            return
        self._audit.log(AuditEvent(
            event_type=event_type,
            platform=event.platform,
            sender_id=event.sender_id,
            action=action,
            result=result,
            risk_level=risk_level,
            details={"kind": event.kind.value, "message_id": event.message_id, **(details or {})},
        ))
