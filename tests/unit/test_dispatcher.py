"""Tests for the dispatcher reply pipeline."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.models import AuditEventType, EventKind, Platform
from src.webhook.dedup import MessageDeduplicator
from src.webhook.dispatcher import Dispatcher
from src.webhook.history import SQLiteHistoryStore
from src.webhook.models import HistoryTurn
from src.webhook.producer import ProducerError
from tests.conftest import make_event


def _make_dispatcher(producer: Any, delivery: Any, **kwargs: Any) -> Dispatcher:
    return Dispatcher(producer, delivery, **kwargs)


class TestRouting:
    @pytest.mark.asyncio
    async def test_message_produced_and_delivered(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        event = make_event(text="Hello")
        await dispatcher.handle_events([event])

        mock_producer.produce.assert_awaited_once_with(
            Platform.MESSENGER, "U1", "Hello", [], event=event,
        )
        mock_delivery.deliver.assert_awaited_once_with(Platform.MESSENGER, "U1", "reply")

    @pytest.mark.asyncio
    async def test_unsupported_skipped(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([make_event(kind=EventKind.UNSUPPORTED)])
        mock_producer.produce.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [EventKind.READ, EventKind.DELIVERY])
    async def test_receipts_skipped(
        self, kind: EventKind, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([make_event(kind=kind, text="")])
        mock_producer.produce.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_echo_skipped(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([make_event(is_echo=True)])
        mock_producer.produce.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_postback_delivered_as_message(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([
            make_event(kind=EventKind.POSTBACK, text="Get Started", postback_payload="GS"),
        ])
        mock_delivery.deliver.assert_awaited_once_with(Platform.MESSENGER, "U1", "reply")

    @pytest.mark.asyncio
    async def test_comment_replied_in_thread(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([
            make_event(
                platform=Platform.INSTAGRAM, kind=EventKind.COMMENT,
                sender_id="U2", conversation_id="MEDIA1", text="nice", message_id="C1",
            ),
        ])
        mock_delivery.reply_to_comment.assert_awaited_once_with(
            Platform.INSTAGRAM, "C1", "reply",
        )
        mock_delivery.deliver.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_comment_without_id_falls_back_to_message(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([
            make_event(kind=EventKind.COMMENT, sender_id="U2", message_id=None),
        ])
        mock_delivery.deliver.assert_awaited_once_with(Platform.MESSENGER, "U2", "reply")


class TestBusinessAccountFilter:
    @pytest.mark.asyncio
    async def test_matching_recipient_processed(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(
            mock_producer, mock_delivery, business_account_id="PAGE1",
        )
        await dispatcher.handle_events([make_event(recipient_id="PAGE1")])
        mock_producer.produce.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_other_recipient_filtered(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(
            mock_producer, mock_delivery, business_account_id="PAGE1",
        )
        await dispatcher.handle_events([make_event(recipient_id="U1", sender_id="PAGE1")])
        mock_producer.produce.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_filter_when_unset(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([make_event(recipient_id="ANYTHING")])
        mock_producer.produce.assert_awaited_once()


class TestNoReply:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [None, ""])
    async def test_empty_reply_not_delivered_or_recorded(
        self, reply: str | None, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        mock_producer.produce.return_value = reply
        history = MagicMock()
        history.load.return_value = []
        dispatcher = _make_dispatcher(mock_producer, mock_delivery, history_store=history)
        await dispatcher.handle_events([make_event()])
        mock_delivery.deliver.assert_not_awaited()
        history.append.assert_not_called()


class TestFailures:
    @pytest.mark.asyncio
    async def test_producer_failure_contained(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock, mock_audit_logger: MagicMock,
    ) -> None:
        mock_producer.produce.side_effect = [ProducerError("down"), "second reply"]
        dispatcher = _make_dispatcher(
            mock_producer, mock_delivery, audit_logger=mock_audit_logger,
        )
        await dispatcher.handle_events([
            make_event(sender_id="U1", text="first"),
            make_event(sender_id="U2", text="second"),
        ])
        mock_delivery.deliver.assert_awaited_once_with(Platform.MESSENGER, "U2", "second reply")
        event_types = [c.args[0].event_type for c in mock_audit_logger.log.call_args_list]
        assert AuditEventType.PRODUCER_FAILURE in event_types

    @pytest.mark.asyncio
    async def test_unexpected_producer_exception_contained(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        mock_producer.produce.side_effect = RuntimeError("boom")
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([make_event()])
        mock_delivery.deliver.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delivery_failure_not_recorded_or_retried(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock, mock_audit_logger: MagicMock,
    ) -> None:
        mock_delivery.deliver.return_value = False
        history = MagicMock()
        history.load.return_value = []
        dispatcher = _make_dispatcher(
            mock_producer, mock_delivery,
            history_store=history, audit_logger=mock_audit_logger,
        )
        await dispatcher.handle_events([make_event()])
        assert mock_delivery.deliver.await_count == 1
        history.append.assert_not_called()
        event_types = [c.args[0].event_type for c in mock_audit_logger.log.call_args_list]
        assert event_types == [AuditEventType.DELIVERY_FAILURE]

    @pytest.mark.asyncio
    async def test_delivery_exception_contained(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        mock_delivery.deliver.side_effect = RuntimeError("socket closed")
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([make_event(), make_event(sender_id="U2")])
        assert mock_delivery.deliver.await_count == 2

    @pytest.mark.asyncio
    async def test_history_append_failure_contained(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        history = MagicMock()
        history.load.return_value = []
        history.append.side_effect = OSError("disk full")
        dispatcher = _make_dispatcher(mock_producer, mock_delivery, history_store=history)
        await dispatcher.handle_events([make_event()])
        mock_delivery.deliver.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_history_load_failure_uses_empty_history(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        history = MagicMock()
        history.load.side_effect = OSError("locked")
        dispatcher = _make_dispatcher(mock_producer, mock_delivery, history_store=history)
        event = make_event()
        await dispatcher.handle_events([event])
        mock_producer.produce.assert_awaited_once_with(
            Platform.MESSENGER, "U1", "Hello", [], event=event,
        )


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_loaded_and_appended(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        store = SQLiteHistoryStore(":memory:")
        store.append("U1", "earlier", "earlier reply")
        dispatcher = _make_dispatcher(mock_producer, mock_delivery, history_store=store)

        await dispatcher.handle_events([make_event(text="Hello")])

        history_arg = mock_producer.produce.call_args.args[3]
        assert history_arg == [HistoryTurn("earlier", "earlier reply")]
        assert store.load("U1")[-1] == HistoryTurn("Hello", "reply")

    @pytest.mark.asyncio
    async def test_same_sender_events_serialized(self, mock_delivery: AsyncMock) -> None:
        store = SQLiteHistoryStore(":memory:")
        active = 0
        max_active = 0

        async def slow_produce(platform, sender_id, text, history, *, event=None):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.01)
            active -= 1
            return f"re:{text}"

        producer = AsyncMock()
        producer.produce.side_effect = slow_produce
        dispatcher = _make_dispatcher(producer, mock_delivery, history_store=store)

        await asyncio.gather(
            dispatcher.handle_events([make_event(text="one")]),
            dispatcher.handle_events([make_event(text="two")]),
        )

        assert max_active == 1
        assert [t.user_text for t in store.load("U1")] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_different_senders_run_concurrently(self, mock_delivery: AsyncMock) -> None:
        both_started = asyncio.Event()
        started: set[str] = set()

        async def produce(platform, sender_id, text, history, *, event=None):
            started.add(sender_id)
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1)
            return "ok"

        producer = AsyncMock()
        producer.produce.side_effect = produce
        dispatcher = _make_dispatcher(producer, mock_delivery)

        await asyncio.gather(
            dispatcher.handle_events([make_event(sender_id="A")]),
            dispatcher.handle_events([make_event(sender_id="B")]),
        )
        assert started == {"A", "B"}


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_redelivered_message_skipped(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock, mock_audit_logger: MagicMock,
    ) -> None:
        dispatcher = _make_dispatcher(
            mock_producer, mock_delivery,
            deduplicator=MessageDeduplicator(), audit_logger=mock_audit_logger,
        )
        event = make_event(message_id="mid.1")
        await dispatcher.handle_events([event])
        await dispatcher.handle_events([event])
        assert mock_producer.produce.await_count == 1
        event_types = [c.args[0].event_type for c in mock_audit_logger.log.call_args_list]
        assert AuditEventType.DUPLICATE_EVENT in event_types

    @pytest.mark.asyncio
    async def test_events_without_id_not_deduplicated(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(
            mock_producer, mock_delivery, deduplicator=MessageDeduplicator(),
        )
        await dispatcher.handle_events([make_event(message_id=None)] * 2)
        assert mock_producer.produce.await_count == 2


class TestTypingIndicator:
    @pytest.mark.asyncio
    async def test_typing_sent_before_producing(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery, typing_indicator=True)
        await dispatcher.handle_events([make_event()])
        mock_delivery.send_sender_action.assert_awaited_once_with(
            Platform.MESSENGER, "U1", "typing_on",
        )

    @pytest.mark.asyncio
    async def test_typing_off_by_default(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        await dispatcher.handle_events([make_event()])
        mock_delivery.send_sender_action.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_typing_failure_does_not_block_reply(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        mock_delivery.send_sender_action.side_effect = RuntimeError("graph down")
        dispatcher = _make_dispatcher(mock_producer, mock_delivery, typing_indicator=True)
        await dispatcher.handle_events([make_event()])
        mock_producer.produce.assert_awaited_once()
        mock_delivery.deliver.assert_awaited_once_with(Platform.MESSENGER, "U1", "reply")


class TestSenderLocks:
    @pytest.mark.asyncio
    async def test_locks_released_after_dispatch(
        self, mock_producer: AsyncMock, mock_delivery: AsyncMock,
    ) -> None:
        dispatcher = _make_dispatcher(mock_producer, mock_delivery)
        events = [make_event(sender_id=f"U{i}") for i in range(1000)]
        await dispatcher.handle_events(events)
        assert mock_producer.produce.await_count == 1000
        assert dispatcher._sender_locks == {}
        assert dispatcher._lock_users == {}

    @pytest.mark.asyncio
    async def test_lock_kept_while_sender_has_waiters(self, mock_delivery: AsyncMock) -> None:
        release = asyncio.Event()
        calls: list[str] = []

        async def produce(platform, sender_id, text, history, *, event=None):
            calls.append(text)
            if text == "first":
                await release.wait()
            return "reply"

        producer = AsyncMock()
        producer.produce.side_effect = produce
        dispatcher = _make_dispatcher(producer, mock_delivery)

        first = asyncio.create_task(dispatcher.handle_event(make_event(text="first")))
        await asyncio.sleep(0)
        second = asyncio.create_task(dispatcher.handle_event(make_event(text="second")))
        await asyncio.sleep(0)

        assert calls == ["first"]
        assert dispatcher._lock_users == {"U1": 2}

        release.set()
        await asyncio.gather(first, second)
        assert calls == ["first", "second"]
        assert dispatcher._sender_locks == {}
