"""Background execution of dispatch work after the webhook is acknowledged."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from src.models import NormalizedEvent
from src.webhook.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT = 30.0


class DispatchRunner:
    """Schedules Dispatcher.handle_events as detached asyncio tasks."""

    def __init__(self, dispatcher: Dispatcher) -> None:
        self._dispatcher = dispatcher
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, events: Sequence[NormalizedEvent]) -> asyncio.Task[None] | None:
        """Start processing ``events`` without waiting for it."""
        if not events:
            return None
        task = asyncio.get_running_loop().create_task(
            self._dispatcher.handle_events(list(events)),
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float = DEFAULT_DRAIN_TIMEOUT) -> None:
        """Wait for in-flight dispatches; cancel whatever outlives ``timeout``."""
        if not self._tasks:
            return
        logger.info("Waiting for %d in-flight dispatch task(s)", len(self._tasks))
        _done, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(
                "Cancelled %d dispatch task(s) still running after %.0fs",
                len(still_running), timeout,
            )
            await asyncio.gather(*still_running, return_exceptions=True)
