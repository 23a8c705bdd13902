"""Fan-out of transition records to any number of watchers."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from .constants import DEFAULT_WATCH_BACKLOG_WARNING
from .contracts import TransitionRecord

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """Finite async iterator over the records published after it attached.

    Each subscription owns an unbounded queue, so a slow reader never stalls
    the scheduler. Records are never dropped.
    """

    def __init__(self, emitter: "TransitionEmitter") -> None:
        self._emitter = emitter
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False
        self._warned = False

    def _push(self, item: object) -> None:
        self._queue.put_nowait(item)
        backlog = self._queue.qsize()
        if not self._warned and backlog >= self._emitter.backlog_warning:
            self._warned = True
            logger.warning(
                f"Watcher of run {self._emitter.run_id} is {backlog} records behind"
            )

    def __aiter__(self) -> AsyncIterator[TransitionRecord]:
        return self

    async def __anext__(self) -> TransitionRecord:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            self._emitter._detach(self)
            raise StopAsyncIteration
        return item

    def drain(self) -> List[TransitionRecord]:
        """Records already queued, without waiting for more."""
        records: List[TransitionRecord] = []
        while not self._done and not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._done = True
                self._emitter._detach(self)
                break
            records.append(item)
        return records

    async def aclose(self) -> None:
        """Detach early; no further records are delivered."""
        self._done = True
        self._emitter._detach(self)

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class TransitionEmitter:
    """Publishes every committed mutation of one run, in commit order."""

    def __init__(
        self, run_id: str, backlog_warning: int = DEFAULT_WATCH_BACKLOG_WARNING
    ) -> None:
        self.run_id = run_id
        self.backlog_warning = backlog_warning
        self._subscribers: List[Subscription] = []
        self._last: Optional[TransitionRecord] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_record(self) -> Optional[TransitionRecord]:
        return self._last

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        if self._closed:
            if self._last is not None:
                subscription._push(self._last)
            subscription._push(_CLOSED)
            return subscription
        self._subscribers.append(subscription)
        return subscription

    def publish(self, record: TransitionRecord) -> None:
        """Deliver ``record`` to every attached subscriber without blocking."""
        if self._closed:
            logger.warning(f"Dropping record for closed run {self.run_id}")
            return
        self._last = record
        for subscription in list(self._subscribers):
            subscription._push(record)

    def close(self, final_record: Optional[TransitionRecord] = None) -> None:
        """Complete every subscription once its backlog drains."""
        if self._closed:
            return
        if final_record is not None:
            self.publish(final_record)
        self._closed = True
        for subscription in list(self._subscribers):
            subscription._push(_CLOSED)
        logger.debug(f"Closed transition stream for run {self.run_id}")

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
