"""Fan-out of per-job progress events to live subscribers."""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional

from ..errors import SubscriberOverflow
from .models import ProgressEvent

logger = logging.getLogger(__name__)

_OVERFLOW = object()
_CLOSED = object()


class Subscription:
    """Async iterator over one job's events for one observer.

    Registered with the hub as soon as it is created, so events published
    before the first ``__anext__`` are buffered.  Iteration ends after the
    terminal marker; if the subscriber overflowed its buffer, iteration raises
    ``SubscriberOverflow`` instead.
    """

    def __init__(self, job_id: str, maxsize: int, hub: Optional["ProgressHub"] = None) -> None:
        self.job_id = job_id
        self.dropped = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._hub = hub
        self._done = False

    @classmethod
    def closed(cls, job_id: str, terminal: Optional[ProgressEvent] = None) -> "Subscription":
        """A detached subscription yielding only *terminal* (if any)."""
        sub = cls(job_id, maxsize=2)
        if terminal is not None:
            sub._queue.put_nowait(terminal)
        sub._queue.put_nowait(_CLOSED)
        return sub

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _OVERFLOW:
            self._done = True
            raise SubscriberOverflow(f"subscriber to job {self.job_id} fell behind and was dropped")
        if item is _CLOSED:
            self._finish()
            raise StopAsyncIteration
        if item.terminal:
            self._finish()
        return item

    def close(self) -> None:
        """Detach from the hub; safe to call more than once."""
        self._finish()

    def _finish(self) -> None:
        self._done = True
        if self._hub is not None:
            self._hub._detach(self)
            self._hub = None

    async def _offer(self, event: ProgressEvent, wait: float) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass
        if wait <= 0:
            return False
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=wait)
            return True
        except asyncio.TimeoutError:
            return False

    def _drop(self) -> None:
        """Discard buffered events and wake the reader with an overflow signal."""
        self.dropped = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_OVERFLOW)


class ProgressHub:
    """Best-effort broadcast of progress events, one channel per job.

    Publication never waits longer than ``overflow_wait`` on a subscriber; a
    subscriber whose buffer stays full is dropped.  Terminal markers of the
    last ``terminal_retention`` finished jobs are kept for late subscribers.
    """

    def __init__(self, buffer_size: int = 64, overflow_wait: float = 0.0, terminal_retention: int = 1024) -> None:
        self.buffer_size = buffer_size
        self.overflow_wait = overflow_wait
        self.terminal_retention = terminal_retention
        self._channels: Dict[str, List[Subscription]] = {}
        self._finished: "OrderedDict[str, ProgressEvent]" = OrderedDict()

    def open(self, job_id: str) -> None:
        self._channels.setdefault(job_id, [])

    def terminal_for(self, job_id: str) -> Optional[ProgressEvent]:
        return self._finished.get(job_id)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._channels.get(job_id, ()))

    def subscribe(self, job_id: str) -> Subscription:
        terminal = self._finished.get(job_id)
        if terminal is not None:
            return Subscription.closed(job_id, terminal)
        subs = self._channels.get(job_id)
        if subs is None:
            return Subscription.closed(job_id)
        sub = Subscription(job_id, maxsize=self.buffer_size, hub=self)
        subs.append(sub)
        return sub

    async def publish(self, job_id: str, event: ProgressEvent) -> None:
        for sub in list(self._channels.get(job_id, ())):
            if not await sub._offer(event, self.overflow_wait):
                self._overflow(sub)

    async def close(self, job_id: str, terminal: ProgressEvent) -> None:
        """Deliver the terminal marker and retire the channel."""
        subs = self._channels.pop(job_id, [])
        for sub in subs:
            sub._hub = None
            if sub._queue.full():
                # Lagging reader: give up its oldest event so it still sees the end.
                sub._queue.get_nowait()
            sub._queue.put_nowait(terminal)
        self._finished[job_id] = terminal
        self._finished.move_to_end(job_id)
        while len(self._finished) > self.terminal_retention:
            self._finished.popitem(last=False)

    def _overflow(self, sub: Subscription) -> None:
        logger.warning("Dropping slow subscriber for job %s (buffer %d full)", sub.job_id, self.buffer_size)
        self._detach(sub)
        sub._hub = None
        sub._drop()

    def _detach(self, sub: Subscription) -> None:
        subs = self._channels.get(sub.job_id)
        if subs is not None and sub in subs:
            subs.remove(sub)
