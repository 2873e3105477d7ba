"""
Progress channels - per-task broadcast streams.

A channel fans every emitted payload out to all live subscribers. Each
subscriber owns an unbounded queue, so a slow reader never loses payloads
and always sees them in emission order. Late subscribers only see payloads
emitted after they subscribed.

Channels are loop-bound: emit(), subscribe() and close() must be called on
the event loop that consumes them. Worker threads go through the runner,
which marshals payloads onto the loop first.

Usage:
    channel = runner.progress_stream("resize-42")
    async for payload in channel:
        print(payload)
"""
import asyncio
from typing import Generic, List, TypeVar
from loguru import logger

P = TypeVar("P")

_CLOSED = object()


class ProgressSubscription(Generic[P]):
    """Async iterator over the payloads of one channel."""

    def __init__(self, channel: "ProgressChannel[P]"):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False

    def __aiter__(self) -> "ProgressSubscription[P]":
        return self

    async def __anext__(self) -> P:
        if self._done and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return item

    def cancel(self):
        """Stop listening. Pending payloads are discarded."""
        self._channel._detach(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        # The marker may have been drained above; a pending reader still needs it
        self._done = True
        self._queue.put_nowait(_CLOSED)

    def _push(self, payload):
        self._queue.put_nowait(payload)

    def _finish(self):
        if not self._done:
            self._done = True
            self._queue.put_nowait(_CLOSED)


class ProgressChannel(Generic[P]):
    """Broadcast channel for the progress payloads of one task."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        self._subscribers: List[ProgressSubscription[P]] = []
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> ProgressSubscription[P]:
        """
        Register a new listener.

        Subscribing to a closed channel returns an already exhausted
        subscription instead of reopening the channel.
        """
        sub = ProgressSubscription(self)
        if self._closed:
            sub._finish()
        else:
            self._subscribers.append(sub)
        return sub

    def __aiter__(self) -> ProgressSubscription[P]:
        return self.subscribe()

    def emit(self, payload: P) -> bool:
        """
        Deliver payload to every subscriber.

        Returns:
            False if the channel is closed (the payload is dropped)
        """
        if self._closed:
            logger.debug(f"Progress for '{self.task_id}' dropped: channel closed")
            return False
        for sub in self._subscribers:
            sub._push(payload)
        return True

    def close(self):
        """Close the channel and end every subscription. Idempotent."""
        if self._closed:
            return
        self._closed = True
        subscribers, self._subscribers = self._subscribers, []
        for sub in subscribers:
            sub._finish()

    def _detach(self, sub: ProgressSubscription[P]):
        if sub in self._subscribers:
            self._subscribers.remove(sub)
