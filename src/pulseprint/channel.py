"""Bounded single-producer/single-consumer event channel.

The supervisor task sends :data:`~pulseprint.models.SubscriptionEvent`
values; the consumer task drains them in FIFO order.  A full channel
suspends the sender until the consumer frees a slot, so a slow consumer
throttles the network loop instead of dropping events or growing memory.

Either side can hang up:

- ``close()``          sender is done; the receiver drains what is buffered,
                       then sees end-of-stream.
- ``close_receiver()`` consumer is gone; pending and future ``send()``
                       calls raise :class:`ChannelClosedError`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CAPACITY = 100


class ChannelClosedError(Exception):
    """The other end of the channel has gone away."""


class Interrupted(Exception):
    """A guard event fired before the awaited operation completed."""


async def guarded(aw: Awaitable[T], event: asyncio.Event) -> T:
    """Await *aw* unless *event* is set first.

    If *event* wins, *aw* is cancelled and :class:`Interrupted` is raised.
    If both complete together the result of *aw* is kept.
    """
    if event.is_set():
        if inspect.iscoroutine(aw):
            aw.close()
        raise Interrupted()

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Abandoned operation failed while cancelling", exc_info=True)

    if task.cancelled():
        raise Interrupted()
    return task.result()


class EventChannel(Generic[T]):
    """FIFO channel over a bounded :class:`asyncio.Queue`.

    Parameters
    ----------
    capacity:
        Maximum number of buffered events.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("Channel capacity must be at least 1")
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=capacity)
        self._sender_closed = asyncio.Event()
        self._receiver_closed = asyncio.Event()

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    @property
    def closed(self) -> bool:
        """True once either side has hung up."""
        return self._sender_closed.is_set() or self._receiver_closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    # ── producer side ───────────────────────────────────────────────

    async def send(self, event: T) -> None:
        """Enqueue *event*, suspending while the channel is full.

        Raises
        ------
        ChannelClosedError
            If the receiver has gone away, or the sender already closed.
        """
        if self._sender_closed.is_set():
            raise ChannelClosedError("Channel already closed by sender")
        try:
            await guarded(self._queue.put(event), self._receiver_closed)
        except Interrupted:
            raise ChannelClosedError("Receiver has gone away") from None

    def close(self) -> None:
        """Signal end-of-stream.  Buffered events are still delivered."""
        self._sender_closed.set()

    # ── consumer side ───────────────────────────────────────────────

    async def recv(self) -> T:
        """Dequeue the next event, suspending while the channel is empty.

        Raises
        ------
        ChannelClosedError
            When the sender has closed and the buffer is drained.
        """
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._sender_closed.is_set():
                raise ChannelClosedError("Channel closed by sender")
            try:
                return await guarded(self._queue.get(), self._sender_closed)
            except Interrupted:
                continue  # drain anything sent before close()

    def close_receiver(self) -> None:
        """Signal that nothing will read from this channel again."""
        self._receiver_closed.set()

    def __aiter__(self) -> "EventChannel[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.recv()
        except ChannelClosedError:
            raise StopAsyncIteration from None


EventHandler = Callable[[Any], Any]


class EventProcessor:
    """Consumer loop: drain a channel and hand each event to a handler.

    Handler failures are logged per event and never stop the loop.
    """

    def __init__(self, channel: EventChannel) -> None:
        self._channel = channel
        self._processed = 0
        self._failed = 0

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def failed(self) -> int:
        return self._failed

    async def run(self, handler: EventHandler) -> None:
        """Run until the sender closes the channel.

        *handler* may be a plain function or a coroutine function.
        """
        try:
            async for event in self._channel:
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    self._failed += 1
                    logger.exception("Error processing event %s", type(event).__name__)
                finally:
                    self._processed += 1
        finally:
            self._channel.close_receiver()
            logger.debug(
                "Event processor stopped (processed=%d, failed=%d)",
                self._processed,
                self._failed,
            )
