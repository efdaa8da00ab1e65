from __future__ import annotations

"""Ordered single-producer channel carrying stream events to one consumer."""

import asyncio
import logging
from typing import AsyncIterator, Protocol

from src.rag.events import (
    DeltaEvent,
    DoneEvent,
    InitEvent,
    MetaEvent,
    SourcesEvent,
    StreamEvent,
    encode_event,
)
from src.rag.types import RAGError

logger = logging.getLogger(__name__)


class StreamOrderError(RAGError):
    """Raised when a producer emits events out of order."""
    pass


class StreamChannel:
    """Queue of stream events with ordering checks and two-sided shutdown.

    The producer calls `send()` and finally `close()`; the consumer iterates
    and may call `cancel()` to stop the producer. Sends after cancellation are
    dropped silently. At most `maxsize` events wait unread; a producer that gets
    ahead of its consumer blocks in `send()` until one is taken.
    """

    def __init__(self, maxsize: int = 32) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._slots = asyncio.Semaphore(maxsize)
        self._cancel = asyncio.Event()
        self._closed = False
        self._started = False
        self._streaming = False
        self.dropped = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: StreamEvent) -> bool:
        """Enqueue an event; returns False when the consumer has gone away."""
        if self._cancel.is_set():
            self.dropped += 1
            return False
        if self._closed:
            raise StreamOrderError(f"{event.kind} sent after the stream was closed")
        self._check_order(event)
        await self._slots.acquire()
        if self._cancel.is_set():
            self._slots.release()
            self.dropped += 1
            return False
        self._queue.put_nowait(event)
        if isinstance(event, DoneEvent):
            self.close()
        return True

    def close(self) -> None:
        """Mark the end of the stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def cancel(self) -> None:
        """Consumer-side shutdown; the producer observes it between sends."""
        if self._cancel.is_set():
            return
        self._cancel.set()
        self.close()
        # Wake a producer blocked on a full channel.
        self._slots.release()

    def _check_order(self, event: StreamEvent) -> None:
        if not self._started:
            if not isinstance(event, InitEvent):
                raise StreamOrderError(f"stream must start with init, got {event.kind}")
            self._started = True
            return
        if isinstance(event, InitEvent):
            raise StreamOrderError("init sent twice")
        if isinstance(event, DeltaEvent):
            self._streaming = True
        elif isinstance(event, (MetaEvent, SourcesEvent)) and self._streaming:
            raise StreamOrderError(f"{event.kind} sent after content deltas")

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            self._slots.release()
            yield event


class StreamProducer(Protocol):
    async def stream(self, plan: object, channel: StreamChannel) -> None:
        raise NotImplementedError


async def collect(channel: StreamChannel) -> list[StreamEvent]:
    """Drain a channel into a list, for single-shot consumers."""
    return [event async for event in channel]


async def stream_plan(producer: StreamProducer, plan: object) -> AsyncIterator[bytes]:
    """Run the producer as a task and yield its events as NDJSON bytes.

    If the consumer stops early the channel is cancelled and the producer
    task is cancelled with it.
    """
    channel = StreamChannel()
    task = asyncio.create_task(producer.stream(plan, channel))
    completed = False
    try:
        async for event in channel:
            yield encode_event(event)
        completed = True
    finally:
        if not completed:
            logger.info("stream_consumer_gone", extra={"dropped": channel.dropped})
            channel.cancel()
            task.cancel()
            await asyncio.wait([task])
    await task
