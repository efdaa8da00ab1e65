from __future__ import annotations

import asyncio
import json

import pytest

from src.rag.events import (
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    InitEvent,
    MetaEvent,
    MetricsEvent,
    SourcesEvent,
    decode_event,
    encode_event,
)
from src.rag.transport import StreamChannel, StreamOrderError, collect

pytestmark = pytest.mark.anyio


def _meta() -> MetaEvent:
    return MetaEvent(
        request_id="req-1",
        top_k=8,
        min_score=0.3,
        kb_only=True,
        question="¿Qué es el arraigo?",
        rewritten="¿Qué es el arraigo?",
        route="KB_ONLY",
        in_domain=True,
        top_score=0.82,
    )


def test_encode_event_wire_shapes() -> None:
    assert encode_event(InitEvent()) == b'{"event":"init","ok":true}\n'
    assert encode_event(DeltaEvent("hola")) == b'{"delta":"hola"}\n'
    assert encode_event(DoneEvent()) == b'{"done":true}\n'
    error = json.loads(encode_event(ErrorEvent("req-1", "boom")))
    assert error == {"event": "error", "reqId": "req-1", "error": "boom"}
    metrics = json.loads(encode_event(MetricsEvent("req-1", 12, "KB_ONLY", 0.5)))
    assert metrics["event"] == "metrics"
    assert metrics["runtime_ms"] == 12
    assert metrics["route"] == "KB_ONLY"


def test_encode_keeps_spanish_text_readable() -> None:
    line = encode_event(DeltaEvent("¿Qué trámite?"))

    assert line.endswith(b"\n")
    assert "¿Qué trámite?" in line.decode("utf-8")


def test_decode_event_restores_meta() -> None:
    meta = _meta()

    assert decode_event(encode_event(meta)) == meta
    assert decode_event(encode_event(SourcesEvent([{"id": "a"}]))) == SourcesEvent([{"id": "a"}])


def test_decode_event_rejects_unknown_records() -> None:
    with pytest.raises(ValueError):
        decode_event('{"event": "mystery"}')
    with pytest.raises(ValueError):
        decode_event("[1, 2]")


async def test_channel_delivers_events_in_order() -> None:
    channel = StreamChannel()
    sequence = [InitEvent(), _meta(), SourcesEvent([]), DeltaEvent("a"), DeltaEvent("b")]
    for event in sequence:
        assert await channel.send(event)
    await channel.send(MetricsEvent("req-1", 3, "KB_ONLY", 0.8))
    await channel.send(DoneEvent())

    events = await collect(channel)

    assert [event.kind for event in events] == [
        "init",
        "meta",
        "sources",
        "delta",
        "delta",
        "metrics",
        "done",
    ]
    assert channel.closed


async def test_channel_requires_init_first() -> None:
    channel = StreamChannel()

    with pytest.raises(StreamOrderError):
        await channel.send(DeltaEvent("too early"))


async def test_channel_rejects_meta_after_deltas() -> None:
    channel = StreamChannel()
    await channel.send(InitEvent())
    await channel.send(DeltaEvent("x"))

    with pytest.raises(StreamOrderError):
        await channel.send(SourcesEvent([]))


async def test_channel_rejects_events_after_done() -> None:
    channel = StreamChannel()
    await channel.send(InitEvent())
    await channel.send(DoneEvent())

    with pytest.raises(StreamOrderError):
        await channel.send(DeltaEvent("late"))


async def test_cancelled_channel_drops_writes_silently() -> None:
    channel = StreamChannel()
    await channel.send(InitEvent())
    channel.cancel()

    assert await channel.send(DeltaEvent("ignored")) is False
    assert channel.dropped == 1
    assert channel.cancelled
    assert [event.kind for event in await collect(channel)] == ["init"]


async def test_close_is_idempotent() -> None:
    channel = StreamChannel()
    await channel.send(InitEvent())
    channel.close()
    channel.close()
    channel.cancel()

    assert [event.kind for event in await collect(channel)] == ["init"]


async def test_full_channel_blocks_producer_until_consumer_reads() -> None:
    channel = StreamChannel(maxsize=2)
    await channel.send(InitEvent())
    await channel.send(DeltaEvent("a"))

    pending = asyncio.create_task(channel.send(DeltaEvent("b")))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert not pending.done()

    events = channel.__aiter__()
    assert (await events.__anext__()).kind == "init"
    assert await asyncio.wait_for(pending, timeout=1) is True
    assert [(await events.__anext__()).text, (await events.__anext__()).text] == ["a", "b"]
    await events.aclose()


async def test_cancel_releases_blocked_producer() -> None:
    channel = StreamChannel(maxsize=1)
    await channel.send(InitEvent())
    pending = asyncio.create_task(channel.send(DeltaEvent("stuck")))
    await asyncio.sleep(0)
    assert not pending.done()

    channel.cancel()

    assert await asyncio.wait_for(pending, timeout=1) is False
    assert channel.dropped == 1
    assert [event.kind for event in await collect(channel)] == ["init"]


def test_channel_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        StreamChannel(maxsize=0)
