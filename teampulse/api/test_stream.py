import asyncio
import json

import pytest

from teampulse.api.stream import StreamEmitter, decode_event, format_frame
from teampulse.core.errors import StreamTransportError
from teampulse.core.events import CompleteEvent, ErrorEvent, HighlightEvent, ProgressEvent
from teampulse.core.models import Category


def test_error_frame_uses_wire_names():
    frame = format_frame(ErrorEvent(chunk_number=2, message="LLM request failed", code="CHUNK_TRANSPORT_ERROR"))

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame[len("data: "):])
    assert payload == {
        "type": "error",
        "chunkNumber": 2,
        "message": "LLM request failed",
        "code": "CHUNK_TRANSPORT_ERROR",
        "fatal": False,
    }


def test_decode_event_restores_typed_event():
    event = HighlightEvent(
        id="hl_1",
        category=Category.MANIPULATION,
        label="False urgency",
        severity=3,
        global_start=4,
        global_end=14,
        text="act now!!!",
        source_chunks=[0],
    )

    decoded = decode_event(format_frame(event))

    assert isinstance(decoded, HighlightEvent)
    assert decoded == event


def test_decode_event_accepts_bare_payload():
    decoded = decode_event('{"type": "error", "chunkNumber": 3, "message": "x", "code": "C"}')

    assert isinstance(decoded, ErrorEvent)
    assert decoded.chunk_number == 3


def test_decode_event_rejects_unknown_type():
    with pytest.raises(ValueError):
        decode_event('data: {"type": "mystery"}')


async def test_emit_waits_for_consumer():
    emitter = StreamEmitter()
    frames = emitter.frames()

    await emitter.emit(ProgressEvent(progress=10))
    second = asyncio.create_task(emitter.emit(ProgressEvent(progress=20)))
    await asyncio.sleep(0.01)
    assert not second.done()

    first_frame = await frames.__anext__()
    await asyncio.wait_for(second, timeout=1)
    second_frame = await frames.__anext__()

    assert decode_event(first_frame).progress == 10
    assert decode_event(second_frame).progress == 20
    await frames.aclose()


async def test_close_drains_queued_frames():
    emitter = StreamEmitter()

    await emitter.emit(CompleteEvent(total_highlights=0))
    emitter.close()
    frames = [frame async for frame in emitter.frames()]

    assert len(frames) == 1
    assert decode_event(frames[0]).type.value == "complete"
    assert not emitter.disconnected


async def test_emit_after_disconnect_raises():
    emitter = StreamEmitter()
    emitter.disconnect()

    with pytest.raises(StreamTransportError):
        await emitter.emit(ProgressEvent(progress=1))


async def test_blocked_emit_raises_when_consumer_leaves():
    emitter = StreamEmitter()
    await emitter.emit(ProgressEvent(progress=1))
    blocked = asyncio.create_task(emitter.emit(ProgressEvent(progress=2)))
    await asyncio.sleep(0.01)

    emitter.disconnect()

    with pytest.raises(StreamTransportError):
        await asyncio.wait_for(blocked, timeout=1)


async def test_abandoned_reader_marks_disconnect():
    emitter = StreamEmitter()
    frames = emitter.frames()
    await emitter.emit(ProgressEvent(progress=1))
    await frames.__anext__()

    await frames.aclose()

    assert emitter.disconnected
