"""
Server-push framing for analysis events.

The orchestrator is the only writer. Events pass through a one-slot queue,
so `emit` waits until the response body has taken the previous frame. Once
the caller is gone `emit` raises StreamTransportError instead of dropping.
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Optional

from teampulse.core.events import StreamEvent, stream_event_adapter
from teampulse.core.errors import StreamTransportError

logger = logging.getLogger("stream_emitter")

FRAME_PREFIX = "data: "
FRAME_SUFFIX = "\n\n"


def format_frame(event: StreamEvent) -> str:
    payload = event.model_dump_json(by_alias=True, exclude_none=True)
    return f"{FRAME_PREFIX}{payload}{FRAME_SUFFIX}"


def decode_event(frame: str) -> StreamEvent:
    """Parse one `data: {...}` frame (or its bare JSON payload) into a typed event."""
    payload = frame.strip()
    if payload.startswith("data:"):
        payload = payload[len("data:"):].strip()
    return stream_event_adapter.validate_python(json.loads(payload))


class StreamEmitter:
    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._closed = asyncio.Event()
        self._disconnected = asyncio.Event()

    @property
    def disconnected(self) -> bool:
        return self._disconnected.is_set()

    async def emit(self, event: StreamEvent) -> None:
        if self._disconnected.is_set():
            raise StreamTransportError(f"client disconnected, cannot deliver {event.type.value}")
        if self._closed.is_set():
            raise StreamTransportError(f"stream closed, cannot deliver {event.type.value}")

        put = asyncio.ensure_future(self._queue.put(format_frame(event)))
        gone = asyncio.ensure_future(self._disconnected.wait())
        done, _ = await asyncio.wait({put, gone}, return_when=asyncio.FIRST_COMPLETED)
        if put in done:
            gone.cancel()
            return
        put.cancel()
        raise StreamTransportError(f"client disconnected, cannot deliver {event.type.value}")

    def close(self) -> None:
        """No further events. The reader drains what is queued and stops."""
        self._closed.set()

    def disconnect(self) -> None:
        """Called by the transport when the caller goes away."""
        if not self._disconnected.is_set():
            logger.info("Stream consumer disconnected")
        self._disconnected.set()

    async def frames(self) -> AsyncIterator[str]:
        try:
            while True:
                frame = await self._next_frame()
                if frame is None:
                    return
                yield frame
        finally:
            # Generator closed early means the response was torn down
            if not self._closed.is_set():
                self.disconnect()

    async def _next_frame(self) -> Optional[str]:
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._closed.is_set():
            return None

        get = asyncio.ensure_future(self._queue.get())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({get, closed}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            get.cancel()
            closed.cancel()
            raise
        if get in done:
            closed.cancel()
            return get.result()
        get.cancel()
        # A frame may have landed between close and cancel
        if not self._queue.empty():
            return self._queue.get_nowait()
        return None
