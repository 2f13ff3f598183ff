"""
Client for the negotiation analysis API

Shows how a consumer would:
1. Submit a transcript (inline text or a .txt file)
2. Read the event stream as typed events
3. Check the daily token usage
"""
import asyncio
import json
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Iterable, Optional

import aiohttp

from teampulse.api.stream import decode_event
from teampulse.core.events import EventType, StreamEvent


async def iter_events(lines: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    """Group raw stream lines into frames and decode each `data:` payload."""
    data_lines = []
    async for raw in lines:
        line = raw.decode("utf-8").rstrip("\r\n")
        if line.startswith("data:"):
            data_lines.append(line[len("data:"):].lstrip())
        elif not line and data_lines:
            yield decode_event("\n".join(data_lines))
            data_lines = []
    if data_lines:
        yield decode_event("\n".join(data_lines))


class AnalysisStreamClient:
    """Client for the TeamPulse analysis API"""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 600.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def analyze(
        self,
        text: str,
        client_id: str,
        profile: Optional[dict] = None,
        participants: Optional[Iterable[str]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Analyze inline text, yielding events until the stream ends"""
        payload = {"client_id": client_id, "text": text, "method": "text"}
        if profile:
            payload["profile"] = profile
        if participants:
            payload["participants"] = sorted(participants)

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(f"{self.base_url}/api/analyze", json=payload) as response:
                response.raise_for_status()
                async for event in iter_events(response.content):
                    yield event

    async def analyze_file(
        self,
        path: str,
        client_id: str,
        text: str = "",
        profile: Optional[dict] = None,
        participants: Optional[Iterable[str]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Upload a .txt transcript (optionally with extra inline text)"""
        file_path = Path(path)
        form = aiohttp.FormData()
        form.add_field("client_id", client_id)
        if text:
            form.add_field("text", text)
        if profile:
            form.add_field("profile", json.dumps(profile))
        if participants:
            form.add_field("participants", json.dumps(sorted(participants)))
        form.add_field("file", file_path.read_bytes(), filename=file_path.name, content_type="text/plain")

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(f"{self.base_url}/api/analyze", data=form) as response:
                response.raise_for_status()
                async for event in iter_events(response.content):
                    yield event

    async def get_usage(self) -> dict:
        """Get today's token usage"""
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(f"{self.base_url}/api/usage") as response:
                response.raise_for_status()
                return await response.json()

    async def detect_participants(self, text: str) -> list:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(f"{self.base_url}/api/participants", json={"text": text}) as response:
                response.raise_for_status()
                data = await response.json()
                return data["participants"]


# ============================================================================
# Example Usage
# ============================================================================

async def main():
    client = AnalysisStreamClient()

    transcript = (
        "Anna: This offer is only valid today, you have to sign now.\n\n"
        "Mark: We need time to review the scope with our team.\n\n"
        "Anna: Everyone else in your sector already agreed to these terms."
    )

    print("Participants:", await client.detect_participants(transcript))

    async for event in client.analyze(transcript, client_id="demo-client"):
        if event.type == EventType.HIGHLIGHT:
            print(f"[{event.category.value}] {event.label} (severity {event.severity}): {event.text!r}")
        elif event.type == EventType.PROGRESS:
            print(f"Progress: {event.progress}%")
        elif event.type == EventType.ERROR:
            print(f"Error{' (fatal)' if event.fatal else ''}: {event.message}")
        elif event.type == EventType.BAROMETER:
            print(f"Barometer: {event.score} - {event.label}")
        elif event.type == EventType.COMPLETE:
            print(f"Done: {event.total_highlights} highlights")

    print("Usage:", await client.get_usage())


if __name__ == "__main__":
    asyncio.run(main())
