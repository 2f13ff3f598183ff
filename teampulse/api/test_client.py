import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from teampulse.api.client import AnalysisStreamClient, iter_events
from teampulse.api.stream import format_frame
from teampulse.core.events import CompleteEvent, EventType, ProgressEvent


async def stream_lines(payload: str):
    for line in payload.splitlines(keepends=True):
        yield line.encode("utf-8")


async def test_iter_events_groups_frames():
    payload = format_frame(ProgressEvent(progress=30)) + format_frame(CompleteEvent(total_highlights=2))

    events = [event async for event in iter_events(stream_lines(payload))]

    assert [event.type for event in events] == [EventType.PROGRESS, EventType.COMPLETE]
    assert events[1].total_highlights == 2


async def test_iter_events_flushes_unterminated_frame():
    payload = 'data: {"type": "progress", "progress": 90}'

    events = [event async for event in iter_events(stream_lines(payload))]

    assert events[0].progress == 90


@pytest.fixture
async def api_server():
    async def analyze(request):
        body = await request.json()
        if not body.get("client_id"):
            return web.json_response({"detail": "client_id is required"}, status=400)
        frames = format_frame(ProgressEvent(progress=100)) + format_frame(CompleteEvent(total_highlights=0))
        return web.Response(text=frames, content_type="text/event-stream")

    async def usage(request):
        return web.json_response({"used_tokens": 10, "total_tokens": 100})

    app = web.Application()
    app.router.add_post("/api/analyze", analyze)
    app.router.add_get("/api/usage", usage)
    server = TestServer(app)
    await server.start_server()
    yield str(server.make_url("/"))
    await server.close()


async def test_client_streams_typed_events(api_server):
    client = AnalysisStreamClient(base_url=api_server)

    events = [event async for event in client.analyze("Anna: sign today.", client_id="c1")]

    assert [event.type for event in events] == [EventType.PROGRESS, EventType.COMPLETE]


async def test_client_raises_http_errors(api_server):
    client = AnalysisStreamClient(base_url=api_server)

    with pytest.raises(aiohttp.ClientResponseError) as exc_info:
        [event async for event in client.analyze("Anna: sign today.", client_id="")]

    assert exc_info.value.status == 400


async def test_client_reads_usage(api_server):
    usage = await AnalysisStreamClient(base_url=api_server).get_usage()

    assert usage == {"used_tokens": 10, "total_tokens": 100}
