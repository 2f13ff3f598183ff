import json

import pytest
from fastapi.testclient import TestClient

from teampulse.api.app import create_app
from teampulse.api.services import assemble_services
from teampulse.api.stream import decode_event
from teampulse.core.budget.memory_store import InMemoryUsageStore
from teampulse.core.config import Config
from teampulse.core.events import EventType
from teampulse.database.stores import InMemoryAnalysisStore

TRANSCRIPT = (
    "Anna: This discount is only valid today, sign now or lose it.\n\n"
    "Mark: We need to review the scope with finance first.\n\n"
    "Anna: Everyone in your sector already signed these terms."
)


class SettingsForTests(Config):
    DAILY_TOKEN_LIMIT = 100_000
    SUMMARY_WITH_LLM = False
    CHUNK_SIZE_CHARS = 6000
    CHUNK_OVERLAP_CHARS = 400
    MAX_CONCURRENT_CHUNKS = 2
    MIN_TEXT_CHARS = 20
    MAX_TEXT_CHARS = 100000
    MAX_HIGHLIGHTS_PER_1000_WORDS = 12


def urgency_reply(messages):
    return json.dumps({"findings": [{
        "category": "manipulation",
        "label": "False urgency",
        "quote": "sign now or lose it",
        "severity": 3,
        "explanation": "Deadline pressure.",
    }]})


@pytest.fixture
def services(fake_llm_factory):
    return assemble_services(
        fake_llm_factory(urgency_reply),
        InMemoryUsageStore(),
        InMemoryAnalysisStore(),
        SettingsForTests(),
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def read_events(response):
    return [decode_event(frame) for frame in response.text.split("\n\n") if frame.strip()]


def test_analyze_json_streams_events(client, services):
    response = client.post("/api/analyze", json={"client_id": "client-1", "text": TRANSCRIPT, "method": "text"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = read_events(response)
    assert events[0].type == EventType.ANALYSIS_STARTED
    assert events[-1].type == EventType.COMPLETE
    [highlight] = [e for e in events if e.type == EventType.HIGHLIGHT]
    assert highlight.text == "sign now or lose it"

    [saved] = services.analysis_store.analyses.values()
    assert saved["client_id"] == "client-1"
    assert saved["source"] == "text"


def test_analyze_multipart_with_text_file(client, services):
    response = client.post(
        "/api/analyze",
        data={"client_id": "client-2", "participants": json.dumps(["Anna"]), "profile": json.dumps({"company": "Acme"})},
        files={"file": ("call.txt", TRANSCRIPT.encode("utf-8"), "text/plain")},
    )

    assert response.status_code == 200
    assert read_events(response)[-1].type == EventType.COMPLETE
    [saved] = services.analysis_store.analyses.values()
    assert saved["source"] == "file"
    assert saved["original_filename"] == "call.txt"


def test_unsupported_file_type_is_rejected(client):
    response = client.post(
        "/api/analyze",
        data={"client_id": "client-2"},
        files={"file": ("call.pdf", b"%PDF-1.4", "application/pdf")},
    )

    assert response.status_code == 415


class SmallUploadSettings(SettingsForTests):
    MAX_TEXT_CHARS = 200


def test_oversized_upload_is_rejected_before_budget(fake_llm_factory):
    services = assemble_services(
        fake_llm_factory(urgency_reply),
        InMemoryUsageStore(),
        InMemoryAnalysisStore(),
        SmallUploadSettings(),
    )
    oversized = ("Anna: sign now or lose it. " * 40).encode("utf-8")

    with TestClient(create_app(services)) as client:
        response = client.post(
            "/api/analyze",
            data={"client_id": "client-2"},
            files={"file": ("call.txt", oversized, "text/plain")},
        )

        assert len(oversized) > 200 * 4
        assert response.status_code == 413
        assert client.get("/api/usage").json()["used_tokens"] == 0
    assert services.analysis_store.analyses == {}


@pytest.mark.parametrize(
    "body",
    [
        {"text": TRANSCRIPT},
        {"client_id": "c1"},
        {"client_id": "c1", "text": TRANSCRIPT, "participants": "Anna"},
        {"client_id": "c1", "text": TRANSCRIPT, "method": "file"},
    ],
)
def test_malformed_json_is_rejected_before_budget(client, body):
    response = client.post("/api/analyze", json=body)

    assert response.status_code == 400
    assert client.get("/api/usage").json()["used_tokens"] == 0


def test_multipart_without_text_or_file_is_rejected(client):
    response = client.post("/api/analyze", data={"client_id": "c1"}, files={"unused": ("a.bin", b"", "x/y")})

    assert response.status_code == 400


def test_too_short_text_ends_with_fatal_error(client):
    response = client.post("/api/analyze", json={"client_id": "c1", "text": "hi"})

    [event] = read_events(response)
    assert event.type == EventType.ERROR
    assert event.fatal is True
    assert event.code == "VALIDATION_ERROR"


def test_usage_reflects_analysis(client):
    client.post("/api/analyze", json={"client_id": "c1", "text": TRANSCRIPT})

    usage = client.get("/api/usage").json()

    assert usage["used_tokens"] > 0
    assert usage["total_tokens"] == 100_000
    assert usage["percentage"] == round(usage["used_tokens"] / 100_000 * 100, 2)
    assert usage["locked_until"] is None


def test_participants_endpoint(client):
    response = client.post("/api/participants", json={"text": TRANSCRIPT})

    assert response.json() == {"participants": ["Anna", "Mark"], "total": 2}


def test_health(client):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["services"]["llm"] == "fake-model"
    assert body["services"]["storage"] == "memory"
