"""
FastAPI Routes for the negotiation analysis service
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from starlette.datastructures import FormData

from teampulse.api.schemas import (
    AnalyzeRequest,
    ClientProfile,
    HealthResponse,
    ParticipantsRequest,
    ParticipantsResponse,
    UsageResponse,
)
from teampulse.api.services import AnalysisServices
from teampulse.api.stream import StreamEmitter
from teampulse.core.models import AnalysisRequest
from teampulse.core.text import detect_participants, normalize_text
from teampulse.core.tracing_config import IS_TRACING_ENABLED

logger = logging.getLogger("api")

API_VERSION = "0.1.0"
SUPPORTED_UPLOADS = (".txt",)
# UTF-8 needs at most four bytes per character
BYTES_PER_CHAR = 4

# ============================================================================
# Router Setup
# ============================================================================

router = APIRouter(prefix="/api", tags=["negotiation-analysis"])
health_router = APIRouter(tags=["health"])


def get_services(request: Request) -> AnalysisServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


# ============================================================================
# Request parsing
# ============================================================================

def _participants_from(value: Any) -> Optional[frozenset]:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise HTTPException(status_code=400, detail="participants must be a list of names")
    names = frozenset(v.strip() for v in value if v.strip())
    return names or None


def _profile_from(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        profile = ClientProfile.model_validate(json.loads(value))
    except (json.JSONDecodeError, ValidationError):
        raise HTTPException(status_code=400, detail="profile must be a JSON object")
    return profile.model_dump(exclude_none=True)


async def _read_upload(upload: UploadFile, max_bytes: int) -> str:
    filename = upload.filename or ""
    if not filename.lower().endswith(SUPPORTED_UPLOADS):
        raise HTTPException(status_code=415, detail=f"Unsupported file type: {filename or 'unnamed'}")
    if upload.size is not None and upload.size > max_bytes:
        raise HTTPException(status_code=413, detail="Uploaded file is too large")
    raw = await upload.read(max_bytes + 1)
    if len(raw) > max_bytes:
        raise HTTPException(status_code=413, detail="Uploaded file is too large")
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Uploaded file is not valid UTF-8 text")


async def _request_from_json(request: Request) -> AnalysisRequest:
    try:
        body = AnalyzeRequest.model_validate(await request.json())
    except (json.JSONDecodeError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid analyze request: {e}")

    return AnalysisRequest(
        text=body.text,
        client_id=body.client_id,
        participants=_participants_from(body.participants),
        profile=body.profile.model_dump(exclude_none=True) if body.profile else None,
        source="text",
    )


async def _request_from_form(form: FormData, max_upload_bytes: int) -> AnalysisRequest:
    client_id = form.get("client_id")
    if not isinstance(client_id, str) or not client_id.strip():
        raise HTTPException(status_code=400, detail="client_id is required")

    upload = form.get("file")
    inline_text = form.get("text")
    inline_text = inline_text if isinstance(inline_text, str) else ""

    file_text = ""
    filename = None
    if upload is not None and not isinstance(upload, str):
        file_text = await _read_upload(upload, max_upload_bytes)
        filename = upload.filename

    if not file_text and not inline_text.strip():
        raise HTTPException(status_code=400, detail="Provide text or a file to analyze")

    participants: List[str] = form.getlist("participants")
    if len(participants) == 1 and participants[0].lstrip().startswith("["):
        try:
            parsed = json.loads(participants[0])
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="participants must be a JSON list")
        participants = parsed

    profile = form.get("profile")
    return AnalysisRequest(
        text="\n\n".join(part for part in (file_text, inline_text) if part.strip()),
        client_id=client_id.strip(),
        participants=_participants_from(participants) if participants else None,
        profile=_profile_from(profile if isinstance(profile, str) else None),
        source="file" if filename else "text",
        filename=filename,
    )


# ============================================================================
# REST Endpoints
# ============================================================================

@router.post("/analyze")
async def analyze(request: Request):
    """Start an analysis and stream its events as text/event-stream"""
    services = get_services(request)

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        async with request.form() as form:
            max_upload_bytes = services.settings.MAX_TEXT_CHARS * BYTES_PER_CHAR
            analysis_request = await _request_from_form(form, max_upload_bytes)
    elif content_type.startswith("application/json"):
        analysis_request = await _request_from_json(request)
    else:
        raise HTTPException(status_code=400, detail="Send application/json or multipart/form-data")

    emitter = StreamEmitter()
    orchestrator = services.new_orchestrator()
    task = asyncio.create_task(orchestrator.run(analysis_request, emitter))

    # Keep a reference so the run is not garbage collected mid-flight
    running = request.app.state.analysis_tasks
    running.add(task)
    task.add_done_callback(running.discard)

    return StreamingResponse(
        emitter.frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
    )


@router.post("/participants", response_model=ParticipantsResponse)
async def participants(body: ParticipantsRequest):
    """Detect speaker names for the participant filter"""
    names = detect_participants(normalize_text(body.text))
    return ParticipantsResponse(participants=names, total=len(names))


@router.get("/usage", response_model=UsageResponse)
async def usage(request: Request):
    """Token consumption for the current UTC day"""
    services = get_services(request)
    entry = await services.ledger.status()
    total = services.ledger.daily_limit
    return UsageResponse(
        day=entry.day,
        used_tokens=entry.tokens_used,
        total_tokens=total,
        percentage=round(entry.tokens_used / total * 100, 2),
        locked_until=entry.locked_until,
    )


# ============================================================================
# Health Check
# ============================================================================

@health_router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    services = get_services(request)
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=API_VERSION,
        services={
            "llm": services.model_name,
            "storage": services.storage,
            "tracing": "enabled" if IS_TRACING_ENABLED else "disabled",
        },
    )
