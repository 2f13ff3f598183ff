"""
Typed events produced by an analysis run, in the order a consumer sees them:
analysis_started, then highlight/merged_highlights/progress/error while
chunks resolve, then merged_highlights, summary, barometer and complete.
A run that aborts ends with a single fatal error instead of complete.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from teampulse.core.models import Barometer, Highlight, Summary


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    ANALYSIS_STARTED = "analysis_started"
    PROGRESS = "progress"
    HIGHLIGHT = "highlight"
    MERGED_HIGHLIGHTS = "merged_highlights"
    SUMMARY = "summary"
    BAROMETER = "barometer"
    ERROR = "error"
    COMPLETE = "complete"


class AnalysisStartedEvent(BaseModel):
    """Input accepted and budget reserved"""
    type: Literal[EventType.ANALYSIS_STARTED] = EventType.ANALYSIS_STARTED
    total_chunks: int
    tokens_estimated: int
    participants: Optional[List[str]] = None
    timestamp: datetime = Field(default_factory=_utc_now)


class ProgressEvent(BaseModel):
    type: Literal[EventType.PROGRESS] = EventType.PROGRESS
    progress: int = Field(..., ge=0, le=100)
    resolved_chunks: int = 0
    total_chunks: int = 0


class HighlightEvent(Highlight):
    """A highlight seen for the first time"""
    type: Literal[EventType.HIGHLIGHT] = EventType.HIGHLIGHT


class MergedHighlightsEvent(BaseModel):
    """The current canonical highlight list"""
    type: Literal[EventType.MERGED_HIGHLIGHTS] = EventType.MERGED_HIGHLIGHTS
    items: List[Highlight]


class SummaryEvent(Summary):
    type: Literal[EventType.SUMMARY] = EventType.SUMMARY


class BarometerEvent(Barometer):
    type: Literal[EventType.BAROMETER] = EventType.BAROMETER


class ErrorEvent(BaseModel):
    """Chunk-level (fatal=False) or run-level (fatal=True) error"""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal[EventType.ERROR] = EventType.ERROR
    chunk_number: Optional[int] = Field(None, alias="chunkNumber", ge=1)
    message: str
    code: str
    fatal: bool = False
    locked_until: Optional[datetime] = None


class CompleteEvent(BaseModel):
    type: Literal[EventType.COMPLETE] = EventType.COMPLETE
    total_highlights: int
    failed_chunks: List[int] = Field(default_factory=list)
    tokens_estimated: int = 0
    timestamp: datetime = Field(default_factory=_utc_now)


StreamEvent = Annotated[
    Union[
        AnalysisStartedEvent,
        ProgressEvent,
        HighlightEvent,
        MergedHighlightsEvent,
        SummaryEvent,
        BarometerEvent,
        ErrorEvent,
        CompleteEvent,
    ],
    Field(discriminator="type"),
]

stream_event_adapter = TypeAdapter(StreamEvent)
