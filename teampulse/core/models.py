"""
Domain models for the negotiation analysis pipeline
"""
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Category(str, Enum):
    MANIPULATION = "manipulation"
    COGNITIVE_BIAS = "cognitive_bias"
    RHETOLOGICAL_FALLACY = "rhetological_fallacy"


class AnalysisRequest(BaseModel):
    """Accepted analysis input. Immutable once accepted."""
    model_config = ConfigDict(frozen=True)

    text: str
    client_id: str
    participants: Optional[FrozenSet[str]] = None
    profile: Optional[Dict[str, object]] = None
    source: str = "text"
    filename: Optional[str] = None


class Chunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    text: str
    overlap: int = Field(0, ge=0, description="Characters shared with the previous chunk")

    @property
    def number(self) -> int:
        return self.index + 1


class Finding(BaseModel):
    """A validated per-chunk finding with its span mapped to the original text."""
    category: Category
    label: str
    quote: str
    severity: int = Field(..., ge=1, le=3)
    explanation: str = ""
    chunk_index: int
    global_start: int
    global_end: int


class Highlight(BaseModel):
    id: str
    category: Category
    label: str
    severity: int = Field(..., ge=1, le=3)
    explanation: str = ""
    global_start: int
    global_end: int
    text: str = ""
    source_chunks: List[int] = Field(default_factory=list)

    @property
    def identity(self) -> tuple:
        return (self.category, normalize_label(self.label))


class UsageLedgerEntry(BaseModel):
    day: date
    tokens_used: int = 0
    locked_until: Optional[datetime] = None


class Summary(BaseModel):
    counts_by_category: Dict[str, int]
    top_patterns: List[str] = Field(default_factory=list)
    overall_observations: str = ""
    strategic_assessment: str = ""


class BarometerFactors(BaseModel):
    goal_alignment: float = Field(0.5, ge=0.0, le=1.0)
    manipulation_density: float = Field(0.0, ge=0.0, le=1.0)
    scope_clarity: float = Field(0.5, ge=0.0, le=1.0)
    time_pressure: float = Field(0.0, ge=0.0, le=1.0)
    resource_demand: float = Field(0.5, ge=0.0, le=1.0)


class Barometer(BaseModel):
    score: int = Field(..., ge=0, le=100)
    label: str
    rationale: str = ""
    factors: Optional[BarometerFactors] = None


class AnalysisResult(BaseModel):
    highlights: List[Highlight]
    summary: Summary
    barometer: Barometer
    original_text: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "text"
    filename: Optional[str] = None
    tokens_estimated: int = 0
    failed_chunks: List[int] = Field(default_factory=list)


def normalize_label(label: str) -> str:
    return " ".join(label.lower().split())
