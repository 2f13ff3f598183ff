"""
Models exchanged with the LLM during chunk analysis, and the per-chunk
outcome types returned to the orchestrator.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator

from teampulse.core.errors import BudgetExceeded, ChunkError
from teampulse.core.models import Category, Chunk, Finding

_CATEGORY_ALIASES = {
    "rhetorical_fallacy": Category.RHETOLOGICAL_FALLACY.value,
    "fallacy": Category.RHETOLOGICAL_FALLACY.value,
    "bias": Category.COGNITIVE_BIAS.value,
    "manipulative": Category.MANIPULATION.value,
}


class RawFinding(BaseModel):
    """One finding exactly as the LLM reports it, before span mapping."""
    category: Category
    label: str = Field(..., min_length=1)
    quote: str = Field(..., min_length=1, validation_alias=AliasChoices("quote", "span", "text"))
    severity: int = Field(..., ge=1, le=3)
    explanation: str = ""

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, value: Any) -> Any:
        if isinstance(value, str):
            key = value.strip().lower().replace(" ", "_").replace("-", "_")
            return _CATEGORY_ALIASES.get(key, key)
        return value

    @field_validator("label", "quote", "explanation", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class ChunkFindingsResponse(BaseModel):
    """JSON schema requested from the LLM for a chunk."""
    findings: List[RawFinding] = Field(default_factory=list)


@dataclass(frozen=True)
class AnalysisContext:
    participants: Optional[FrozenSet[str]] = None
    client_context: Dict[str, Any] = field(default_factory=dict)
    highlight_limit_per_1000_words: int = 12


@dataclass
class ChunkSuccess:
    chunk: Chunk
    findings: List[Finding]
    dropped: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    # Set when charging this call's tokens tripped the daily lockout
    budget_error: Optional[BudgetExceeded] = None


@dataclass
class ChunkFailure:
    chunk: Chunk
    error: ChunkError


ChunkOutcome = Union[ChunkSuccess, ChunkFailure]


def build_client_context(profile: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shape a client profile into the context block sent with every prompt."""
    profile = profile or {}

    def text(key: str, *fallbacks: str) -> str:
        for name in (key, *fallbacks):
            value = profile.get(name)
            if value:
                return str(value)
        return ""

    try:
        weekly_hours = int(profile.get("weekly_hours") or 0)
    except (TypeError, ValueError):
        weekly_hours = 0

    return {
        "about_client": {
            "company": text("company"),
            "negotiator": text("negotiator"),
            "sector": text("sector"),
        },
        "decision_criteria": text("criteria", "decision_criteria"),
        "constraints": text("constraints"),
        "user_goals": text("user_goals", "goal"),
        "client_goals": text("client_goals"),
        "weekly_hours": weekly_hours,
        "offered_services": text("offered_services"),
        "deadlines": text("deadlines"),
        "notes": text("notes"),
    }
