import asyncio
import json
import logging
import math
from collections import Counter
from typing import List, Optional, Tuple

from langchain_core.output_parsers import JsonOutputParser
from langsmith import traceable
from pydantic import BaseModel, Field, ValidationError

from teampulse.core.analyzer.chunk_analyzer import TRANSPORT_ERRORS
from teampulse.core.analyzer.models import AnalysisContext
from teampulse.core.budget.ledger import TokenBudgetLedger
from teampulse.core.budget.tokens import estimate_tokens
from teampulse.core.errors import BudgetExceeded
from teampulse.core.llm import ChatLLM
from teampulse.core.models import Barometer, BarometerFactors, Category, Highlight, Summary
from teampulse.core.prompts.prompt_loader import PromptLoader
from teampulse.core.text import count_words
from teampulse.core.tracing_config import get_metadata

logger = logging.getLogger("summarizer")

TOP_PATTERNS_LIMIT = 5

# Upper score bounds for each barometer label
BAROMETER_LABELS = [
    (15, "Easy mode"),
    (30, "Clear client"),
    (50, "Medium"),
    (70, "High"),
    (85, "Bloody hell"),
    (100, "Mission impossible"),
]


class SummaryNarrative(BaseModel):
    top_patterns: List[str] = Field(default_factory=list)
    overall_observations: str = ""
    strategic_assessment: str = ""


class BarometerDraft(BaseModel):
    score: int = Field(..., ge=0, le=100)
    label: Optional[str] = None
    rationale: str = ""
    factors: Optional[BarometerFactors] = None


class SummaryResponse(BaseModel):
    """JSON schema requested from the LLM for the closing summary."""
    summary: SummaryNarrative
    barometer: BarometerDraft


def barometer_label(score: int) -> str:
    for upper, label in BAROMETER_LABELS:
        if score <= upper:
            return label
    return BAROMETER_LABELS[-1][1]


def count_by_category(highlights: List[Highlight]) -> dict:
    counts = {category.value: 0 for category in Category}
    for h in highlights:
        counts[h.category.value] += 1
    return counts


def top_patterns(highlights: List[Highlight], limit: int = TOP_PATTERNS_LIMIT) -> List[str]:
    """Most frequent labels, ties broken by highest severity then first appearance."""
    frequency = Counter()
    severity = {}
    first_label = {}
    for h in highlights:
        key = " ".join(h.label.lower().split())
        frequency[key] += 1
        severity[key] = max(severity.get(key, 0), h.severity)
        first_label.setdefault(key, h.label)
    ranked = sorted(frequency, key=lambda k: (-frequency[k], -severity[k]))
    return [first_label[key] for key in ranked[:limit]]


class Summarizer:
    """
    Builds the closing summary and difficulty barometer.

    Counts are always computed from the highlights. The narrative and
    barometer come from one LLM call when a client is configured; if that
    call is unavailable, fails, or the budget is locked, a deterministic
    severity-weighted formula is used instead.
    """

    def __init__(
        self,
        llm: Optional[ChatLLM] = None,
        ledger: Optional[TokenBudgetLedger] = None,
        highlights_per_1000_words: int = 12,
        timeout_seconds: float = 60.0,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ):
        self.llm = llm
        self.ledger = ledger
        self.highlights_per_1000_words = highlights_per_1000_words
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.parser = JsonOutputParser(pydantic_object=SummaryResponse)
        self.system_prompt = PromptLoader.load_prompt("summary_prompt.yaml")

    async def summarize(
        self, highlights: List[Highlight], text: str, context: AnalysisContext
    ) -> Tuple[Summary, Barometer]:
        counts = count_by_category(highlights)
        fallback_summary = Summary(
            counts_by_category=counts,
            top_patterns=top_patterns(highlights),
            overall_observations=self.describe_counts(counts),
        )
        fallback_barometer = self.compute_barometer(highlights, text)

        if self.llm is None:
            return fallback_summary, fallback_barometer

        response = await self._ask_llm(highlights, counts, context)
        if response is None:
            return fallback_summary, fallback_barometer

        summary = Summary(
            counts_by_category=counts,
            top_patterns=response.summary.top_patterns[:TOP_PATTERNS_LIMIT] or fallback_summary.top_patterns,
            overall_observations=response.summary.overall_observations or fallback_summary.overall_observations,
            strategic_assessment=response.summary.strategic_assessment,
        )
        draft = response.barometer
        barometer = Barometer(
            score=draft.score,
            label=barometer_label(draft.score),
            rationale=draft.rationale or fallback_barometer.rationale,
            factors=draft.factors or fallback_barometer.factors,
        )
        return summary, barometer

    def compute_barometer(self, highlights: List[Highlight], text: str) -> Barometer:
        """
        Severity-weighted difficulty score. A transcript that reaches the
        highlight density cap with every highlight at severity 3 scores 100.
        """
        words = count_words(text)
        cap = max(1, math.floor(words / 1000 * self.highlights_per_1000_words))
        weighted = sum(h.severity for h in highlights)
        score = min(100, round(100 * weighted / (3 * cap)))

        manipulation = sum(1 for h in highlights if h.category == Category.MANIPULATION)
        density = min(1.0, len(highlights) / cap)
        factors = BarometerFactors(
            manipulation_density=round(density, 2),
            time_pressure=round(min(1.0, manipulation / cap), 2),
        )
        rationale = (
            f"{len(highlights)} highlights across {words} words "
            f"(severity total {weighted}, density cap {cap})."
        )
        return Barometer(score=score, label=barometer_label(score), rationale=rationale, factors=factors)

    @staticmethod
    def describe_counts(counts: dict) -> str:
        total = sum(counts.values())
        if total == 0:
            return "No manipulation, cognitive biases or fallacies were detected."
        parts = [f"{count} {category.replace('_', ' ')}" for category, count in counts.items() if count]
        return f"Detected {total} highlights: " + ", ".join(parts) + "."

    @traceable(run_type="chain", name="analysis_summary", metadata=get_metadata("summarizer"))
    async def _ask_llm(
        self, highlights: List[Highlight], counts: dict, context: AnalysisContext
    ) -> Optional[SummaryResponse]:
        payload = {
            "counts_by_category": counts,
            "highlights": [
                {
                    "category": h.category.value,
                    "label": h.label,
                    "severity": h.severity,
                    "text": h.text,
                    "explanation": h.explanation,
                }
                for h in highlights
            ],
            "client_context": context.client_context,
        }
        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]

        try:
            if self.ledger is not None:
                await self.ledger.reserve_or_fail(estimate_tokens(messages[1]["content"]))
            reply = await asyncio.wait_for(
                self.llm.chat(
                    messages,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    schema=SummaryResponse,
                ),
                timeout=self.timeout_seconds,
            )
        except BudgetExceeded as e:
            logger.warning(f"Summary LLM skipped, budget locked until {e.locked_until.isoformat()}")
            return None
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Summary LLM call failed, using computed summary: {e!r}")
            return None

        if self.ledger is not None:
            completion = reply.completion_tokens
            if completion is None:
                completion = estimate_tokens(reply.content)
            try:
                await self.ledger.charge(completion)
            except BudgetExceeded:
                logger.warning("Charging summary tokens tripped the daily limit")

        try:
            return SummaryResponse.model_validate(self.parser.parse(reply.content))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Summary LLM returned an unusable response: {e}")
            return None
