import asyncio
import json
import logging
import re
from typing import Any, List, Optional, Tuple

import httpx
from langchain_core.output_parsers import JsonOutputParser
from langsmith import traceable
from ollama import RequestError, ResponseError
from pydantic import ValidationError

from teampulse.core.analyzer.models import (
    AnalysisContext,
    ChunkFailure,
    ChunkFindingsResponse,
    ChunkOutcome,
    ChunkSuccess,
    RawFinding,
)
from teampulse.core.budget.ledger import TokenBudgetLedger
from teampulse.core.budget.tokens import estimate_tokens
from teampulse.core.errors import BudgetExceeded, ChunkMalformedResponse, ChunkTransportError
from teampulse.core.llm import ChatLLM, LLMReply
from teampulse.core.models import Chunk, Finding
from teampulse.core.prompts.prompt_loader import PromptLoader
from teampulse.core.tracing_config import get_metadata

logger = logging.getLogger("chunk_analyzer")

TRANSPORT_ERRORS = (
    ResponseError,
    RequestError,
    httpx.HTTPError,
    ConnectionError,
    asyncio.TimeoutError,
    OSError,
)


FINDING_TEXT_KEYS = ("quote", "span", "text")


def looks_like_finding(obj: Any) -> bool:
    return isinstance(obj, dict) and "category" in obj and any(key in obj for key in FINDING_TEXT_KEYS)


def quote_pattern(quote: str) -> re.Pattern:
    """Case-insensitive pattern for a quote that tolerates any whitespace run."""
    return re.compile(r"\s+".join(re.escape(token) for token in quote.split()), re.IGNORECASE)


def locate_quote(text: str, quote: str, cursor: int = 0) -> Optional[Tuple[int, int]]:
    """
    Find `quote` in `text`, scanning forward from `cursor` first so repeated
    phrases map to successive occurrences, then from the beginning.
    """
    if not quote.split():
        return None
    pattern = quote_pattern(quote)
    match = pattern.search(text, cursor) or pattern.search(text, 0)
    if match is None:
        return None
    return match.start(), match.end()


class ChunkAnalyzer:
    """
    Sends one chunk to the LLM and turns the reply into validated findings
    with global offsets.

    Transport and parse problems come back as ChunkFailure values. Only a
    budget lockout seen before dispatch is raised.
    """

    def __init__(
        self,
        llm: ChatLLM,
        ledger: TokenBudgetLedger,
        timeout_seconds: float = 60.0,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ):
        self.llm = llm
        self.ledger = ledger
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.parser = JsonOutputParser(pydantic_object=ChunkFindingsResponse)
        self.system_prompt = PromptLoader.load_prompt("chunk_analysis_prompt.yaml")

    def build_messages(self, chunk: Chunk, context: AnalysisContext) -> list[dict]:
        payload = {
            "fragment": {"index": chunk.index, "text": chunk.text},
            "participants": sorted(context.participants) if context.participants else None,
            "client_context": context.client_context,
            "constraints": {
                "highlight_limit_per_1000_words": context.highlight_limit_per_1000_words,
            },
        }
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]

    @traceable(run_type="chain", name="chunk_analysis", metadata=get_metadata("chunk_analyzer"))
    async def analyze(self, chunk: Chunk, context: AnalysisContext) -> ChunkOutcome:
        await self.ledger.ensure_unlocked()

        try:
            reply = await asyncio.wait_for(
                self.llm.chat(
                    self.build_messages(chunk, context),
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    schema=ChunkFindingsResponse,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Chunk {chunk.number}: LLM call timed out after {self.timeout_seconds}s")
            return ChunkFailure(
                chunk, ChunkTransportError(chunk.index, f"LLM request timed out after {self.timeout_seconds}s")
            )
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Chunk {chunk.number}: LLM transport error: {e}")
            return ChunkFailure(chunk, ChunkTransportError(chunk.index, f"LLM request failed: {e}"))

        prompt_tokens, completion_tokens = self._usage(chunk, reply)
        budget_error = None
        try:
            # The reservation covered the chunk text; charge what went beyond it
            extra_prompt = max(0, prompt_tokens - estimate_tokens(chunk.text))
            await self.ledger.charge(completion_tokens + extra_prompt)
        except BudgetExceeded as e:
            logger.warning(f"Chunk {chunk.number}: charging usage tripped the daily limit")
            budget_error = e

        try:
            raw_items = self.parse_items(reply.content, chunk.index)
        except ChunkMalformedResponse as e:
            logger.warning(f"Chunk {chunk.number}: malformed LLM response: {e}")
            return ChunkFailure(chunk, e)

        findings, dropped = self.map_findings(chunk, raw_items)
        logger.info(f"Chunk {chunk.number}: {len(findings)} findings ({dropped} dropped)")
        return ChunkSuccess(
            chunk=chunk,
            findings=findings,
            dropped=dropped,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            budget_error=budget_error,
        )

    @staticmethod
    def _usage(chunk: Chunk, reply: LLMReply) -> Tuple[int, int]:
        prompt_tokens = reply.prompt_tokens if reply.prompt_tokens is not None else estimate_tokens(chunk.text)
        completion_tokens = (
            reply.completion_tokens if reply.completion_tokens is not None else estimate_tokens(reply.content)
        )
        return prompt_tokens, completion_tokens

    def parse_items(self, content: str, chunk_index: int = -1) -> List[Any]:
        """Extract the list of finding objects from an LLM reply."""
        content = (content or "").strip()
        if not content:
            raise ChunkMalformedResponse(chunk_index, "empty response")

        try:
            data = self.parser.parse(content)
        except ValueError:
            data = None

        if isinstance(data, dict) and isinstance(data.get("findings"), list):
            return data["findings"]
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and "findings" in data:
            raise ChunkMalformedResponse(chunk_index, f"findings is not a list: {content[:100]}")

        items = self._items_per_line(content)
        if items:
            return items
        if looks_like_finding(data):
            return [data]

        raise ChunkMalformedResponse(chunk_index, f"no findings list in response: {content[:100]}")

    @staticmethod
    def _items_per_line(content: str) -> List[Any]:
        # Some models stream one JSON object per line instead
        items: List[Any] = []
        for line in content.splitlines():
            line = line.strip().rstrip(",")
            if not line.startswith("{"):
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Skipping unparseable line: {line[:80]}")
                continue
            if isinstance(obj, dict) and isinstance(obj.get("findings"), list):
                items.extend(obj["findings"])
            elif looks_like_finding(obj):
                items.append(obj)
        return items

    def map_findings(self, chunk: Chunk, raw_items: List[Any]) -> Tuple[List[Finding], int]:
        findings: List[Finding] = []
        dropped = 0
        cursor = 0
        for item in raw_items:
            if not isinstance(item, dict):
                dropped += 1
                continue
            try:
                raw = RawFinding.model_validate(item)
            except ValidationError as e:
                logger.debug(f"Chunk {chunk.number}: dropping invalid finding: {e.errors()[:1]}")
                dropped += 1
                continue

            span = locate_quote(chunk.text, raw.quote, cursor)
            if span is None:
                logger.debug(f"Chunk {chunk.number}: quote not found in chunk: {raw.quote[:60]!r}")
                dropped += 1
                continue

            local_start, local_end = span
            cursor = local_end
            findings.append(
                Finding(
                    category=raw.category,
                    label=raw.label,
                    quote=chunk.text[local_start:local_end],
                    severity=raw.severity,
                    explanation=raw.explanation,
                    chunk_index=chunk.index,
                    global_start=chunk.start + local_start,
                    global_end=chunk.start + local_end,
                )
            )
        return findings, dropped
