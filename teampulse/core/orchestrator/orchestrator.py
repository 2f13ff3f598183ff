"""
Drives one analysis request from raw text to a stored result.

    VALIDATING -> BUDGET_CHECK -> CHUNKING -> ANALYZING -> SUMMARIZING -> COMPLETE

Validation and budget errors end the run in FAILED with one fatal error
event. Chunk failures are reported inline and the run carries on. If the
caller disconnects while chunks are being analyzed the run is CANCELLED:
no new chunks are dispatched, in-flight calls are allowed to finish and
their results are discarded, and nothing is persisted.
"""
import asyncio
import logging
import math
from enum import Enum
from typing import List, Optional, Protocol, Tuple, Union

from langsmith import traceable

from teampulse.core.analyzer.chunk_analyzer import ChunkAnalyzer
from teampulse.core.analyzer.models import (
    AnalysisContext,
    ChunkFailure,
    ChunkOutcome,
    ChunkSuccess,
    build_client_context,
)
from teampulse.core.budget.ledger import TokenBudgetLedger
from teampulse.core.budget.tokens import PROMPT_OVERHEAD_TOKENS, estimate_tokens
from teampulse.core.chunker.chunker import split
from teampulse.core.errors import (
    AnalysisError,
    BudgetExceeded,
    InputValidationError,
    MergeInvariantViolation,
    StreamTransportError,
)
from teampulse.core.events import (
    AnalysisStartedEvent,
    BarometerEvent,
    CompleteEvent,
    ErrorEvent,
    HighlightEvent,
    MergedHighlightsEvent,
    ProgressEvent,
    StreamEvent,
    SummaryEvent,
)
from teampulse.core.merger.highlight_merger import HighlightMerger
from teampulse.core.models import AnalysisRequest, AnalysisResult, Chunk, Highlight
from teampulse.core.summary.summarizer import Summarizer
from teampulse.core.text import count_words, normalize_text
from teampulse.core.tracing_config import get_metadata

logger = logging.getLogger("orchestrator")

ANALYSIS_PROGRESS_SHARE = 90
SUMMARIZING_PROGRESS = 95
COMPLETE_PROGRESS = 100


class AnalysisState(str, Enum):
    VALIDATING = "validating"
    BUDGET_CHECK = "budget_check"
    CHUNKING = "chunking"
    ANALYZING = "analyzing"
    SUMMARIZING = "summarizing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventSink(Protocol):
    @property
    def disconnected(self) -> bool: ...

    async def emit(self, event: StreamEvent) -> None: ...

    def close(self) -> None: ...


class AnalysisStore(Protocol):
    async def save_analysis(self, client_id: str, result: AnalysisResult) -> str: ...


def apply_density_cap(highlights: List[Highlight], text: str, per_1000_words: int) -> List[Highlight]:
    """Keep at most max(1, words/1000 * limit) highlights, most severe first."""
    allowed = max(1, math.floor(count_words(text) / 1000 * per_1000_words))
    if len(highlights) <= allowed:
        return highlights
    # sorted() is stable, so equal severities keep document order
    kept = sorted(highlights, key=lambda h: -h.severity)[:allowed]
    return sorted(kept, key=lambda h: (h.global_start, h.global_end, h.id))


def progress_for(resolved: int, total: int) -> int:
    if total <= 0:
        return ANALYSIS_PROGRESS_SHARE
    return math.floor(ANALYSIS_PROGRESS_SHARE * resolved / total)


class AnalysisOrchestrator:
    def __init__(
        self,
        ledger: TokenBudgetLedger,
        analyzer: ChunkAnalyzer,
        summarizer: Summarizer,
        store: Optional[AnalysisStore] = None,
        chunk_size_chars: int = 6000,
        chunk_overlap_chars: int = 400,
        max_concurrent_chunks: int = 4,
        min_text_chars: int = 20,
        max_text_chars: int = 100000,
        highlights_per_1000_words: int = 12,
    ):
        if max_concurrent_chunks < 1:
            raise ValueError("max_concurrent_chunks must be at least 1")
        self.ledger = ledger
        self.analyzer = analyzer
        self.summarizer = summarizer
        self.store = store
        self.chunk_size_chars = chunk_size_chars
        self.chunk_overlap_chars = chunk_overlap_chars
        self.max_concurrent_chunks = max_concurrent_chunks
        self.min_text_chars = min_text_chars
        self.max_text_chars = max_text_chars
        self.highlights_per_1000_words = highlights_per_1000_words

        self.state = AnalysisState.VALIDATING
        self.analysis_id: Optional[str] = None
        self._stop_dispatch = asyncio.Event()

    @traceable(run_type="chain", name="negotiation_analysis", metadata=get_metadata("orchestrator"))
    async def run(self, request: AnalysisRequest, emitter: EventSink) -> Optional[AnalysisResult]:
        """
        Run the full pipeline, streaming events to `emitter`.

        The stream always ends with exactly one `complete` or one fatal
        `error` event (unless the caller is already gone), and the emitter
        is closed on every path.
        """
        try:
            return await self._execute(request, emitter)
        except InputValidationError as e:
            self.state = AnalysisState.FAILED
            logger.info(f"Rejected analysis input: {e}")
            await self._emit_fatal(emitter, ErrorEvent(message=str(e), code=e.code, fatal=True))
        except BudgetExceeded as e:
            self.state = AnalysisState.FAILED
            logger.warning(f"Analysis blocked by token budget until {e.locked_until.isoformat()}")
            await self._emit_fatal(
                emitter,
                ErrorEvent(message=str(e), code=e.code, fatal=True, locked_until=e.locked_until),
            )
        except StreamTransportError:
            self.state = AnalysisState.CANCELLED
            logger.info("Caller disconnected before analysis started")
        except Exception:
            self.state = AnalysisState.FAILED
            logger.exception("Unexpected error during analysis")
            await self._emit_fatal(
                emitter,
                ErrorEvent(message="Internal error during analysis", code=AnalysisError.code, fatal=True),
            )
        finally:
            emitter.close()
        return None

    async def _execute(self, request: AnalysisRequest, emitter: EventSink) -> Optional[AnalysisResult]:
        self.state = AnalysisState.VALIDATING
        text = normalize_text(request.text)
        if len(text) < self.min_text_chars:
            raise InputValidationError(f"Text is too short: at least {self.min_text_chars} characters required")
        if len(text) > self.max_text_chars:
            raise InputValidationError(f"Text is too long: at most {self.max_text_chars} characters allowed")

        self.state = AnalysisState.BUDGET_CHECK
        tokens_estimated = estimate_tokens(text) + PROMPT_OVERHEAD_TOKENS
        await self.ledger.reserve_or_fail(tokens_estimated)

        self.state = AnalysisState.CHUNKING
        chunks = split(text, self.chunk_size_chars, self.chunk_overlap_chars)
        if not chunks:
            raise InputValidationError("Text contains nothing to analyze")

        context = AnalysisContext(
            participants=request.participants,
            client_context=build_client_context(request.profile),
            highlight_limit_per_1000_words=self.highlights_per_1000_words,
        )
        logger.info(
            f"Analyzing {len(text)} chars for client {request.client_id} "
            f"in {len(chunks)} chunks (~{tokens_estimated} tokens)"
        )
        await emitter.emit(
            AnalysisStartedEvent(
                total_chunks=len(chunks),
                tokens_estimated=tokens_estimated,
                participants=sorted(request.participants) if request.participants else None,
            )
        )

        self.state = AnalysisState.ANALYZING
        merger = HighlightMerger(text)
        failed_chunks = await self._analyze_chunks(chunks, context, merger, emitter)
        if self.state is AnalysisState.CANCELLED:
            logger.info(f"Analysis for client {request.client_id} cancelled, results discarded")
            return None

        self.state = AnalysisState.SUMMARIZING
        try:
            highlights = merger.finalize()
        except MergeInvariantViolation as e:
            logger.error(f"Highlight merge invariant violated, using best-effort list: {e}")
            highlights = merger.snapshot()
        highlights = apply_density_cap(highlights, text, self.highlights_per_1000_words)
        await self._emit_tail(emitter, ProgressEvent(
            progress=SUMMARIZING_PROGRESS, resolved_chunks=len(chunks), total_chunks=len(chunks)
        ))

        summary, barometer = await self.summarizer.summarize(highlights, text, context)

        await self._emit_tail(emitter, MergedHighlightsEvent(items=highlights))
        await self._emit_tail(emitter, SummaryEvent(**summary.model_dump()))
        await self._emit_tail(emitter, BarometerEvent(**barometer.model_dump()))
        await self._emit_tail(emitter, ProgressEvent(
            progress=COMPLETE_PROGRESS, resolved_chunks=len(chunks), total_chunks=len(chunks)
        ))

        self.state = AnalysisState.COMPLETE
        result = AnalysisResult(
            highlights=highlights,
            summary=summary,
            barometer=barometer,
            original_text=text,
            source=request.source,
            filename=request.filename,
            tokens_estimated=tokens_estimated,
            failed_chunks=failed_chunks,
        )
        await self._emit_tail(emitter, CompleteEvent(
            total_highlights=len(highlights),
            failed_chunks=failed_chunks,
            tokens_estimated=tokens_estimated,
        ))

        await self._persist(request.client_id, result)
        return result

    async def _analyze_chunks(
        self,
        chunks: List[Chunk],
        context: AnalysisContext,
        merger: HighlightMerger,
        emitter: EventSink,
    ) -> List[int]:
        semaphore = asyncio.Semaphore(self.max_concurrent_chunks)
        total = len(chunks)
        resolved = 0
        failed: List[int] = []

        async def dispatch(chunk: Chunk) -> Tuple[Chunk, Union[ChunkOutcome, BudgetExceeded, None]]:
            async with semaphore:
                if emitter.disconnected:
                    self._cancel()
                if self._stop_dispatch.is_set():
                    return chunk, None
                # Stop is signalled before the semaphore is released so no queued chunk slips through
                try:
                    outcome = await self.analyzer.analyze(chunk, context)
                except BudgetExceeded as e:
                    self._stop_dispatch.set()
                    return chunk, e
                if isinstance(outcome, ChunkSuccess) and outcome.budget_error is not None:
                    self._stop_dispatch.set()
                return chunk, outcome

        tasks = [asyncio.create_task(dispatch(chunk)) for chunk in chunks]
        try:
            for next_done in asyncio.as_completed(tasks):
                chunk, outcome = await next_done
                resolved += 1
                if self.state is AnalysisState.CANCELLED:
                    continue

                if outcome is None:
                    logger.info(f"Chunk {chunk.number} skipped, dispatch stopped")
                    failed.append(chunk.number)
                elif isinstance(outcome, BudgetExceeded):
                    if chunk.index == 0:
                        raise outcome
                    self._stop_dispatch.set()
                    failed.append(chunk.number)
                    await self._publish(emitter, ErrorEvent(
                        chunk_number=chunk.number,
                        message=str(outcome),
                        code=outcome.code,
                        locked_until=outcome.locked_until,
                    ))
                elif isinstance(outcome, ChunkFailure):
                    failed.append(chunk.number)
                    await self._publish(emitter, ErrorEvent(
                        chunk_number=chunk.number,
                        message=str(outcome.error),
                        code=outcome.error.code,
                    ))
                else:
                    await self._publish_findings(emitter, merger, outcome)

                await self._publish(emitter, ProgressEvent(
                    progress=progress_for(resolved, total), resolved_chunks=resolved, total_chunks=total
                ))
        finally:
            pending = [task for task in tasks if not task.done()]
            if pending:
                self._stop_dispatch.set()
                await asyncio.gather(*pending, return_exceptions=True)

        return sorted(failed)

    async def _publish_findings(self, emitter: EventSink, merger: HighlightMerger, outcome: ChunkSuccess) -> None:
        for highlight in merger.ingest(outcome.findings, outcome.chunk):
            await self._publish(emitter, HighlightEvent(**highlight.model_dump()))
        if merger.last_merge_count:
            await self._publish(emitter, MergedHighlightsEvent(items=merger.snapshot()))

        if outcome.budget_error is not None:
            # Findings of this chunk are kept; nothing more is dispatched
            self._stop_dispatch.set()
            await self._publish(emitter, ErrorEvent(
                chunk_number=outcome.chunk.number,
                message=str(outcome.budget_error),
                code=outcome.budget_error.code,
                locked_until=outcome.budget_error.locked_until,
            ))

    async def _publish(self, emitter: EventSink, event: StreamEvent) -> None:
        """Emit during analysis; a lost caller cancels the run."""
        if self.state is AnalysisState.CANCELLED:
            return
        try:
            await emitter.emit(event)
        except StreamTransportError:
            logger.info("Caller disconnected during analysis, cancelling")
            self._cancel()

    async def _emit_tail(self, emitter: EventSink, event: StreamEvent) -> None:
        """Emit after analysis; the run still completes and persists if the caller left."""
        if emitter.disconnected:
            return
        try:
            await emitter.emit(event)
        except StreamTransportError:
            logger.info(f"Caller disconnected, {event.type.value} not delivered")

    async def _emit_fatal(self, emitter: EventSink, event: ErrorEvent) -> None:
        try:
            await emitter.emit(event)
        except StreamTransportError:
            logger.info(f"Caller disconnected, fatal {event.code} not delivered")

    def _cancel(self) -> None:
        self.state = AnalysisState.CANCELLED
        self._stop_dispatch.set()

    async def _persist(self, client_id: str, result: AnalysisResult) -> None:
        if self.store is None:
            return
        try:
            self.analysis_id = await self.store.save_analysis(client_id, result)
            logger.info(f"Stored analysis {self.analysis_id} for client {client_id}")
        except Exception:
            logger.exception(f"Failed to store analysis for client {client_id}")
