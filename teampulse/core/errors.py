"""
Error taxonomy for the analysis pipeline.

Only InputValidationError and BudgetExceeded abort a run. Chunk-level
errors are recovered and reported inline as stream events.
"""
from datetime import datetime
from typing import Optional


class AnalysisError(Exception):
    """Base class for every analysis pipeline error."""

    code = "ANALYSIS_ERROR"


class InputValidationError(AnalysisError):
    """Bad input shape; rejected before any budget is spent."""

    code = "VALIDATION_ERROR"


class BudgetExceeded(AnalysisError):
    code = "BUDGET_EXCEEDED"

    def __init__(self, locked_until: datetime, message: Optional[str] = None):
        self.locked_until = locked_until
        super().__init__(
            message or f"Daily token limit reached. Locked until {locked_until.isoformat()}"
        )


class ChunkError(AnalysisError):
    def __init__(self, chunk_index: int, message: str):
        self.chunk_index = chunk_index
        super().__init__(message)

    @property
    def chunk_number(self) -> int:
        return self.chunk_index + 1


class ChunkTransportError(ChunkError):
    code = "CHUNK_TRANSPORT_ERROR"


class ChunkMalformedResponse(ChunkError):
    code = "CHUNK_MALFORMED_RESPONSE"


class MergeInvariantViolation(AnalysisError):
    """Internal bug signal; logged, never surfaced to callers."""

    code = "MERGE_INVARIANT_VIOLATION"


class StreamTransportError(AnalysisError):
    """The caller went away; events can no longer be delivered."""

    code = "STREAM_TRANSPORT_ERROR"
