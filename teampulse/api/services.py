import logging
from dataclasses import dataclass
from typing import Optional

from teampulse.core.analyzer.chunk_analyzer import ChunkAnalyzer
from teampulse.core.budget.ledger import TokenBudgetLedger
from teampulse.core.budget.memory_store import InMemoryUsageStore
from teampulse.core.config import Config, config
from teampulse.core.llm import ChatLLM, OllamaCloudLLM
from teampulse.core.orchestrator.orchestrator import AnalysisOrchestrator, AnalysisStore
from teampulse.core.summary.summarizer import Summarizer
from teampulse.database.db import NeonDatabase
from teampulse.database.stores import InMemoryAnalysisStore, SqlAnalysisStore, SqlUsageStore

logger = logging.getLogger("services")


@dataclass
class AnalysisServices:
    """Process-wide collaborators shared by every analysis request."""
    ledger: TokenBudgetLedger
    analyzer: ChunkAnalyzer
    summarizer: Summarizer
    analysis_store: Optional[AnalysisStore]
    settings: Config
    model_name: str = ""
    storage: str = "memory"

    def new_orchestrator(self) -> AnalysisOrchestrator:
        return AnalysisOrchestrator(
            ledger=self.ledger,
            analyzer=self.analyzer,
            summarizer=self.summarizer,
            store=self.analysis_store,
            chunk_size_chars=self.settings.CHUNK_SIZE_CHARS,
            chunk_overlap_chars=self.settings.CHUNK_OVERLAP_CHARS,
            max_concurrent_chunks=self.settings.MAX_CONCURRENT_CHUNKS,
            min_text_chars=self.settings.MIN_TEXT_CHARS,
            max_text_chars=self.settings.MAX_TEXT_CHARS,
            highlights_per_1000_words=self.settings.MAX_HIGHLIGHTS_PER_1000_WORDS,
        )


def assemble_services(
    llm: ChatLLM,
    usage_store,
    analysis_store: Optional[AnalysisStore],
    settings: Config = config,
    storage: str = "memory",
) -> AnalysisServices:
    ledger = TokenBudgetLedger(usage_store, daily_limit=settings.DAILY_TOKEN_LIMIT)
    analyzer = ChunkAnalyzer(
        llm,
        ledger,
        timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
        temperature=settings.LLM_TEMPERATURE,
        max_tokens=settings.LLM_MAX_TOKENS,
    )
    summarizer = Summarizer(
        llm=llm if settings.SUMMARY_WITH_LLM else None,
        ledger=ledger,
        highlights_per_1000_words=settings.MAX_HIGHLIGHTS_PER_1000_WORDS,
        timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
        temperature=settings.LLM_TEMPERATURE,
        max_tokens=settings.LLM_MAX_TOKENS,
    )
    return AnalysisServices(
        ledger=ledger,
        analyzer=analyzer,
        summarizer=summarizer,
        analysis_store=analysis_store,
        settings=settings,
        model_name=llm.model_name,
        storage=storage,
    )


async def build_services(settings: Config = config) -> AnalysisServices:
    """Default wiring: Ollama cloud client plus Neon storage when configured."""
    llm = OllamaCloudLLM(
        model_name=settings.LLM_MODEL,
        base_url=settings.LLM_BASE_URL,
        api_key=settings.LLM_API_KEY,
        timeout=settings.LLM_TIMEOUT_SECONDS,
    )

    if settings.DATABASE_URL:
        NeonDatabase.init(settings.DATABASE_URL)
        await NeonDatabase.create_tables()
        return assemble_services(llm, SqlUsageStore(), SqlAnalysisStore(), settings, storage="postgres")

    logger.warning("DATABASE_URL is not set; token usage and analyses are kept in memory only")
    return assemble_services(llm, InMemoryUsageStore(), InMemoryAnalysisStore(), settings, storage="memory")
