"""
Adapters between the analysis core and storage.

The core only knows `get_usage_for_day`, `upsert_usage_for_day` and
`add_usage_for_day` for the token ledger and `save_analysis` for finished
results. These classes provide them on top of the SQLAlchemy repositories,
plus an in-memory analysis store used when no database is configured.
"""
import uuid
from datetime import date, datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from teampulse.core.models import AnalysisResult, UsageLedgerEntry
from teampulse.database.db import NeonDatabase
from teampulse.database.repostries.analysis_repo import AnalysisRepository
from teampulse.database.repostries.usage_repo import UsageRepository


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def analysis_row(client_id: str, result: AnalysisResult) -> dict:
    return {
        "client_id": client_id,
        "source": result.source,
        "original_filename": result.filename,
        "original_text": result.original_text,
        "tokens_estimated": result.tokens_estimated,
        "highlights_json": [h.model_dump(mode="json") for h in result.highlights],
        "summary_json": result.summary.model_dump(mode="json"),
        "barometer_json": result.barometer.model_dump(mode="json"),
        "failed_chunks": list(result.failed_chunks),
        "created_at": result.created_at,
    }


def analysis_view(analysis_id: str, row: dict) -> dict:
    return {
        "analysis_id": analysis_id,
        "client_id": row["client_id"],
        "source": row["source"],
        "original_filename": row["original_filename"],
        "tokens_estimated": row["tokens_estimated"],
        "highlights": row["highlights_json"],
        "summary": row["summary_json"],
        "barometer": row["barometer_json"],
        "failed_chunks": row["failed_chunks"],
        "created_at": as_utc(row["created_at"]),
    }


class SqlUsageStore:
    def __init__(self, session_factory: Callable = NeonDatabase.get_session):
        self.session_factory = session_factory
        self.usage_repo = UsageRepository()

    async def get_usage_for_day(self, day: date) -> UsageLedgerEntry:
        async with self.session_factory() as session:
            usage = await self.usage_repo.get_by_day(session, day)
        if usage is None:
            return UsageLedgerEntry(day=day, tokens_used=0, locked_until=None)
        return UsageLedgerEntry(
            day=usage.day,
            tokens_used=usage.tokens_used,
            locked_until=as_utc(usage.locked_until),
        )

    async def upsert_usage_for_day(self, day: date, tokens_used: int, locked_until: Optional[datetime]) -> None:
        async with self.session_factory() as session:
            await self.usage_repo.upsert(session, day, tokens_used, locked_until)

    async def add_usage_for_day(
        self, day: date, tokens: int, now: datetime, daily_limit: int, lock_until: datetime
    ) -> Tuple[UsageLedgerEntry, bool]:
        async with self.session_factory() as session:
            async with session.begin():
                tokens_used, locked_until, added = await self.usage_repo.add_tokens(
                    session, day, tokens, now, daily_limit, lock_until
                )
        entry = UsageLedgerEntry(day=day, tokens_used=tokens_used, locked_until=as_utc(locked_until))
        return entry, added


class SqlAnalysisStore:
    def __init__(self, session_factory: Callable = NeonDatabase.get_session):
        self.session_factory = session_factory
        self.analysis_repo = AnalysisRepository()

    async def save_analysis(self, client_id: str, result: AnalysisResult) -> str:
        async with self.session_factory() as session:
            record = await self.analysis_repo.create(session, analysis_row(client_id, result))
        return str(record.analysis_id)

    async def get_analysis(self, analysis_id: str) -> Optional[dict]:
        async with self.session_factory() as session:
            record = await self.analysis_repo.get_by_id(session, uuid.UUID(analysis_id))
        if record is None:
            return None
        row = {column.name: getattr(record, column.name) for column in record.__table__.columns}
        return analysis_view(str(record.analysis_id), row)


class InMemoryAnalysisStore:
    def __init__(self):
        self.analyses: Dict[str, dict] = {}

    async def save_analysis(self, client_id: str, result: AnalysisResult) -> str:
        analysis_id = str(uuid.uuid4())
        self.analyses[analysis_id] = analysis_view(analysis_id, analysis_row(client_id, result))
        return analysis_id

    async def get_analysis(self, analysis_id: str) -> Optional[dict]:
        return self.analyses.get(analysis_id)
