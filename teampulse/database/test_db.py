import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from teampulse.core.budget.ledger import TokenBudgetLedger
from teampulse.core.errors import BudgetExceeded
from teampulse.core.models import AnalysisResult, Barometer, Category, Highlight, Summary
from teampulse.database.db import to_async_url
from teampulse.database.models.Base import Base
from teampulse.database.repostries.usage_repo import UsageRepository
from teampulse.database.stores import SqlAnalysisStore, SqlUsageStore

import teampulse.database.models  # noqa: F401


@pytest.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgres://u:p@host/db", "postgresql+asyncpg://u:p@host/db"),
        ("postgresql://u:p@host/db?sslmode=require", "postgresql+asyncpg://u:p@host/db"),
        (
            "postgresql://u:p@host/db?sslmode=require&application_name=tp",
            "postgresql+asyncpg://u:p@host/db?application_name=tp",
        ),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
    ],
)
def test_to_async_url(url, expected):
    assert to_async_url(url) == expected


async def test_usage_repository_upsert(session_factory):
    repo = UsageRepository()
    day = date(2024, 5, 10)

    async with session_factory() as session:
        assert await repo.get_by_day(session, day) is None
        await repo.upsert(session, day, 100, None)
        row = await repo.upsert(session, day, 250, None)

    assert row.tokens_used == 250


async def test_usage_store_keeps_lock_in_utc(session_factory):
    store = SqlUsageStore(session_factory)
    day = date(2024, 5, 10)
    locked_until = datetime(2024, 5, 11, 9, 30, tzinfo=timezone.utc)

    await store.upsert_usage_for_day(day, 1050, locked_until)
    entry = await store.get_usage_for_day(day)

    assert entry.tokens_used == 1050
    assert entry.locked_until == locked_until
    assert (await store.get_usage_for_day(day + timedelta(days=1))).tokens_used == 0


async def test_ledger_on_sql_store(session_factory):
    now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
    store = SqlUsageStore(session_factory)
    await store.upsert_usage_for_day(now.date(), 950, None)
    ledger = TokenBudgetLedger(store, daily_limit=1000, clock=lambda: now)

    with pytest.raises(BudgetExceeded) as exc_info:
        await ledger.reserve_or_fail(100)

    entry = await store.get_usage_for_day(now.date())
    assert entry.tokens_used == 1050
    assert entry.locked_until == now + timedelta(hours=24)
    assert exc_info.value.locked_until == entry.locked_until


async def test_analysis_store_round_trip(session_factory):
    store = SqlAnalysisStore(session_factory)
    result = AnalysisResult(
        highlights=[
            Highlight(
                id="hl_1",
                category=Category.MANIPULATION,
                label="False urgency",
                severity=3,
                global_start=0,
                global_end=8,
                text="sign now",
                source_chunks=[0],
            )
        ],
        summary=Summary(counts_by_category={"manipulation": 1, "cognitive_bias": 0, "rhetological_fallacy": 0}),
        barometer=Barometer(score=25, label="Clear client"),
        original_text="sign now, the offer ends today",
        source="file",
        filename="call.txt",
        tokens_estimated=1234,
        failed_chunks=[2],
    )

    analysis_id = await store.save_analysis("client-1", result)
    saved = await store.get_analysis(analysis_id)

    assert saved["client_id"] == "client-1"
    assert saved["original_filename"] == "call.txt"
    assert saved["highlights"][0]["label"] == "False urgency"
    assert saved["barometer"]["label"] == "Clear client"
    assert saved["failed_chunks"] == [2]
    assert saved["created_at"].tzinfo is not None


@pytest.fixture
async def file_session_factory(tmp_path):
    # Separate pooled connections, like two workers sharing one database
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


async def test_two_ledgers_sharing_a_table_do_not_lose_updates(file_session_factory):
    now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
    ledgers = [
        TokenBudgetLedger(SqlUsageStore(file_session_factory), daily_limit=100_000, clock=lambda: now)
        for _ in range(2)
    ]

    await asyncio.gather(*(ledgers[i % 2].reserve_or_fail(100) for i in range(20)))

    entry = await SqlUsageStore(file_session_factory).get_usage_for_day(now.date())
    assert entry.tokens_used == 2000
    assert entry.locked_until is None


async def test_two_ledgers_sharing_a_table_lock_once(file_session_factory):
    now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
    ledgers = [
        TokenBudgetLedger(SqlUsageStore(file_session_factory), daily_limit=1000, clock=lambda: now)
        for _ in range(2)
    ]

    results = await asyncio.gather(
        *(ledgers[i % 2].reserve_or_fail(100) for i in range(20)), return_exceptions=True
    )

    # nine pass, the tenth reaches the limit, the rest are refused uncounted
    assert sum(1 for r in results if isinstance(r, BudgetExceeded)) == 11
    entry = await SqlUsageStore(file_session_factory).get_usage_for_day(now.date())
    assert entry.tokens_used == 1000
    assert entry.locked_until == now + timedelta(hours=24)


async def test_add_usage_refused_while_locked(session_factory):
    store = SqlUsageStore(session_factory)
    day = date(2024, 5, 10)
    now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
    locked_until = now + timedelta(hours=3)
    await store.upsert_usage_for_day(day, 1200, locked_until)

    entry, added = await store.add_usage_for_day(day, 50, now, 1000, now + timedelta(hours=24))

    assert added is False
    assert entry.tokens_used == 1200
    assert entry.locked_until == locked_until
