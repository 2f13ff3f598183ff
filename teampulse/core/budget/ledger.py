"""
Daily LLM token budget shared by every analysis request in the process.

Within a process, updates to a UTC day are serialized by that day's
asyncio.Lock. Across processes the store applies the lock check and the
increment as one atomic write, so a shared table is never double counted.
"""
import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from teampulse.core.errors import BudgetExceeded
from teampulse.core.models import UsageLedgerEntry

logger = logging.getLogger("token_budget")

LOCKOUT_DURATION = timedelta(hours=24)


class UsageStore(Protocol):
    async def get_usage_for_day(self, day: date) -> UsageLedgerEntry: ...

    async def upsert_usage_for_day(
        self, day: date, tokens_used: int, locked_until: Optional[datetime]
    ) -> None: ...

    async def add_usage_for_day(
        self, day: date, tokens: int, now: datetime, daily_limit: int, lock_until: datetime
    ) -> Tuple[UsageLedgerEntry, bool]:
        """
        Atomically add `tokens` unless the day is locked at `now`.

        Sets `locked_until = lock_until` in the same write when the new total
        reaches `daily_limit`. Returns the row after the call and whether the
        tokens were added.
        """
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenBudgetLedger:
    def __init__(
        self,
        store: UsageStore,
        daily_limit: int,
        clock: Callable[[], datetime] = utc_now,
    ):
        if daily_limit <= 0:
            raise ValueError("daily_limit must be positive")
        self.store = store
        self.daily_limit = daily_limit
        self._clock = clock
        self._day_locks: Dict[date, asyncio.Lock] = {}

    def _lock_for(self, day: date) -> asyncio.Lock:
        # No await between lookup and insert, so this is atomic on the loop
        lock = self._day_locks.get(day)
        if lock is None:
            lock = asyncio.Lock()
            self._day_locks[day] = lock
        return lock

    async def reserve_or_fail(self, estimated_tokens: int) -> UsageLedgerEntry:
        """Charge an estimate before LLM work starts."""
        return await self._check_and_increment(estimated_tokens, reason="reserve")

    async def charge(self, actual_tokens: int) -> UsageLedgerEntry:
        """Charge tokens reported after LLM work finished."""
        return await self._check_and_increment(actual_tokens, reason="charge")

    async def ensure_unlocked(self) -> None:
        """Fail fast while a lockout is active, without touching the counter."""
        now = self._clock()
        today = now.date()
        async with self._lock_for(today):
            entry = await self.store.get_usage_for_day(today)
        await self._raise_if_locked(entry, now)

    async def status(self) -> UsageLedgerEntry:
        """Today's usage, reporting whichever lockout is currently in force."""
        now = self._clock()
        today = now.date()
        async with self._lock_for(today):
            entry = await self.store.get_usage_for_day(today)
        if entry.locked_until and now < entry.locked_until:
            return entry

        yesterday = today - timedelta(days=1)
        async with self._lock_for(yesterday):
            previous = await self.store.get_usage_for_day(yesterday)
        if previous.locked_until and now < previous.locked_until:
            return entry.model_copy(update={"locked_until": previous.locked_until})
        return entry

    async def _check_and_increment(self, tokens: int, reason: str) -> UsageLedgerEntry:
        if tokens < 0:
            raise ValueError("token amounts must be non-negative")

        now = self._clock()
        today = now.date()
        async with self._lock_for(today):
            await self._raise_if_previous_day_locked(today, now)

            # Lock check and increment happen in one store write
            entry, added = await self.store.add_usage_for_day(
                today, tokens, now, self.daily_limit, now + LOCKOUT_DURATION
            )
            if not added:
                raise BudgetExceeded(entry.locked_until)

            if entry.tokens_used >= self.daily_limit:
                logger.warning(
                    f"Daily token limit {self.daily_limit} reached on {reason} "
                    f"({entry.tokens_used} used). Locked until {entry.locked_until.isoformat()}"
                )
                raise BudgetExceeded(entry.locked_until)

            logger.debug(f"Token budget {reason}: +{tokens} -> {entry.tokens_used}/{self.daily_limit}")
            return entry

    async def _raise_if_locked(self, entry: UsageLedgerEntry, now: datetime) -> None:
        if entry.locked_until and now < entry.locked_until:
            raise BudgetExceeded(entry.locked_until)
        await self._raise_if_previous_day_locked(entry.day, now)

    async def _raise_if_previous_day_locked(self, day: date, now: datetime) -> None:
        # A lock set late yesterday still holds after the UTC day rolls over
        yesterday = day - timedelta(days=1)
        async with self._lock_for(yesterday):
            previous = await self.store.get_usage_for_day(yesterday)
        if previous.locked_until and now < previous.locked_until:
            raise BudgetExceeded(previous.locked_until)
