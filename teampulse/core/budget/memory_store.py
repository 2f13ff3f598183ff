from datetime import date, datetime
from typing import Dict, Optional, Tuple

from teampulse.core.models import UsageLedgerEntry


class InMemoryUsageStore:
    """Process-local usage rows, used when no database is configured."""

    def __init__(self):
        self._rows: Dict[date, UsageLedgerEntry] = {}

    async def get_usage_for_day(self, day: date) -> UsageLedgerEntry:
        row = self._rows.get(day)
        if row is None:
            return UsageLedgerEntry(day=day, tokens_used=0, locked_until=None)
        return row.model_copy()

    async def upsert_usage_for_day(
        self, day: date, tokens_used: int, locked_until: Optional[datetime]
    ) -> None:
        self._rows[day] = UsageLedgerEntry(day=day, tokens_used=tokens_used, locked_until=locked_until)

    async def add_usage_for_day(
        self, day: date, tokens: int, now: datetime, daily_limit: int, lock_until: datetime
    ) -> Tuple[UsageLedgerEntry, bool]:
        # No await in here, so the check and the write cannot interleave
        row = self._rows.get(day) or UsageLedgerEntry(day=day)
        if row.locked_until and now < row.locked_until:
            return row.model_copy(), False

        tokens_used = row.tokens_used + tokens
        locked_until = lock_until if tokens_used >= daily_limit else row.locked_until
        self._rows[day] = UsageLedgerEntry(day=day, tokens_used=tokens_used, locked_until=locked_until)
        return self._rows[day].model_copy(), True
