from datetime import date, datetime
from typing import Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from teampulse.database.models.usage_daily import UsageDaily


def _insert_for(db: AsyncSession):
    # ON CONFLICT needs the dialect-specific insert construct
    if db.bind.dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


class UsageRepository:

    async def get_by_day(self, db: AsyncSession, day: date) -> UsageDaily | None:
        stmt = select(UsageDaily).where(UsageDaily.day == day).execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self, db: AsyncSession, day: date, tokens_used: int, locked_until: Optional[datetime]
    ) -> UsageDaily:
        stmt = (
            _insert_for(db)(UsageDaily)
            .values(day=day, tokens_used=tokens_used, locked_until=locked_until)
            .on_conflict_do_update(
                index_elements=[UsageDaily.day],
                set_={"tokens_used": tokens_used, "locked_until": locked_until},
            )
        )
        await db.execute(stmt)
        await db.commit()
        return await self.get_by_day(db, day)

    async def add_tokens(
        self,
        db: AsyncSession,
        day: date,
        tokens: int,
        now: datetime,
        daily_limit: int,
        lock_until: datetime,
    ) -> Tuple[int, Optional[datetime], bool]:
        """
        Add tokens to the day's row unless it is locked at `now`.

        Runs inside the caller's transaction. The conditional UPDATE holds the
        row lock until commit, so concurrent writers see each other's totals.
        Returns (tokens_used, locked_until, added).
        """
        await db.execute(
            _insert_for(db)(UsageDaily)
            .values(day=day, tokens_used=0, locked_until=None)
            .on_conflict_do_nothing(index_elements=[UsageDaily.day])
        )

        unlocked = or_(UsageDaily.locked_until.is_(None), UsageDaily.locked_until <= now)
        stmt = (
            update(UsageDaily)
            .where(UsageDaily.day == day, unlocked)
            .values(tokens_used=UsageDaily.tokens_used + tokens)
            .returning(UsageDaily.tokens_used, UsageDaily.locked_until)
            .execution_options(synchronize_session=False)
        )
        row = (await db.execute(stmt)).first()
        if row is None:
            usage = await self.get_by_day(db, day)
            return usage.tokens_used, usage.locked_until, False

        tokens_used, locked_until = row
        if tokens_used >= daily_limit:
            await db.execute(
                update(UsageDaily)
                .where(UsageDaily.day == day)
                .values(locked_until=lock_until)
                .execution_options(synchronize_session=False)
            )
            locked_until = lock_until
        return tokens_used, locked_until, True
