from typing import Any, Dict
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teampulse.database.models.analyses import AnalysisRecord


class AnalysisRepository:

    async def create(self, db: AsyncSession, analysis_data: Dict[str, Any]) -> AnalysisRecord:
        analysis = AnalysisRecord(**analysis_data)
        db.add(analysis)
        await db.commit()
        await db.refresh(analysis)
        return analysis

    async def get_by_id(self, db: AsyncSession, analysis_id: UUID) -> AnalysisRecord | None:
        stmt = select(AnalysisRecord).where(AnalysisRecord.analysis_id == analysis_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()
