import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, Uuid
from teampulse.database.models.Base import Base


class AnalysisRecord(Base):
    __tablename__ = "analyses"

    analysis_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(String(100), nullable=False, index=True)
    source = Column(String(10), nullable=False, default="text")
    original_filename = Column(String(255), nullable=True)
    original_text = Column(Text, nullable=True)
    tokens_estimated = Column(Integer, nullable=False, default=0)
    highlights_json = Column(JSON, nullable=False, default=list)
    summary_json = Column(JSON, nullable=True)
    barometer_json = Column(JSON, nullable=True)
    failed_chunks = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
