from sqlalchemy import Column, Date, DateTime, Integer
from teampulse.database.models.Base import Base


class UsageDaily(Base):
    __tablename__ = "usage_daily"

    day = Column(Date, primary_key=True)
    tokens_used = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime(timezone=True), nullable=True)
