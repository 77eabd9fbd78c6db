"""Ingestion run log model."""

from sqlalchemy import BigInteger, Column, DateTime, Integer, JSON
from sqlalchemy.sql import func

from database import Base


class ProcessingLog(Base):
    """Append-only record of one ingestion run."""

    __tablename__ = "processing_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    events_processed = Column(Integer, nullable=False, default=0)
    stream_events = Column(Integer, nullable=False, default=0)
    fallback_events = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=False, default=0)
    cursor = Column(BigInteger, nullable=True)
    error_messages = Column(JSON, nullable=True)
