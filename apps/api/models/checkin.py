"""Check-in record model."""

from sqlalchemy import Column, DateTime, Float, Index, JSON, String, Text
from sqlalchemy.sql import func

from database import Base


class Checkin(Base):
    """Location check-in ingested from an author's repository."""

    __tablename__ = "checkins"

    id = Column(String, primary_key=True)
    uri = Column(String, nullable=False, unique=True)
    author_did = Column(String, nullable=False, index=True)
    author_handle = Column(String, nullable=True)
    text = Column(Text, nullable=False, default="")
    created_at = Column(String, nullable=False, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    address_ref_uri = Column(String, nullable=True)
    address_ref_cid = Column(String, nullable=True)
    cached_address_name = Column(String, nullable=True)
    cached_address_street = Column(String, nullable=True)
    cached_address_locality = Column(String, nullable=True)
    cached_address_region = Column(String, nullable=True)
    cached_address_country = Column(String, nullable=True)
    cached_address_postal_code = Column(String, nullable=True)
    cached_address_full = Column(JSON, nullable=True)
    address_resolved_at = Column(DateTime(timezone=True), nullable=True)
    indexed_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_checkins_location", "latitude", "longitude"),
    )
