"""Resolved address record cache."""

from sqlalchemy import Column, DateTime, Float, JSON, String

from database import Base


class AddressCache(Base):
    """Venue/address record fetched through a check-in's StrongRef."""

    __tablename__ = "address_cache"

    uri = Column(String, primary_key=True)
    cid = Column(String, nullable=True)
    name = Column(String, nullable=True)
    street = Column(String, nullable=True)
    locality = Column(String, nullable=True)
    region = Column(String, nullable=True)
    country = Column(String, nullable=True)
    postal_code = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    full_data = Column(JSON, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
