"""Cached author profile model."""

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func

from database import Base


class ProfileCache(Base):
    """Author profile snapshot fetched from the public AppView."""

    __tablename__ = "profile_cache"

    did = Column(String, primary_key=True)
    handle = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    avatar = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    fetched_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
