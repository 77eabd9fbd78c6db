"""Follow edge model for the social graph."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class UserFollow(Base):
    """Directed follow edge observed upstream."""

    __tablename__ = "user_follows"

    follower_did = Column(String, primary_key=True, index=True)
    following_did = Column(String, primary_key=True)
    created_at = Column(String, nullable=True)
    synced_at = Column(DateTime(timezone=True), server_default=func.now())
