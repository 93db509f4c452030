"""
Guest model
"""

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from showtime.core.db import Base

class Guest(Base):
    __tablename__ = "guests"

    # 6-character token, unique across every event
    id = Column(String(6), primary_key=True, index=True)
    event_id = Column(String(32), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    company = Column(String(255), nullable=False, default="")
    access_level = Column(Integer, nullable=False, default=1)
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    invited_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    event = relationship("Event", back_populates="guests")
