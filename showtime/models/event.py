"""
Event model
"""

from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship

from showtime.core.db import Base

class Event(Base):
    __tablename__ = "events"

    id = Column(String(32), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    guests = relationship(
        "Guest",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
