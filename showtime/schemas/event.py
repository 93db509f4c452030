"""
Event-related Pydantic schemas
"""

from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator

from .common import as_utc

class EventCreate(BaseModel):
    """Schema for creating an event"""
    name: str = Field(..., min_length=1, max_length=255)

class EventRecord(BaseModel):
    """An event as held by any roster store"""
    id: str
    name: str
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def normalize_timestamps(cls, value):
        return as_utc(value)

    class Config:
        from_attributes = True

class EventSummary(BaseModel):
    """Admission figures for one event"""
    event_id: str
    name: str
    total_guests: int
    checked_in_count: int
    pending_count: int
    by_access_level: Dict[int, int]
