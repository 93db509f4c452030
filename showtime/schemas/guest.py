"""
Guest-related Pydantic schemas
"""

from datetime import datetime
from enum import IntEnum
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from .common import as_utc

class AccessLevel(IntEnum):
    """Display tier printed on the badge; not enforced at the door"""
    LEVEL_1 = 1
    LEVEL_2 = 2
    LEVEL_3 = 3

class GuestCreate(BaseModel):
    """Schema for adding a guest to an event"""
    name: str = Field(..., min_length=1, max_length=255)
    company: str = Field("", max_length=255)
    access_level: AccessLevel = AccessLevel.LEVEL_1
    invited_by: Optional[str] = None

class GuestRecord(BaseModel):
    """A guest as held by any roster store"""
    id: str
    event_id: str
    name: str
    company: str = ""
    access_level: AccessLevel = AccessLevel.LEVEL_1
    checked_in_at: Optional[datetime] = None
    invited_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("checked_in_at", "created_at")
    @classmethod
    def normalize_timestamps(cls, value):
        return as_utc(value)

    class Config:
        from_attributes = True

    @property
    def checked_in(self) -> bool:
        return self.checked_in_at is not None
