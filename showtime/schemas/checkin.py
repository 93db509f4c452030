"""
Check-in and sync Pydantic schemas
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from .guest import GuestRecord

class CheckInStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ALREADY_CHECKED_IN = "ALREADY_CHECKED_IN"
    NOT_FOUND = "NOT_FOUND"

class CheckInRequest(BaseModel):
    """Scanned or typed payload from a controller device"""
    payload: str = Field(..., max_length=4096)
    event_id: Optional[str] = None

class CheckInResult(BaseModel):
    """Outcome of one check-in attempt.

    ``cross_event`` marks a denial for a guest registered under another event;
    ``guest`` and ``event_name`` then describe where the guest belongs.
    """
    status: CheckInStatus
    guest: Optional[GuestRecord] = None
    cross_event: bool = False
    event_name: Optional[str] = None

class SyncStatus(BaseModel):
    """Advisory connectivity state of the local roster cache"""
    online: bool
    pending_changes: int
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
