"""
Pydantic schemas package
"""

from .common import *
from .event import *
from .guest import *
from .checkin import *

__all__ = [
    "StandardResponse",
    "ErrorResponse",
    "EventCreate",
    "EventRecord",
    "EventSummary",
    "AccessLevel",
    "GuestCreate",
    "GuestRecord",
    "CheckInStatus",
    "CheckInRequest",
    "CheckInResult",
    "SyncStatus",
]
