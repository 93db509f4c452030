"""
Database models package
"""

from .event import Event
from .guest import Guest

__all__ = ["Event", "Guest"]
