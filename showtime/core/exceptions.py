"""
Roster error taxonomy
"""


class RosterError(Exception):
    """Base class for roster and check-in errors"""


class NotFound(RosterError):
    def __init__(self, resource: str = "Resource", key: str | None = None):
        self.resource = resource
        self.key = key
        msg = f"{resource} not found"
        if key:
            msg = f"{resource} '{key}' not found"
        super().__init__(msg)


class StoreUnavailable(RosterError):
    """The authoritative store could not be reached."""


class CapacityExceeded(RosterError):
    """No free guest token could be drawn."""


class MalformedToken(RosterError):
    """A scanned payload does not contain a usable token."""


class DuplicateToken(RosterError):
    """The store already holds a different guest under this token."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Token '{token}' is already in use")


class InvalidRequest(RosterError):
    """Organizer input rejected before reaching the store."""
