"""
Guest token generation and scanned-payload parsing
"""

from __future__ import annotations

import json
import secrets
import string
from typing import Any, Callable, Collection, Optional, Sequence

from showtime.core.config import settings
from showtime.core.exceptions import CapacityExceeded, MalformedToken

TOKEN_ALPHABET = string.ascii_uppercase + string.digits
TOKEN_LENGTH = 6


def generate_token(
    existing_ids: Collection[str],
    choice: Optional[Callable[[Sequence[str]], str]] = None,
    max_attempts: Optional[int] = None,
) -> str:
    """Draw a 6-character token that is not in ``existing_ids``.

    ``choice`` defaults to :func:`secrets.choice`; pass ``random.Random(seed).choice``
    for reproducible draws. Raises ``CapacityExceeded`` after ``max_attempts``
    collisions in a row.
    """
    draw = choice or secrets.choice
    if max_attempts is None:
        max_attempts = settings.TOKEN_MAX_ATTEMPTS

    for _ in range(max_attempts):
        candidate = "".join(draw(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))
        if candidate not in existing_ids:
            return candidate

    raise CapacityExceeded(f"No free guest token after {max_attempts} attempts")


def generate_event_id() -> str:
    return f"evt_{secrets.token_hex(6)}"


def normalize_token(raw: str) -> str:
    return raw.strip().upper()


def extract_token(payload: Any) -> str:
    """Pull the guest token out of a scanned or typed payload.

    Accepts the invitation envelope ``{"id": "..."}`` or the bare token text.
    A JSON string is unquoted; any other text is read as a bare token.
    """
    if not isinstance(payload, str):
        raise MalformedToken("Payload is not text")

    text = payload.strip()
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        raw = parsed.get("id")
        if not isinstance(raw, str):
            raise MalformedToken("Invitation payload has no string 'id'")
    elif isinstance(parsed, str):
        raw = parsed
    else:
        raw = text

    token = normalize_token(raw)
    if not token:
        raise MalformedToken("Empty token")
    return token


def invitation_payload(guest) -> str:
    """Text encoded in the invitation QR code."""
    return json.dumps({"id": guest.id})
