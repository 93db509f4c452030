"""
Tests for token generation and scanned-payload parsing
"""

import json
import random

import pytest

from showtime.core.exceptions import CapacityExceeded, MalformedToken
from showtime.schemas.guest import GuestRecord
from showtime.services.identifiers import (
    TOKEN_ALPHABET,
    TOKEN_LENGTH,
    extract_token,
    generate_event_id,
    generate_token,
    invitation_payload,
)


def scripted(characters):
    """Choice function that replays ``characters`` one draw at a time"""
    draws = iter(characters)
    return lambda alphabet: next(draws)


def test_token_shape():
    token = generate_token(set())
    assert len(token) == TOKEN_LENGTH
    assert all(char in TOKEN_ALPHABET for char in token)


def test_token_is_reproducible_with_seeded_choice():
    first = generate_token(set(), choice=random.Random(42).choice)
    second = generate_token(set(), choice=random.Random(42).choice)
    assert first == second


def test_token_redraws_on_collision():
    token = generate_token({"AAAAAA"}, choice=scripted("AAAAAABBBBBB"))
    assert token == "BBBBBB"


def test_token_space_exhausted():
    with pytest.raises(CapacityExceeded):
        generate_token({"AAAAAA"}, choice=lambda alphabet: "A", max_attempts=10)


def test_tokens_stay_unique_over_thousands_of_draws():
    rng = random.Random(7)
    issued = set()
    for _ in range(5000):
        issued.add(generate_token(issued, choice=rng.choice))
    assert len(issued) == 5000


def test_event_ids_are_distinct():
    ids = {generate_event_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(event_id.startswith("evt_") for event_id in ids)


@pytest.mark.parametrize("payload", [
    '{"id": "A1B2C3"}',
    '{"id": " a1b2c3 "}',
    '"A1B2C3"',
    "A1B2C3",
    "  a1b2c3\n",
])
def test_extract_token_accepts_envelope_and_bare_text(payload):
    assert extract_token(payload) == "A1B2C3"


def test_extract_token_reads_numeric_text_as_bare_token():
    assert extract_token("123456") == "123456"


@pytest.mark.parametrize("payload", [
    "",
    "   ",
    '{"name": "Ada"}',
    '{"id": 123456}',
    '{"id": ""}',
    None,
    b"A1B2C3",
])
def test_extract_token_rejects_malformed_payloads(payload):
    with pytest.raises(MalformedToken):
        extract_token(payload)


def test_invitation_payload_is_json_envelope():
    guest = GuestRecord(id="Q7X2KD", event_id="evt_1", name="Ada Lovelace")
    payload = invitation_payload(guest)
    assert json.loads(payload) == {"id": "Q7X2KD"}
    assert extract_token(payload) == "Q7X2KD"
