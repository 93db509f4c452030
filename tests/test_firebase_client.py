"""
Tests for Firebase service-account loading
"""

import base64
import json

from showtime.core.config import Settings
from showtime.services.firebase_client import get_firestore_client, load_service_account

ACCOUNT = {"type": "service_account", "project_id": "showtime-test"}


def test_credentials_from_json():
    config = Settings(FIREBASE_CREDENTIALS_JSON=json.dumps(ACCOUNT))
    assert load_service_account(config) == ACCOUNT


def test_credentials_from_base64():
    encoded = base64.b64encode(json.dumps(ACCOUNT).encode("utf-8")).decode("ascii")
    config = Settings(FIREBASE_CREDENTIALS_JSON=None, FIREBASE_CREDENTIALS_B64=encoded)
    assert load_service_account(config) == ACCOUNT


def test_credentials_from_file(tmp_path):
    path = tmp_path / "service-account.json"
    path.write_text(json.dumps(ACCOUNT), encoding="utf-8")
    config = Settings(
        FIREBASE_CREDENTIALS_JSON=None, FIREBASE_CREDENTIALS_B64=None, FIREBASE_CREDENTIALS_FILE=str(path)
    )
    assert load_service_account(config) == ACCOUNT


def test_no_credentials(tmp_path):
    config = Settings(
        FIREBASE_CREDENTIALS_JSON=None,
        FIREBASE_CREDENTIALS_B64=None,
        FIREBASE_CREDENTIALS_FILE=str(tmp_path / "missing.json"),
    )
    assert load_service_account(config) is None


def test_client_is_none_when_firebase_disabled():
    assert get_firestore_client(Settings(USE_FIREBASE=False)) is None
