"""
Firebase initialization and helpers
"""

from __future__ import annotations

import base64
import json
import logging
import os
from typing import Any

import firebase_admin
from firebase_admin import credentials, firestore

from showtime.core.config import Settings, settings

logger = logging.getLogger(__name__)


def load_service_account(config: Settings = settings) -> dict[str, Any] | None:
    """Read service-account info from JSON, base64 or file settings, in that order."""
    if config.FIREBASE_CREDENTIALS_JSON:
        return json.loads(config.FIREBASE_CREDENTIALS_JSON)
    if config.FIREBASE_CREDENTIALS_B64:
        decoded = base64.b64decode(config.FIREBASE_CREDENTIALS_B64).decode("utf-8")
        return json.loads(decoded)
    if config.FIREBASE_CREDENTIALS_FILE and os.path.exists(config.FIREBASE_CREDENTIALS_FILE):
        with open(config.FIREBASE_CREDENTIALS_FILE, "r", encoding="utf-8") as f:
            return json.load(f)
    return None


def init_firebase_app(config: Settings = settings) -> firebase_admin.App:
    """Initialize the default Firebase app once; later calls return the same app."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    info = load_service_account(config)
    if not info:
        raise RuntimeError(
            "Firebase credentials not provided. Set FIREBASE_CREDENTIALS_FILE, "
            "FIREBASE_CREDENTIALS_JSON, or FIREBASE_CREDENTIALS_B64"
        )
    app = firebase_admin.initialize_app(credentials.Certificate(info))
    logger.info("Firebase app initialized for project %s", info.get("project_id"))
    return app


def get_firestore_client(config: Settings = settings):
    """Firestore client for the default app, or None when Firebase is disabled."""
    if not config.USE_FIREBASE:
        return None
    return firestore.client(init_firebase_app(config))
