"""
Configuration settings for the application
"""

import os
from typing import List
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """Application settings"""

    # Authoritative store
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./showtime.db")
    USE_FIREBASE: bool = os.getenv("USE_FIREBASE", "false").lower() in ("1", "true", "yes")
    FIREBASE_CREDENTIALS_JSON: str | None = os.getenv("FIREBASE_CREDENTIALS_JSON")
    FIREBASE_CREDENTIALS_FILE: str | None = os.getenv("FIREBASE_CREDENTIALS_FILE")
    FIREBASE_CREDENTIALS_B64: str | None = os.getenv("FIREBASE_CREDENTIALS_B64")

    # Local cache and sync
    CACHE_PATH: str = os.getenv("CACHE_PATH", "./showtime_cache.json")
    SYNC_TIMEOUT_SECONDS: float = 5.0
    SYNC_DEBOUNCE_SECONDS: float = 0.5
    SYNC_POLL_SECONDS: float = 15.0
    SYNC_RETRY_MAX_SECONDS: float = 60.0

    # Guest tokens
    TOKEN_MAX_ATTEMPTS: int = 10_000

    # Identity provider claims, set by the upstream proxy
    ROLE_HEADER: str = "X-User-Role"
    USER_HEADER: str = "X-User-Name"

    # CORS
    ALLOW_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8000",
    ]

    # Rate limiting
    RATE_LIMIT_PER_MINUTE: int = 120

    class Config:
        env_file = ".env"

settings = Settings()
