"""
Role claims from the identity provider, and rate limiting
"""

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import time

from fastapi import HTTPException, Request, status

from showtime.core.config import settings

# Simple in-memory rate limiter
rate_limiter = defaultdict(list)


class UserRole(str, Enum):
    ADMIN = "admin"
    ORGANIZER = "organizer"
    CONTROLLER = "controller"


@dataclass
class Identity:
    role: UserRole
    username: Optional[str] = None


def require_role(*allowed: UserRole):
    """Dependency factory accepting requests whose role claim is in ``allowed``.

    The claim is set by the upstream identity provider; admins pass every check.
    """
    def check(request: Request) -> Identity:
        claim = request.headers.get(settings.ROLE_HEADER)
        if not claim:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing role claim"
            )
        try:
            role = UserRole(claim.strip().lower())
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Unknown role '{claim}'"
            )
        if role is not UserRole.ADMIN and role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{role.value}' may not perform this action"
            )
        return Identity(role=role, username=request.headers.get(settings.USER_HEADER))

    return check


def rate_limit_check(client_ip: str, limit: int = None) -> bool:
    """Simple rate limiting by IP address"""
    if limit is None:
        limit = settings.RATE_LIMIT_PER_MINUTE

    current_time = time.time()
    minute_ago = current_time - 60

    # Clean old requests
    rate_limiter[client_ip] = [
        req_time for req_time in rate_limiter[client_ip]
        if req_time > minute_ago
    ]

    if len(rate_limiter[client_ip]) >= limit:
        return False

    rate_limiter[client_ip].append(current_time)
    return True


def get_client_ip(request) -> str:
    """Extract client IP from request"""
    # Check for forwarded IP first (for reverse proxy setups)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"
