"""
Standardized response utilities
"""

import logging
from typing import Any, Optional
from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from showtime.core.exceptions import (
    CapacityExceeded,
    DuplicateToken,
    InvalidRequest,
    MalformedToken,
    NotFound,
    RosterError,
    StoreUnavailable,
)
from showtime.schemas.common import StandardResponse, ErrorResponse

logger = logging.getLogger(__name__)

def success_response(
    message: str,
    data: Any = None,
    status_code: int = 200
) -> JSONResponse:
    """Create standardized success response"""
    response = StandardResponse(
        success=True,
        message=message,
        data=data
    )
    return JSONResponse(
        content=jsonable_encoder(response),
        status_code=status_code
    )

def error_response(
    message: str,
    error_code: Optional[str] = None,
    details: Any = None,
    status_code: int = 400
) -> JSONResponse:
    """Create standardized error response"""
    response = ErrorResponse(
        message=message,
        error_code=error_code,
        details=details
    )
    return JSONResponse(
        content=jsonable_encoder(response),
        status_code=status_code
    )

ERROR_STATUS = [
    (NotFound, 404, "not_found"),
    (InvalidRequest, 422, "invalid_request"),
    (MalformedToken, 422, "malformed_token"),
    (CapacityExceeded, 507, "capacity_exceeded"),
    (DuplicateToken, 409, "duplicate_token"),
    (StoreUnavailable, 503, "store_unavailable"),
]

async def roster_error_handler(request: Request, exc: RosterError) -> JSONResponse:
    """Turn roster errors raised inside a route into the standard error envelope"""
    for error_type, status_code, error_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            if status_code >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc)
            return error_response(message=str(exc), error_code=error_code, status_code=status_code)

    logger.error("Unhandled roster error on %s %s: %s", request.method, request.url.path, exc)
    return error_response(message=str(exc), error_code="roster_error", status_code=500)
