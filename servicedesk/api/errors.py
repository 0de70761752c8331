from __future__ import annotations

from fastapi import HTTPException, status

from servicedesk.tickets.errors import (
    CapacityError,
    ConflictError,
    Forbidden,
    InvalidTransition,
    NotFound,
    TicketError,
    ValidationError,
)

CONFLICT_RETRY_AFTER_SECONDS = 1

_STATUS_CODES: tuple[tuple[type[TicketError], int], ...] = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (ValidationError, 422),
    (ConflictError, status.HTTP_409_CONFLICT),
    (CapacityError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_error(exc: TicketError) -> HTTPException:
    """Map a ticket core error onto the HTTP status the API contract promises."""

    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    headers = None
    if isinstance(exc, ConflictError):
        headers = {"Retry-After": str(CONFLICT_RETRY_AFTER_SECONDS)}
    return HTTPException(status_code=status_code, detail=str(exc), headers=headers)
