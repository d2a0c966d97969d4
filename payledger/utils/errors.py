"""Utility helpers for standardized error responses."""
from typing import Any, NoReturn

from fastapi import HTTPException, status

from payledger.services.results import ErrorKind, ServiceError

GENERIC_ERROR_MESSAGE = "An unexpected error occurred."

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UPSTREAM: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.PERSISTENCE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# Internal failures never leak their message to clients.
_GENERIC_KINDS = {ErrorKind.UPSTREAM, ErrorKind.PERSISTENCE}


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


def http_status_for(error: ServiceError) -> int:
    return _STATUS_BY_KIND[error.kind]


def raise_for_error(error: ServiceError) -> NoReturn:
    """Translate a service error into the HTTP error envelope."""

    if error.kind in _GENERIC_KINDS:
        detail = error_response(error.code, GENERIC_ERROR_MESSAGE)
    else:
        detail = error_response(error.code, error.message, error.details or None)
    raise HTTPException(status_code=http_status_for(error), detail=detail)
