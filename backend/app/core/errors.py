"""
Centralized error kinds for the drop engine and their HTTP mapping.
Services raise these; routes stay thin and let the exception handler in main render them.
"""
from __future__ import annotations

from typing import Callable

from fastapi import HTTPException

# ---------------------------------------------------------------------------
# Constants: status codes
# ---------------------------------------------------------------------------

STATUS_BAD_REQUEST = 400
STATUS_UNAUTHORIZED = 401
STATUS_FORBIDDEN = 403
STATUS_NOT_FOUND = 404
STATUS_CONFLICT = 409
STATUS_INTERNAL_ERROR = 500
STATUS_BAD_GATEWAY = 502
STATUS_SERVICE_UNAVAILABLE = 503


class DropSchedulerError(Exception):
    """Base for every error the engine surfaces to an operator."""

    status_code = STATUS_INTERNAL_ERROR
    default_message = "Internal error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class BadInput(DropSchedulerError):
    status_code = STATUS_BAD_REQUEST
    default_message = "Bad request."


class Unauthorized(DropSchedulerError):
    status_code = STATUS_UNAUTHORIZED
    default_message = "Unauthorized: missing or invalid token."


class PermissionDenied(DropSchedulerError):
    status_code = STATUS_FORBIDDEN
    default_message = "Permission denied."


class NotFound(DropSchedulerError):
    status_code = STATUS_NOT_FOUND
    default_message = "Not found."


class Conflict(DropSchedulerError):
    status_code = STATUS_CONFLICT
    default_message = "Conflict: product is already scheduled for this shop."


class Upstream(DropSchedulerError):
    status_code = STATUS_BAD_GATEWAY
    default_message = "Catalog returned an error."


class Unreachable(DropSchedulerError):
    status_code = STATUS_SERVICE_UNAVAILABLE
    default_message = "Could not reach the catalog."


class StoreUnavailable(DropSchedulerError):
    status_code = STATUS_SERVICE_UNAVAILABLE
    default_message = "Store unavailable."


class Internal(DropSchedulerError):
    status_code = STATUS_INTERNAL_ERROR


# ---------------------------------------------------------------------------
# Error rules: (predicate, status_code). First match wins.
# Add new rules here instead of scattering checks in routes.
# ---------------------------------------------------------------------------

def _is_engine_error(exc: Exception) -> bool:
    return isinstance(exc, DropSchedulerError)


def _is_value_error(exc: Exception) -> bool:
    return isinstance(exc, ValueError)


ERROR_RULES: list[tuple[Callable[[Exception], bool], Callable[[Exception], int]]] = [
    (_is_engine_error, lambda e: e.status_code),
    (_is_value_error, lambda e: STATUS_BAD_REQUEST),
]


def error_to_http(exc: Exception) -> HTTPException:
    """
    Map an exception raised by a service into an HTTPException.
    Uses ERROR_RULES for known error kinds; otherwise 500 with the exception message.
    """
    for predicate, status_for in ERROR_RULES:
        if predicate(exc):
            detail = exc.message if isinstance(exc, DropSchedulerError) else str(exc)
            return HTTPException(status_code=status_for(exc), detail=detail)
    return HTTPException(status_code=STATUS_INTERNAL_ERROR, detail=str(exc) or "Internal error.")
