"""
Error classification and friendly re-raising for backend failures.

Backend and transport errors are sorted into a handful of user-facing
categories by inspecting their message, then re-raised with a message an
operator can act on. The original exception stays attached as
``__cause__`` for logs.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, NoReturn, Optional, TypeVar

from labbilling.core.backend_client import NO_ROWS_CODE, BackendClient, BackendError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(str, Enum):
    """User-facing buckets for backend failures."""
    AUTH = "auth"
    PERMISSION = "permission"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


FRIENDLY_MESSAGES = {
    ErrorCategory.AUTH: "Authentication error: Your session may have expired. Please try logging in again.",
    ErrorCategory.PERMISSION: "Permission error: You may not have access to this resource. Please check your account privileges.",
    ErrorCategory.NETWORK: "Network error: Please check your connection to the billing backend and try again.",
}

_AUTH_MARKERS = ("auth", "token", "session", "jwt", "401", "unauthorized")
_PERMISSION_MARKERS = ("permission", "403", "forbidden", "row-level security")
_NETWORK_MARKERS = ("network", "connection", "timeout", "timed out")


class BackendServiceError(RuntimeError):
    """A backend failure re-raised with a friendlier message."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN, context: Optional[str] = None):
        super().__init__(message)
        self.category = category
        self.context = context


class RecordNotFoundError(LookupError):
    """Raised when a row expected by id or code does not exist."""


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Sort an exception into an ``ErrorCategory``.

    Classification is by case-insensitive substring of the message, with
    the backend's status code and "no rows" code checked first.
    """
    if isinstance(error, BackendServiceError):
        return error.category
    if isinstance(error, RecordNotFoundError):
        return ErrorCategory.NOT_FOUND

    if isinstance(error, BackendError):
        if error.status_code == 401:
            return ErrorCategory.AUTH
        if error.status_code == 403:
            return ErrorCategory.PERMISSION
        if error.code == NO_ROWS_CODE:
            return ErrorCategory.NOT_FOUND

    message = str(error).lower()
    if any(marker in message for marker in _AUTH_MARKERS):
        return ErrorCategory.AUTH
    if any(marker in message for marker in _PERMISSION_MARKERS):
        return ErrorCategory.PERMISSION
    if isinstance(error, (ConnectionError, TimeoutError)) or any(
        marker in message for marker in _NETWORK_MARKERS
    ):
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


def friendly_message(error: BaseException) -> str:
    category = classify_error(error)
    if category in FRIENDLY_MESSAGES:
        return FRIENDLY_MESSAGES[category]
    return str(error) or "An unknown error occurred"


def handle_backend_error(error: BaseException, context: str = "Backend request") -> NoReturn:
    """
    Log ``error`` and re-raise it in a form the HTTP layer can report.

    Validation errors and missing records pass through unchanged; anything
    else becomes a ``BackendServiceError`` carrying the category.
    """
    if isinstance(error, (ValueError, RecordNotFoundError, BackendServiceError)):
        raise error

    category = classify_error(error)
    if category is ErrorCategory.NOT_FOUND:
        raise RecordNotFoundError(f"{context}: record not found") from error

    logger.warning("%s failed: %s", context, error, extra={"error_category": category.value})
    raise BackendServiceError(friendly_message(error), category=category, context=context) from error


def with_auth_retry(client: BackendClient, operation: Callable[[], T]) -> T:
    """
    Run ``operation``; on an auth failure refresh the session and retry once.

    A failed refresh clears the stored session and re-raises the original
    error.
    """
    try:
        return operation()
    except BackendError as exc:
        if classify_error(exc) is not ErrorCategory.AUTH:
            raise
        logger.info("Auth error from backend, refreshing session and retrying once")
        try:
            client.refresh_session()
        except BackendError:
            client.sign_out()
            raise exc
        return operation()


__all__ = [
    "BackendServiceError",
    "ErrorCategory",
    "FRIENDLY_MESSAGES",
    "RecordNotFoundError",
    "classify_error",
    "friendly_message",
    "handle_backend_error",
    "with_auth_retry",
]
