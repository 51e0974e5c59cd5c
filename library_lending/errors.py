"""Error taxonomy shared by the store, the lending core and the HTTP layer."""

from typing import Any, Dict, Optional


class LibraryError(Exception):
    """Base class for every error the library raises on purpose."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(LibraryError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(LibraryError):
    """Business-rule or optimistic-concurrency violation.

    ``retryable`` is True only when the failure came from losing a write race;
    re-running the whole operation from a fresh read is then safe. Rule
    violations such as an exhausted borrowing limit are terminal.
    """

    code = "CONFLICT"
    status_code = 409

    def __init__(self, message: str, retryable: bool = False, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.retryable = retryable
        self.details.setdefault("retryable", retryable)


class InvalidInputError(LibraryError):
    code = "BAD_REQUEST"
    status_code = 400


class StoreUnavailableError(LibraryError):
    """Transient storage failure (locked or unreachable database)."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class UnauthorizedError(LibraryError):
    code = "UNAUTHORIZED"
    status_code = 401
