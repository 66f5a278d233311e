"""
Storefront error kinds.

Every error carries a user-facing message and the HTTP status the API layer
answers with. None of them is fatal: each operation can be retried by
re-issuing the user action.
"""
from typing import Optional

UNIQUE_VIOLATION = "23505"
UNAVAILABLE = "unavailable"


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    """Bad input: empty address, missing selection, empty cart, ..."""
    status_code = 400


class NotFoundError(StorefrontError):
    status_code = 404


class ConstraintError(StorefrontError):
    """A business or store constraint rejected the request."""
    status_code = 409


class PermissionDeniedError(StorefrontError):
    status_code = 403


class DependencyError(StorefrontError):
    """The data store failed or could not be reached."""
    status_code = 503

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code or UNAVAILABLE


def is_unique_violation(exc: Exception) -> bool:
    return isinstance(exc, DependencyError) and exc.code == UNIQUE_VIOLATION
