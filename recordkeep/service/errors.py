from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class defines both an HTTP-equivalent status_code and a
    stable error_code so an API layer can map them without inspecting
    messages:
    - validation_error (400)
    - unauthorized / invalid_credentials / session_expired /
      malformed_credential (401)
    - not_found (404)
    - conflict (409)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidInputError(ServiceError):
    """Input failed format validation (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Password did not match the stored digest (401)."""
    error_code = "invalid_credentials"


class SessionExpiredError(AuthenticationError):
    """Refresh session or access token is missing, revoked, or expired (401)."""
    error_code = "session_expired"


class MalformedCredentialError(AuthenticationError):
    """Token failed signature or structural validation (401)."""
    error_code = "malformed_credential"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AlreadyExistsError(ServiceError):
    """Value already held by another live record (409)."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "InvalidInputError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionExpiredError",
    "MalformedCredentialError",
    "NotFoundError",
    "AlreadyExistsError",
]
