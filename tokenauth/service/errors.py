from __future__ import annotations

from typing import Optional


class TokenAuthError(Exception):
    """Base class for authentication-core failures."""


class DecodeError(TokenAuthError):
    """Token text is malformed, forged, corrupted or of the wrong length."""


class NonceMismatch(TokenAuthError):
    """The token's nonce does not verify against the stored refresh-token hash."""


class ConfigError(TokenAuthError, ValueError):
    """Invalid startup configuration, e.g. a cipher key of the wrong length."""


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "TokenAuthError",
    "DecodeError",
    "NonceMismatch",
    "ConfigError",
    "ServiceError",
    "AuthenticationError",
    "NotFoundError",
    "ServerError",
]
