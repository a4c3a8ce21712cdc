"""
auth/errors.py -- Exception taxonomy for the identity subsystem.

Every error carries a stable error_code and the HTTP status_code it maps to.
The api/ layer translates them in one exception handler, so stores, the
session service and the authorization pipeline simply raise.

Messages are deliberately generic. The root cause of an authentication
failure (unknown email, wrong password, expired token, replayed refresh
token) is logged server-side and never returned to the caller.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for identity-subsystem errors mapped to HTTP responses."""

    status_code: int = 500
    error_code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationError(AuthError):
    """Bad credentials, or a missing/invalid/expired access or refresh token (401)."""

    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required."


class AuthorizationError(AuthError):
    """Authenticated, but the role or permission set does not allow the route (403)."""

    status_code = 403
    error_code = "forbidden"
    default_message = "You do not have access to this resource."


class ConflictError(AuthError):
    """Refresh-token value collided twice during one rotation.

    Only escapes the store after the internal retry also failed, so the HTTP
    boundary reports it as a generic internal error.
    """

    status_code = 500
    error_code = "conflict"
    default_message = "Could not issue a refresh token."


__all__ = ["AuthError", "AuthenticationError", "AuthorizationError", "ConflictError"]
