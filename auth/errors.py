"""
auth/errors.py -- Failure taxonomy for authentication, sessions and RBAC.

Every failure the core can report is an AuthError subclass carrying a stable
machine code and a message that is safe to show an untrusted caller. Internal
detail (SQL errors, stack traces) travels only on __cause__ and into logs.

Authorization denial is deliberately absent from the raise paths of the guard:
has_permission()/has_any_role() return bool. InsufficientPermission exists
for callers that want to turn a False answer into an exception.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all auth core failures."""

    code: str = "auth_error"
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)

    @property
    def public_message(self) -> str:
        return str(self)


class InvalidCredentials(AuthError):
    """Unknown identifier or wrong password. The two are never distinguished."""

    code = "invalid_credentials"
    message = "Invalid credentials."


class AccountLocked(AuthError):
    code = "account_locked"

    def __init__(self, remaining_minutes: int) -> None:
        self.remaining_minutes = remaining_minutes
        super().__init__(f"Account is locked. Try again in {remaining_minutes} minutes.")


class AccountDisabled(AuthError):
    code = "account_disabled"
    message = "Account is disabled."


class NotAuthenticated(AuthError):
    code = "not_authenticated"
    message = "Authentication required."


class SessionExpired(NotAuthenticated):
    """The session outlived its absolute lifetime."""

    code = "session_expired"
    message = "Session expired."


class InactivityExpired(AuthError):
    code = "inactivity_expired"
    message = "Session expired due to inactivity."


class UserNotFound(AuthError):
    code = "user_not_found"
    message = "User not found or inactive."


class InsufficientPermission(AuthError):
    code = "insufficient_permission"
    message = "Insufficient permissions."


class PersistenceError(AuthError):
    """The credential/RBAC store failed. The cause is chained, never surfaced."""

    code = "persistence_error"
    message = "Authentication service unavailable."
