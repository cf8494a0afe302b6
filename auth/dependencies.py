"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and RBAC.

Every protected request runs the same pipeline:
  1. Read the opaque session id from the session cookie.
  2. SessionPolicy.validate() -- liveness, inactivity and lifetime checks;
     stamps last_activity.
  3. resolve_identity() -- rebuild roles and permissions from the store.
  4. require_permission()/require_any_role() -- 403 before the route body
     runs if the guard answers False.

get_current_identity() raises HTTP 401/403/503 via auth_error_to_http().

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.errors import (
    AccountDisabled,
    AccountLocked,
    AuthError,
    InsufficientPermission,
    NotAuthenticated,
    PersistenceError,
    UserNotFound,
)
from auth.guard import has_any_role, has_permission
from auth.models import AuthenticatedIdentity
from auth.rbac import resolve_identity
from core.config import get_settings

logger = logging.getLogger("schooladmin.auth")


def auth_error_to_http(exc: AuthError) -> HTTPException:
    """Translate a core failure into an HTTPException with a structured detail."""
    if isinstance(exc, AccountLocked):
        status = 423
    elif isinstance(exc, (AccountDisabled, InsufficientPermission)):
        status = 403
    elif isinstance(exc, PersistenceError):
        status = 503
    else:
        status = 401
    return HTTPException(status_code=status, detail={"code": exc.code, "message": exc.public_message})


def session_id_from(request: Request) -> str | None:
    return request.cookies.get(get_settings().session_cookie_name)


def get_current_identity(request: Request) -> AuthenticatedIdentity:
    """Require a live session. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: AuthenticatedIdentity = Depends(get_current_identity)): ...

    A session whose user has since been deactivated is destroyed here, so the
    next request sees a plain 401.
    """
    sessions = request.app.state.sessions
    raw_id = session_id_from(request)
    try:
        session = sessions.validate(raw_id)
        try:
            identity = resolve_identity(request.app.state.auth_store, session.user_id)
        except UserNotFound:
            sessions.destroy(raw_id)
            logger.info("Session for user_id=%s ended: user missing or inactive", session.user_id)
            raise NotAuthenticated() from None
    except AuthError as exc:
        raise auth_error_to_http(exc) from exc
    request.state.identity = identity
    return identity


def _forbidden() -> HTTPException:
    return auth_error_to_http(InsufficientPermission())


def require_permission(permission_name: str) -> Callable[..., AuthenticatedIdentity]:
    """Dependency factory: 401 without a session, 403 without the permission.

    Use as a FastAPI dependency:
        @router.post("/roles")
        def create(identity = Depends(require_permission("roles.create"))): ...
    """

    def dependency(identity: AuthenticatedIdentity = Depends(get_current_identity)) -> AuthenticatedIdentity:
        if not has_permission(identity, permission_name):
            logger.info("user_id=%s denied: missing permission %s", identity.user_id, permission_name)
            raise _forbidden()
        return identity

    return dependency


def require_any_role(*role_names: str) -> Callable[..., AuthenticatedIdentity]:
    """Dependency factory: 401 without a session, 403 unless one of role_names is held."""

    def dependency(identity: AuthenticatedIdentity = Depends(get_current_identity)) -> AuthenticatedIdentity:
        if not has_any_role(identity, role_names):
            logger.info("user_id=%s denied: none of roles %s", identity.user_id, ", ".join(role_names))
            raise _forbidden()
        return identity

    return dependency
