"""
api/routes/v1/auth.py -- Login, logout, session and account endpoints.

Routes:
  POST /api/v1/auth/login            -- password login; sets the session cookie
  POST /api/v1/auth/logout           -- destroys the session; clears the cookie
  GET  /api/v1/auth/me               -- current identity (requires auth)
  POST /api/v1/auth/change-password  -- requires auth; ends the user's other sessions
  GET  /api/v1/auth/session-status   -- public; reports liveness without extending it
  POST /api/v1/auth/register         -- create an account (users.create)

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] Authenticator.authenticate() owns timing equalization and lockout -- never
       inline get_by_identifier() + verify_password() here.
  [S1] Login destroys any session already presented by the client before
       issuing a new id (session fixation).
  [M5] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    SessionStatusResponse,
)
from auth.authenticator import Authenticator
from auth.dependencies import auth_error_to_http, get_current_identity, require_permission, session_id_from
from auth.errors import AuthError
from auth.models import AuthenticatedIdentity, User
from auth.sessions import SessionPolicy
from auth.store import AuthStore
from auth.tokens import clear_session_cookie, hash_password, set_session_cookie, verify_password
from core.config import get_settings

logger = logging.getLogger("schooladmin.api")

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/login:           public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:          public -- ending a session needs no live identity
# - GET  /api/v1/auth/session-status:  public -- the admin UI polls this before rendering
# - GET  /api/v1/auth/me:              requires auth (get_current_identity)
# - POST /api/v1/auth/change-password: requires auth (get_current_identity)
# - POST /api/v1/auth/register:        requires users.create
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username (or email) and password; set the session cookie.

    Failures return {"success": false, "message": ..., "error": {...}} with
    401 (bad credentials), 423 (locked), 403 (disabled) or 503 (store down).
    The message for an unknown user and a wrong password is identical.
    """
    authenticator: Authenticator = request.app.state.authenticator
    sessions: SessionPolicy = request.app.state.sessions
    try:
        identity = authenticator.authenticate(body.username, body.password)  # [C1]
    except AuthError as exc:
        http_exc = auth_error_to_http(exc)
        resp = JSONResponse(
            status_code=http_exc.status_code,
            content={"success": False, "message": exc.public_message, "error": http_exc.detail},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    sessions.destroy(session_id_from(request))  # [S1]
    raw_id, _session = sessions.start(identity.user_id)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(user=IdentityResponse.from_identity(identity)).model_dump(),
    )
    set_session_cookie(resp, raw_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Destroy the server-side session and clear the cookie. Idempotent."""
    sessions: SessionPolicy = request.app.state.sessions
    sessions.destroy(session_id_from(request))
    resp = JSONResponse(content=MessageResponse(message="Logout successful").model_dump())
    clear_session_cookie(resp)
    return resp


@router.get("/auth/session-status", response_model=SessionStatusResponse)
def session_status(request: Request) -> SessionStatusResponse:
    """Report whether the presented session is live. Does not stamp activity."""
    sessions: SessionPolicy = request.app.state.sessions
    session = sessions.peek(session_id_from(request))
    if session is None:
        return SessionStatusResponse(authenticated=False)
    return SessionStatusResponse(
        authenticated=True,
        last_activity=session.last_activity.isoformat(),
        expires_at=session.expires_at.isoformat() if session.expires_at else None,
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(identity: AuthenticatedIdentity = Depends(get_current_identity)) -> MeResponse:
    """Return the current user with roles and permissions resolved for this request."""
    return MeResponse(user=IdentityResponse.from_identity(identity))


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> MessageResponse:
    """Change the caller's password after re-verifying the current one.

    Every other session of the user is destroyed; the caller's session stays.
    """
    store: AuthStore = request.app.state.auth_store
    sessions: SessionPolicy = request.app.state.sessions

    if not verify_password(body.current_password, identity.user.password_hash):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_current_password", "message": "Current password is incorrect."},
        )

    store.update_user(identity.user_id, password_hash=hash_password(body.new_password))
    ended = sessions.destroy_all(identity.user_id, keep_raw_session_id=session_id_from(request))
    logger.info("Password changed for user_id=%s (%d other session(s) ended)", identity.user_id, ended)
    return MessageResponse(message="Password changed successfully")


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(
    request: Request,
    body: RegisterRequest,
    identity: AuthenticatedIdentity = Depends(require_permission("users.create")),
) -> RegisterResponse:
    """Create an account. It receives Settings.default_role when that role exists."""
    store: AuthStore = request.app.state.auth_store

    new_user = User(
        username=body.username,
        email=body.email,
        full_name=body.full_name,
        password_hash=hash_password(body.password),
        created_by=identity.user_id,
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "Username or email already exists."},
        ) from exc

    default_role = store.get_role_by_name(_settings.default_role)
    if default_role is not None and default_role.is_active:
        store.assign_role(user_id, default_role.id, assigned_by=identity.user_id)
    logger.info("user_id=%s registered user_id=%s", identity.user_id, user_id)
    return RegisterResponse(user_id=user_id)
