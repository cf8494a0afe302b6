"""
api/routes/v1/users.py -- Administrative account management.

Routes:
  GET   /api/v1/users        -- list accounts with their active roles (users.read)
  PATCH /api/v1/users/{id}   -- profile edits, activate/deactivate, unlock (users.update)

Security:
  [M4] PATCH blocks self-deactivation (an admin locking themselves out).
  Deactivation destroys every session of the target immediately; the next
  request from any of them gets 401.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import UserPatch, UserResponse
from auth.dependencies import require_permission
from auth.models import AuthenticatedIdentity
from auth.sessions import SessionPolicy
from auth.store import AuthStore

logger = logging.getLogger("schooladmin.api")

router = APIRouter()


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    identity: AuthenticatedIdentity = Depends(require_permission("users.read")),
) -> list[UserResponse]:
    store: AuthStore = request.app.state.auth_store
    return [UserResponse.from_user(u, store.get_user_roles(u.id)) for u in store.list_users()]


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    identity: AuthenticatedIdentity = Depends(require_permission("users.update")),
) -> UserResponse:
    """Update a user's profile, active flag or lockout state.

    unlock=true clears failed_login_attempts and locked_until. is_active=false
    ends all of the user's sessions.
    """
    store: AuthStore = request.app.state.auth_store
    sessions: SessionPolicy = request.app.state.sessions

    target = store.get_user(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )

    updates = body.model_dump(exclude_none=True, exclude={"unlock"})
    if not updates and not body.unlock:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if updates.get("is_active") is False and target.id == identity.user_id:  # [M4]
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )

    if updates:
        try:
            store.update_user(user_id, **updates)
        except IntegrityError as exc:
            raise HTTPException(
                status_code=409,
                detail={"code": "conflict", "message": "Email already in use."},
            ) from exc
    if body.unlock:
        store.unlock_user(user_id)
        logger.info("user_id=%s unlocked user_id=%s", identity.user_id, user_id)
    if updates.get("is_active") is False:
        sessions.destroy_all(user_id)
        logger.info("user_id=%s deactivated user_id=%s", identity.user_id, user_id)

    return UserResponse.from_user(store.get_user(user_id), store.get_user_roles(user_id))
