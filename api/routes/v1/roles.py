"""
api/routes/v1/roles.py -- Role CRUD and user-role assignment.

Routes:
  GET    /api/v1/roles                        -- paged list with ?search= (roles.read)
  GET    /api/v1/roles/{id}                   -- role with granted permissions (roles.read)
  POST   /api/v1/roles                        -- create, optional permission_ids (roles.create)
  PUT    /api/v1/roles/{id}                   -- update; permission_ids replaces grants (roles.update)
  DELETE /api/v1/roles/{id}                   -- soft delete; system roles refused (roles.delete)
  POST   /api/v1/roles/{id}/users             -- assign to a user (roles.update)
  DELETE /api/v1/roles/{id}/users/{user_id}   -- revoke from a user (roles.update)

RBAC edits take effect on the affected users' next request: identities are
resolved per request and never cached.

System roles keep their names (the seed and Settings.default_role refer to
them by name) and cannot be deleted.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import MessageResponse, Pagination, RoleAssign, RoleCreate, RoleListResponse, RoleResponse, RoleUpdate
from auth.dependencies import require_permission
from auth.models import AuthenticatedIdentity, Role
from auth.store import AuthStore

logger = logging.getLogger("schooladmin.api")

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_role_or_404(store: AuthStore, role_id: int) -> Role:
    role = store.get_role(role_id)
    if role is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Role not found."},
        )
    return role


def _check_permission_ids(store: AuthStore, permission_ids: list[int]) -> None:
    missing = set(permission_ids) - store.existing_permission_ids(permission_ids)
    if missing:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "invalid_permissions",
                "message": "One or more permissions do not exist.",
                "detail": ", ".join(str(i) for i in sorted(missing)),
            },
        )


def _name_taken() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "conflict", "message": "A role with that name already exists."},
    )


# ---------------------------------------------------------------------------
# Role CRUD
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=RoleListResponse)
def list_roles(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: Optional[str] = Query(default=None, max_length=50),
    identity: AuthenticatedIdentity = Depends(require_permission("roles.read")),
) -> RoleListResponse:
    store: AuthStore = request.app.state.auth_store
    roles, total = store.list_roles(page=page, limit=limit, search=search)
    return RoleListResponse(
        roles=[RoleResponse.from_role(r) for r in roles],
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)),
    )


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(
    request: Request,
    role_id: int,
    identity: AuthenticatedIdentity = Depends(require_permission("roles.read")),
) -> RoleResponse:
    store: AuthStore = request.app.state.auth_store
    role = _get_role_or_404(store, role_id)
    return RoleResponse.from_role(role, store.get_role_permissions(role_id))


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    identity: AuthenticatedIdentity = Depends(require_permission("roles.create")),
) -> RoleResponse:
    store: AuthStore = request.app.state.auth_store

    if store.get_role_by_name(body.name) is not None:
        raise _name_taken()
    _check_permission_ids(store, body.permission_ids)

    role = Role(
        name=body.name,
        description=body.description,
        inactivity_lock_enabled=body.inactivity_lock_enabled,
        inactivity_lock_days=body.inactivity_lock_days,
        created_by=identity.user_id,
    )
    try:
        role_id = store.create_role(role, body.permission_ids, assigned_by=identity.user_id)
    except IntegrityError as exc:
        # Lost a race with a concurrent create of the same name.
        raise _name_taken() from exc

    logger.info("user_id=%s created role %r (id=%s)", identity.user_id, body.name, role_id)
    return RoleResponse.from_role(store.get_role(role_id), store.get_role_permissions(role_id))


@router.put("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: int,
    body: RoleUpdate,
    identity: AuthenticatedIdentity = Depends(require_permission("roles.update")),
) -> RoleResponse:
    """Update role fields and, when permission_ids is given, replace its grants."""
    store: AuthStore = request.app.state.auth_store
    role = _get_role_or_404(store, role_id)

    updates = body.model_dump(exclude_none=True, exclude={"permission_ids"})
    if not updates and body.permission_ids is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if "name" in updates and updates["name"] != role.name:
        if role.is_system:
            raise HTTPException(
                status_code=400,
                detail={"code": "system_role", "message": "System roles cannot be renamed."},
            )
        if store.get_role_by_name(updates["name"]) is not None:
            raise _name_taken()
    if body.permission_ids is not None:
        _check_permission_ids(store, body.permission_ids)

    try:
        store.update_role(role_id, updated_by=identity.user_id, **updates)
    except IntegrityError as exc:
        raise _name_taken() from exc
    if body.permission_ids is not None:
        store.set_role_permissions(role_id, body.permission_ids, assigned_by=identity.user_id)

    logger.info("user_id=%s updated role id=%s", identity.user_id, role_id)
    return RoleResponse.from_role(store.get_role(role_id), store.get_role_permissions(role_id))


@router.delete("/roles/{role_id}", response_model=MessageResponse)
def delete_role(
    request: Request,
    role_id: int,
    identity: AuthenticatedIdentity = Depends(require_permission("roles.delete")),
) -> MessageResponse:
    """Soft-delete a role. Holders lose its permissions on their next request."""
    store: AuthStore = request.app.state.auth_store
    role = _get_role_or_404(store, role_id)
    if role.is_system:
        raise HTTPException(
            status_code=400,
            detail={"code": "system_role", "message": "Cannot delete system roles."},
        )
    store.deactivate_role(role_id, updated_by=identity.user_id)
    logger.info("user_id=%s deleted role %r (id=%s)", identity.user_id, role.name, role_id)
    return MessageResponse(message="Role deleted successfully")


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


@router.post("/roles/{role_id}/users", response_model=MessageResponse)
def assign_role(
    request: Request,
    role_id: int,
    body: RoleAssign,
    identity: AuthenticatedIdentity = Depends(require_permission("roles.update")),
) -> MessageResponse:
    store: AuthStore = request.app.state.auth_store
    _get_role_or_404(store, role_id)
    if store.get_user(body.user_id) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    try:
        assigned = store.assign_role(body.user_id, role_id, assigned_by=identity.user_id)
    except IntegrityError:
        # A concurrent request inserted the same pair first.
        assigned = False
    if not assigned:
        raise HTTPException(
            status_code=409,
            detail={"code": "already_assigned", "message": "User already has this role."},
        )
    logger.info("user_id=%s assigned role id=%s to user_id=%s", identity.user_id, role_id, body.user_id)
    return MessageResponse(message="Role assigned successfully")


@router.delete("/roles/{role_id}/users/{user_id}", response_model=MessageResponse)
def remove_role(
    request: Request,
    role_id: int,
    user_id: int,
    identity: AuthenticatedIdentity = Depends(require_permission("roles.update")),
) -> MessageResponse:
    store: AuthStore = request.app.state.auth_store
    if not store.remove_role(user_id, role_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Role assignment not found."},
        )
    logger.info("user_id=%s removed role id=%s from user_id=%s", identity.user_id, role_id, user_id)
    return MessageResponse(message="Role removed successfully")
