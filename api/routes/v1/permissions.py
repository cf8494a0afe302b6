"""
api/routes/v1/permissions.py -- Permission catalogue endpoints.

Routes:
  GET  /api/v1/permissions            -- flat list, optional ?module= filter (roles.read)
  GET  /api/v1/permissions/by-module  -- grouped by module for the role editor (roles.read)
  POST /api/v1/permissions            -- create a custom permission (roles.manage)

Permissions are create-only. There is no update or delete endpoint; a
permission leaves a role only by revoking the grant.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import PermissionCreate, PermissionResponse
from auth.dependencies import require_permission
from auth.models import AuthenticatedIdentity, Permission
from auth.store import AuthStore

logger = logging.getLogger("schooladmin.api")

router = APIRouter()


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(
    request: Request,
    module: Optional[str] = Query(default=None, max_length=50),
    identity: AuthenticatedIdentity = Depends(require_permission("roles.read")),
) -> list[PermissionResponse]:
    store: AuthStore = request.app.state.auth_store
    return [PermissionResponse.from_permission(p) for p in store.list_permissions(module=module)]


@router.get("/permissions/by-module", response_model=dict[str, list[PermissionResponse]])
def permissions_by_module(
    request: Request,
    identity: AuthenticatedIdentity = Depends(require_permission("roles.read")),
) -> dict[str, list[PermissionResponse]]:
    """Return {module: [permission, ...]} with modules in alphabetical order."""
    store: AuthStore = request.app.state.auth_store
    grouped: dict[str, list[PermissionResponse]] = {}
    for permission in store.list_permissions():
        grouped.setdefault(permission.module, []).append(PermissionResponse.from_permission(permission))
    return grouped


@router.post("/permissions", response_model=PermissionResponse, status_code=201)
def create_permission(
    request: Request,
    body: PermissionCreate,
    identity: AuthenticatedIdentity = Depends(require_permission("roles.manage")),
) -> PermissionResponse:
    store: AuthStore = request.app.state.auth_store
    try:
        permission_id = store.create_permission(
            Permission(
                name=body.name,
                description=body.description,
                module=body.module,
                action=body.action.value,
                created_by=identity.user_id,
            )
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A permission with that name already exists."},
        ) from exc
    logger.info("user_id=%s created permission %s", identity.user_id, body.name)
    return PermissionResponse.from_permission(store.get_permission(permission_id))
