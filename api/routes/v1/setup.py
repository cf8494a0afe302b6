"""
api/routes/v1/setup.py -- First-run bootstrap.

POST /api/v1/setup creates the first account, seeds the default system roles
and permissions, and gives that account the Super Admin role. It is only
available while the users table is empty; afterwards it returns 409.

[M1] Race condition guard: the handler re-checks has_users() at the DB level
even though the setup middleware already checked app.state.setup_required.
Two concurrent requests could both pass the in-memory flag; the unique
username/email constraints decide the winner.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import RegisterRequest, RegisterResponse
from auth.models import User
from auth.seed import SUPER_ADMIN, seed_defaults
from auth.store import AuthStore
from auth.tokens import hash_password

logger = logging.getLogger("schooladmin.api")

router = APIRouter()


def _setup_complete() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "setup_complete", "message": "Setup already complete. Please log in."},
    )


@router.post("/setup", response_model=RegisterResponse, status_code=201)
def setup(request: Request, body: RegisterRequest) -> RegisterResponse:
    store: AuthStore = request.app.state.auth_store

    if store.has_users():  # [M1]
        raise _setup_complete()

    try:
        user_id = store.create_user(
            User(
                username=body.username,
                email=body.email,
                full_name=body.full_name,
                password_hash=hash_password(body.password),
            )
        )
    except IntegrityError as exc:
        raise _setup_complete() from exc

    role_ids = seed_defaults(store, created_by=user_id)
    store.assign_role(user_id, role_ids[SUPER_ADMIN], assigned_by=user_id)
    request.app.state.setup_required = False
    logger.info("Initial setup complete: user_id=%s is %s", user_id, SUPER_ADMIN)
    return RegisterResponse(message="Setup complete", user_id=user_id)
