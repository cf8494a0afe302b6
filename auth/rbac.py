"""
auth/rbac.py -- Resolve a user id into an AuthenticatedIdentity.

The identity is rebuilt from the RBAC graph on every session-bearing request
and never cached, so revoking an assignment, deactivating a role or clearing
a grant takes effect on the caller's very next request.

Fails closed: a storage error raises PersistenceError, never an identity with
fewer (or more) permissions than the graph holds.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import PersistenceError, UserNotFound
from auth.models import AuthenticatedIdentity
from auth.store import AuthStore

logger = logging.getLogger("schooladmin.auth")

_T = TypeVar("_T")


def _unique_by_id(items: Iterable[_T]) -> tuple[_T, ...]:
    seen: dict[int, _T] = {}
    for item in items:
        seen.setdefault(item.id, item)  # type: ignore[attr-defined]
    return tuple(seen.values())


def resolve_identity(store: AuthStore, user_id: int) -> AuthenticatedIdentity:
    """Return the user plus every role and permission reachable right now.

    Raises:
        UserNotFound: the user row is missing or inactive.
        PersistenceError: the store failed.
    """
    try:
        user = store.get_user(user_id)
        if user is None or not user.is_active:
            raise UserNotFound()
        roles, permissions = store.get_rbac_graph(user_id)
    except SQLAlchemyError as exc:
        logger.error("RBAC resolution failed for user_id=%s: %s", user_id, exc.__class__.__name__)
        raise PersistenceError() from exc
    return AuthenticatedIdentity(
        user=user,
        roles=_unique_by_id(roles),
        permissions=_unique_by_id(permissions),
    )
