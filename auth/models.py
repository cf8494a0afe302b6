"""
auth/models.py -- Domain dataclasses for authentication and RBAC entities.

Pattern: Data class (pure data container, zero logic beyond derived views).
The store maps rows into these records at the storage boundary; the
authenticator, session policy and guard only ever see these types.

Timestamps are timezone-aware UTC datetimes. The store persists them as
ISO 8601 text and converts on the way in and out.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """An administrative account.

    failed_login_attempts and locked_until are the lockout bookkeeping. A lock
    is in effect only while locked_until is in the future; an expired value is
    cleared on the next successful login or failed attempt.
    """

    username: str
    email: str
    full_name: str
    password_hash: str
    id: int | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None
    created_by: int | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Role:
    """A named bundle of permissions.

    System roles are seeded at setup and cannot be deleted. When
    inactivity_lock_enabled is set, sessions of users holding this role expire
    after inactivity_lock_days without an authorized request.
    """

    name: str
    description: str | None = None
    id: int | None = None
    is_system: bool = False
    is_active: bool = True
    inactivity_lock_enabled: bool = False
    inactivity_lock_days: int = 30
    created_by: int | None = None
    created_at: datetime | None = None
    updated_by: int | None = None
    updated_at: datetime | None = None
    user_count: int | None = None  # populated by list queries only


@dataclass
class Permission:
    """A single capability, named "<module>.<action>" by convention (e.g. news.publish)."""

    name: str
    module: str
    action: str
    description: str | None = None
    id: int | None = None
    is_system: bool = False
    is_active: bool = True
    created_by: int | None = None
    created_at: datetime | None = None


@dataclass
class UserRole:
    """Assignment of a role to a user. At most one active row per (user, role)."""

    user_id: int
    role_id: int
    id: int | None = None
    is_active: bool = True
    assigned_by: int | None = None
    assigned_at: datetime | None = None


@dataclass
class RolePermission:
    """Grant of a permission to a role. Revocation clears is_granted."""

    role_id: int
    permission_id: int
    id: int | None = None
    is_granted: bool = True
    assigned_by: int | None = None
    assigned_at: datetime | None = None


@dataclass
class Session:
    """Server-side session record.

    session_key is HMAC-SHA256(SECRET_KEY, raw_session_id). The raw id only
    ever lives in the client cookie.
    """

    session_key: str
    user_id: int
    created_at: datetime
    last_activity: datetime
    expires_at: datetime | None = None


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Snapshot of a user with every role and permission reachable right now.

    Built by auth.rbac.resolve_identity() on each request and never persisted,
    so RBAC changes apply on the next request without a re-login.
    """

    user: User
    roles: tuple[Role, ...] = ()
    permissions: tuple[Permission, ...] = ()
    role_names: frozenset[str] = field(init=False)
    permission_names: frozenset[str] = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "role_names", frozenset(r.name for r in self.roles))
        object.__setattr__(self, "permission_names", frozenset(p.name for p in self.permissions))

    @property
    def user_id(self) -> int:
        return self.user.id  # type: ignore[return-value]
