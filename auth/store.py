"""
auth/store.py -- SQLAlchemy Core persistence layer for credentials, RBAC and sessions.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. The authenticator, session policy and routes never
touch SQL directly, and never see a raw row.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Failed-login bookkeeping (record_failed_login) runs inside one transaction
  and increments the counter in SQL (attempts = attempts + 1), so two
  concurrent wrong passwords cannot lose an update.

  Sessions are stored under an HMAC digest of the cookie value (see
  auth/tokens.py). This module never sees a raw session id.

Timestamps are stored as fixed-width ISO 8601 UTC text
(timespec="microseconds") so that SQL string comparison orders them
chronologically.

Errors: methods let sqlalchemy.exc.SQLAlchemyError propagate. The core
components decide whether a storage failure fails closed (authentication,
resolution) or open (inactivity timeout lookup).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Permission, Role, RolePermission, Session, User, UserRole
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(100), nullable=False, unique=True),
    Column("full_name", String(100), nullable=False),
    Column("password_hash", String(255), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
    Column("created_by", Integer),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", String(255)),
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("inactivity_lock_enabled", Integer, nullable=False, server_default="0"),
    Column("inactivity_lock_days", Integer, nullable=False, server_default="30"),
    Column("created_by", Integer),
    Column("created_at", String(32), nullable=False),
    Column("updated_by", Integer),
    Column("updated_at", String(32)),
)

_permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", String(255)),
    Column("module", String(50), nullable=False),
    Column("action", String(20), nullable=False),
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_by", Integer),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("assigned_by", Integer),
    Column("assigned_at", String(32), nullable=False),
    # One row per pair. Revocation flips is_active; re-assignment flips it back.
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)

_role_permissions = Table(
    "role_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    Column("is_granted", Integer, nullable=False, server_default="1"),
    Column("assigned_by", Integer),
    Column("assigned_at", String(32), nullable=False),
    UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("session_key", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("last_activity", String(32), nullable=False),
    Column("expires_at", String(32)),
)

_USER_UPDATABLE = {"email", "full_name", "is_active", "password_hash"}
_ROLE_UPDATABLE = {"name", "description", "inactivity_lock_enabled", "inactivity_lock_days"}
_BOOL_COLUMNS = {"is_active", "inactivity_lock_enabled"}


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Foreign keys are off by default in SQLite,
    which would leave ON DELETE CASCADE inert.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coerce(fields: dict) -> dict:
    return {k: (1 if v else 0) if k in _BOOL_COLUMNS else v for k, v in fields.items()}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, the RBAC graph and server-side sessions.

    One instance is created by the process entry point and injected into the
    authenticator, the session policy and the routes.

    Usage:
        store = AuthStore("sqlite:///school.db")
        user_id = store.create_user(User(username="alice", email="a@school.test",
                                         full_name="Alice", password_hash=hash_password("pw")))
        roles, permissions = store.get_rbac_graph(user_id)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username or email exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    full_name=user.full_name,
                    password_hash=user.password_hash,
                    is_active=1 if user.is_active else 0,
                    failed_login_attempts=user.failed_login_attempts,
                    locked_until=_iso(user.locked_until),
                    created_by=user.created_by,
                    created_at=_iso(user.created_at or _now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_identifier(self, identifier: str) -> User | None:
        """Look up a user by exact username or email (case-sensitive).

        Usernames and emails share one lookup so the login form accepts either.
        A username match wins if one account's username equals another's email.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(or_(_users.c.username == identifier, _users.c.email == identifier))
            ).fetchall()
        if not rows:
            return None
        rows.sort(key=lambda r: r.username != identifier)
        return _row_to_user(rows[0])

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields. Returns False if user_id was not found.

        Accepted fields: email, full_name, is_active, password_hash. Lockout
        columns are written only by the login bookkeeping methods below.
        """
        unknown = set(fields) - _USER_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return False
        values = _coerce(fields)
        values["updated_at"] = _iso(_now())
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def record_failed_login(
        self,
        user_id: int,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
    ) -> tuple[int, datetime | None]:
        """Count one failed password check and lock the account at the threshold.

        The increment happens in SQL inside a transaction, followed by the
        threshold check, so concurrent failures cannot lose an update. A lock
        that has already lapsed starts a fresh counting window: the counter
        restarts at 1 rather than re-locking on the first post-lock mistake.

        Returns (attempts, locked_until). locked_until is None unless this call
        set a lock.
        """
        now_iso = _iso(now)
        lapsed = and_(_users.c.locked_until.is_not(None), _users.c.locked_until <= now_iso)
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_login_attempts=case((lapsed, 1), else_=_users.c.failed_login_attempts + 1),
                    locked_until=case((lapsed, None), else_=_users.c.locked_until),
                )
            )
            attempts = conn.execute(
                select(_users.c.failed_login_attempts).where(_users.c.id == user_id)
            ).scalar_one()
            locked_until: datetime | None = None
            if attempts >= max_attempts:
                locked_until = now + lockout
                conn.execute(_users.update().where(_users.c.id == user_id).values(locked_until=_iso(locked_until)))
        return attempts, locked_until

    def record_successful_login(self, user_id: int, now: datetime) -> None:
        """Reset the failure counter, clear any lock, and stamp last_login."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=0, locked_until=None, last_login=_iso(now))
            )

    def unlock_user(self, user_id: int) -> bool:
        """Administrative unlock: clear the lock and the failure counter."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(failed_login_attempts=0, locked_until=None)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(
        self,
        role: Role,
        permission_ids: Iterable[int] = (),
        assigned_by: int | None = None,
    ) -> int:
        """Insert a role and its initial grants in one transaction.

        Raises sqlalchemy.exc.IntegrityError if the name is taken or a
        permission id does not exist.
        """
        now_iso = _iso(_now())
        with self.engine.begin() as conn:
            result = conn.execute(
                _roles.insert().values(
                    name=role.name,
                    description=role.description,
                    is_system=1 if role.is_system else 0,
                    is_active=1 if role.is_active else 0,
                    inactivity_lock_enabled=1 if role.inactivity_lock_enabled else 0,
                    inactivity_lock_days=role.inactivity_lock_days,
                    created_by=role.created_by,
                    created_at=now_iso,
                )
            )
            role_id = result.inserted_primary_key[0]
            for permission_id in dict.fromkeys(permission_ids):
                conn.execute(
                    _role_permissions.insert().values(
                        role_id=role_id,
                        permission_id=permission_id,
                        is_granted=1,
                        assigned_by=assigned_by,
                        assigned_at=now_iso,
                    )
                )
        return role_id

    def get_role(self, role_id: int, include_inactive: bool = False) -> Role | None:
        stmt = _roles.select().where(_roles.c.id == role_id)
        if not include_inactive:
            stmt = stmt.where(_roles.c.is_active == 1)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self, page: int = 1, limit: int = 10, search: str | None = None) -> tuple[list[Role], int]:
        """Return one page of active roles (newest first) and the total count.

        Each role carries user_count: the number of active assignments.
        """
        where = _roles.c.is_active == 1
        if search:
            where = and_(
                where,
                or_(
                    _roles.c.name.contains(search, autoescape=True),
                    _roles.c.description.contains(search, autoescape=True),
                ),
            )
        user_count = (
            select(func.count(_user_roles.c.id))
            .where((_user_roles.c.role_id == _roles.c.id) & (_user_roles.c.is_active == 1))
            .scalar_subquery()
        )
        stmt = (
            select(_roles, user_count.label("user_count"))
            .where(where)
            .order_by(_roles.c.created_at.desc(), _roles.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_roles).where(where)).scalar() or 0
            rows = conn.execute(stmt).fetchall()
        return [_row_to_role(r) for r in rows], total

    def update_role(self, role_id: int, updated_by: int | None = None, **fields) -> bool:
        """Update mutable role fields on an active role.

        Accepted fields: name, description, inactivity_lock_enabled,
        inactivity_lock_days. Returns False if no active role matched.
        """
        unknown = set(fields) - _ROLE_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown role fields: {unknown!r}")
        values = _coerce(fields)
        values.update(updated_by=updated_by, updated_at=_iso(_now()))
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.update().where((_roles.c.id == role_id) & (_roles.c.is_active == 1)).values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_role(self, role_id: int, updated_by: int | None = None) -> bool:
        """Soft-delete a non-system role. Returns False for system or missing roles.

        The WHERE clause repeats the system-role guard so the invariant holds
        even if a caller skips its own check.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.update()
                .where((_roles.c.id == role_id) & (_roles.c.is_system == 0) & (_roles.c.is_active == 1))
                .values(is_active=0, updated_by=updated_by, updated_at=_iso(_now()))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> int:
        """Insert a permission. Raises IntegrityError if the name exists."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _permissions.insert().values(
                    name=permission.name,
                    description=permission.description,
                    module=permission.module,
                    action=permission.action,
                    is_system=1 if permission.is_system else 0,
                    is_active=1 if permission.is_active else 0,
                    created_by=permission.created_by,
                    created_at=_iso(_now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_permission(self, permission_id: int) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.id == permission_id)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def get_permission_by_name(self, name: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permissions(self, module: str | None = None) -> list[Permission]:
        """Return active permissions ordered by module, action, name."""
        stmt = _permissions.select().where(_permissions.c.is_active == 1)
        if module:
            stmt = stmt.where(_permissions.c.module == module)
        stmt = stmt.order_by(_permissions.c.module, _permissions.c.action, _permissions.c.name)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_permission(r) for r in rows]

    def existing_permission_ids(self, permission_ids: Iterable[int]) -> set[int]:
        """Return the subset of permission_ids that name active permissions."""
        ids = set(permission_ids)
        if not ids:
            return set()
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_permissions.c.id).where(_permissions.c.id.in_(ids) & (_permissions.c.is_active == 1))
            ).fetchall()
        return {r.id for r in rows}

    # ------------------------------------------------------------------
    # Grants (role <-> permission)
    # ------------------------------------------------------------------

    def get_grant(self, role_id: int, permission_id: int) -> RolePermission | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _role_permissions.select().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
                )
            ).fetchone()
        return _row_to_grant(row) if row is not None else None

    def get_role_permissions(self, role_id: int) -> list[Permission]:
        """Return the active permissions currently granted to a role."""
        stmt = (
            select(_permissions)
            .select_from(_role_permissions.join(_permissions, _role_permissions.c.permission_id == _permissions.c.id))
            .where(
                (_role_permissions.c.role_id == role_id)
                & (_role_permissions.c.is_granted == 1)
                & (_permissions.c.is_active == 1)
            )
            .order_by(_permissions.c.module, _permissions.c.action, _permissions.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_permission(r) for r in rows]

    def grant_permission(self, role_id: int, permission_id: int, assigned_by: int | None = None) -> bool:
        """Grant a permission to a role. Returns False if it was already granted."""
        with self.engine.begin() as conn:
            return _upsert_grant(conn, role_id, permission_id, assigned_by, _iso(_now()))

    def revoke_permission(self, role_id: int, permission_id: int) -> bool:
        """Clear a grant. Returns False if the role did not hold it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _role_permissions.update()
                .where(
                    (_role_permissions.c.role_id == role_id)
                    & (_role_permissions.c.permission_id == permission_id)
                    & (_role_permissions.c.is_granted == 1)
                )
                .values(is_granted=0)
            )
            conn.commit()
        return result.rowcount > 0

    def set_role_permissions(self, role_id: int, permission_ids: Iterable[int], assigned_by: int | None = None) -> None:
        """Make the role's grant set exactly permission_ids, in one transaction.

        Grants outside the set are revoked (is_granted=0), not deleted, so the
        history of who assigned what survives.
        """
        wanted = list(dict.fromkeys(permission_ids))
        now_iso = _iso(_now())
        with self.engine.begin() as conn:
            revoke = _role_permissions.update().where(_role_permissions.c.role_id == role_id)
            if wanted:
                revoke = revoke.where(_role_permissions.c.permission_id.not_in(wanted))
            conn.execute(revoke.values(is_granted=0))
            for permission_id in wanted:
                _upsert_grant(conn, role_id, permission_id, assigned_by, now_iso)

    # ------------------------------------------------------------------
    # Assignments (user <-> role)
    # ------------------------------------------------------------------

    def get_assignment(self, user_id: int, role_id: int) -> UserRole | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _user_roles.select().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            ).fetchone()
        return _row_to_assignment(row) if row is not None else None

    def assign_role(self, user_id: int, role_id: int, assigned_by: int | None = None) -> bool:
        """Assign a role to a user. Returns False if the assignment was already active.

        A previously revoked assignment is re-activated in place, which keeps
        (user, role) unique across active and inactive rows alike.
        """
        now_iso = _iso(_now())
        with self.engine.begin() as conn:
            row = conn.execute(
                _user_roles.select().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            ).fetchone()
            if row is not None:
                if row.is_active:
                    return False
                conn.execute(
                    _user_roles.update()
                    .where(_user_roles.c.id == row.id)
                    .values(is_active=1, assigned_by=assigned_by, assigned_at=now_iso)
                )
                return True
            conn.execute(
                _user_roles.insert().values(
                    user_id=user_id, role_id=role_id, is_active=1, assigned_by=assigned_by, assigned_at=now_iso
                )
            )
        return True

    def remove_role(self, user_id: int, role_id: int) -> bool:
        """Deactivate an assignment. Returns False if it was not active."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.update()
                .where(
                    (_user_roles.c.user_id == user_id)
                    & (_user_roles.c.role_id == role_id)
                    & (_user_roles.c.is_active == 1)
                )
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def get_user_roles(self, user_id: int) -> list[Role]:
        """Return the active roles a user holds through active assignments."""
        with self.engine.connect() as conn:
            return _select_user_roles(conn, user_id)

    # ------------------------------------------------------------------
    # RBAC resolution queries
    # ------------------------------------------------------------------

    def get_rbac_graph(self, user_id: int) -> tuple[list[Role], list[Permission]]:
        """Return (roles, permissions) reachable from a user, as joined rows.

        users -> user_roles (active) -> roles (active) -> role_permissions
        (granted) -> permissions (active). Permissions reachable through more
        than one role appear once per path; auth.rbac de-duplicates.
        """
        with self.engine.connect() as conn:
            roles = _select_user_roles(conn, user_id)
            role_ids = [r.id for r in roles]
            if not role_ids:
                return roles, []
            rows = conn.execute(
                select(_permissions)
                .select_from(
                    _role_permissions.join(_permissions, _role_permissions.c.permission_id == _permissions.c.id)
                )
                .where(
                    _role_permissions.c.role_id.in_(role_ids)
                    & (_role_permissions.c.is_granted == 1)
                    & (_permissions.c.is_active == 1)
                )
                .order_by(_permissions.c.id)
            ).fetchall()
        return roles, [_row_to_permission(r) for r in rows]

    def min_inactivity_days(self, user_id: int) -> int | None:
        """Return the smallest enabled inactivity_lock_days across the user's roles.

        Only active assignments to active roles with the policy enabled and a
        positive day count take part. None means no role enables the policy.
        """
        stmt = (
            select(func.min(_roles.c.inactivity_lock_days))
            .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
            .where(
                (_user_roles.c.user_id == user_id)
                & (_user_roles.c.is_active == 1)
                & (_roles.c.is_active == 1)
                & (_roles.c.inactivity_lock_enabled == 1)
                & (_roles.c.inactivity_lock_days > 0)
            )
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    session_key=session.session_key,
                    user_id=session.user_id,
                    created_at=_iso(session.created_at),
                    last_activity=_iso(session.last_activity),
                    expires_at=_iso(session.expires_at),
                )
            )
            conn.commit()

    def get_session(self, session_key: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_key == session_key)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_key: str, now: datetime) -> bool:
        """Stamp last_activity. Last write wins when requests race on one session."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update().where(_sessions.c.session_key == session_key).values(last_activity=_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_session(self, session_key: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.session_key == session_key))
            conn.commit()
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: int, keep: str | None = None) -> int:
        """Delete every session of a user, optionally sparing one session_key."""
        stmt = _sessions.delete().where(_sessions.c.user_id == user_id)
        if keep is not None:
            stmt = stmt.where(_sessions.c.session_key != keep)
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount

    def purge_sessions(self, now: datetime) -> int:
        """Delete sessions whose absolute lifetime has passed. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where(_sessions.c.expires_at.is_not(None) & (_sessions.c.expires_at < _iso(now)))
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Shared statements (take an open connection so callers control the transaction)
# ---------------------------------------------------------------------------


def _select_user_roles(conn, user_id: int) -> list[Role]:
    rows = conn.execute(
        select(_roles)
        .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
        .where((_user_roles.c.user_id == user_id) & (_user_roles.c.is_active == 1) & (_roles.c.is_active == 1))
        .order_by(_roles.c.id)
    ).fetchall()
    return [_row_to_role(r) for r in rows]


def _upsert_grant(conn, role_id: int, permission_id: int, assigned_by: int | None, now_iso: str) -> bool:
    row = conn.execute(
        _role_permissions.select().where(
            (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
        )
    ).fetchone()
    if row is None:
        conn.execute(
            _role_permissions.insert().values(
                role_id=role_id, permission_id=permission_id, is_granted=1, assigned_by=assigned_by, assigned_at=now_iso
            )
        )
        return True
    if row.is_granted:
        return False
    conn.execute(
        _role_permissions.update()
        .where(_role_permissions.c.id == row.id)
        .values(is_granted=1, assigned_by=assigned_by, assigned_at=now_iso)
    )
    return True


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        full_name=row.full_name,
        password_hash=row.password_hash,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=_parse(row.locked_until),
        last_login=_parse(row.last_login),
        created_at=_parse(row.created_at),
        created_by=row.created_by,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description,
        is_system=bool(row.is_system),
        is_active=bool(row.is_active),
        inactivity_lock_enabled=bool(row.inactivity_lock_enabled),
        inactivity_lock_days=row.inactivity_lock_days,
        created_by=row.created_by,
        created_at=_parse(row.created_at),
        updated_by=row.updated_by,
        updated_at=_parse(row.updated_at),
        # user_count is only present on list_roles() rows.
        user_count=getattr(row, "user_count", None),
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        description=row.description,
        module=row.module,
        action=row.action,
        is_system=bool(row.is_system),
        is_active=bool(row.is_active),
        created_by=row.created_by,
        created_at=_parse(row.created_at),
    )


def _row_to_assignment(row) -> UserRole:
    return UserRole(
        id=row.id,
        user_id=row.user_id,
        role_id=row.role_id,
        is_active=bool(row.is_active),
        assigned_by=row.assigned_by,
        assigned_at=_parse(row.assigned_at),
    )


def _row_to_grant(row) -> RolePermission:
    return RolePermission(
        id=row.id,
        role_id=row.role_id,
        permission_id=row.permission_id,
        is_granted=bool(row.is_granted),
        assigned_by=row.assigned_by,
        assigned_at=_parse(row.assigned_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        session_key=row.session_key,
        user_id=row.user_id,
        created_at=_parse(row.created_at),
        last_activity=_parse(row.last_activity),
        expires_at=_parse(row.expires_at),
    )
