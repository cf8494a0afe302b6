"""
API request and response models for SchoolAdmin REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints

from auth.models import AuthenticatedIdentity, Permission, Role, User
from auth.tokens import MAX_PASSWORD_BYTES, password_too_long
from core.config import get_settings

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
PERMISSION_NAME_PATTERN = r"^[a-z0-9._]+$"

API_VERSION = "1.0.0"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _check_password_length(value: str) -> str:
    minimum = get_settings().min_password_length
    if len(value) < minimum:
        raise ValueError(f"Password must be at least {minimum} characters long")
    if password_too_long(value):
        raise ValueError(f"Password must not exceed {MAX_PASSWORD_BYTES} bytes")
    return value


# Length floor comes from Settings.min_password_length, read at validation time.
# Passwords are never stripped; only identifier fields below are.
_Password = Annotated[str, Field(max_length=128), AfterValidator(_check_password_length)]
_Username = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=3, max_length=50, pattern=USERNAME_PATTERN)
]
_Email = Annotated[str, StringConstraints(strip_whitespace=True, max_length=100, pattern=EMAIL_PATTERN)]
_FullName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PermissionActionEnum(str, Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"
    manage = "manage"
    publish = "publish"
    approve = "approve"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. username accepts a username or an email."""

    username: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
    password: str = Field(min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register and POST /api/v1/setup."""

    username: _Username
    email: _Email
    full_name: _FullName
    password: _Password


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: _Password


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class IdentityResponse(BaseModel):
    """The caller's account with resolved role and permission names."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    full_name: str
    roles: list[str]
    permissions: list[str]
    is_active: bool
    last_login: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: AuthenticatedIdentity) -> "IdentityResponse":
        user = identity.user
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            roles=[r.name for r in identity.roles],
            permissions=sorted(identity.permission_names),
            is_active=user.is_active,
            last_login=_iso(user.last_login),
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = "Login successful"
    user: IdentityResponse


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: IdentityResponse


class MessageResponse(BaseModel):
    """Generic {success, message} envelope for outcomes with no payload."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = "User registered successfully"
    user_id: int


class SessionStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/session-status. Never includes the session id."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    authenticated: bool
    last_activity: Optional[str] = None
    expires_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. At least one field must be set."""

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=100, pattern=EMAIL_PATTERN)
    is_active: Optional[bool] = None
    unlock: Optional[bool] = Field(default=None, description="true clears a login lockout")


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    full_name: str
    is_active: bool
    roles: list[str] = Field(default_factory=list)
    failed_login_attempts: int
    locked_until: Optional[str] = None
    last_login: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User, roles: list[Role]) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            is_active=user.is_active,
            roles=[r.name for r in roles],
            failed_login_attempts=user.failed_login_attempts,
            locked_until=_iso(user.locked_until),
            last_login=_iso(user.last_login),
            created_at=_iso(user.created_at),
        )


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class PermissionCreate(BaseModel):
    """Request body for POST /api/v1/permissions."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=3, max_length=50, pattern=PERMISSION_NAME_PATTERN)
    description: Optional[str] = Field(default=None, max_length=255)
    module: str = Field(min_length=3, max_length=50)
    action: PermissionActionEnum


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: Optional[str]
    module: str
    action: str
    is_system: bool

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(
            id=permission.id,
            name=permission.name,
            description=permission.description,
            module=permission.module,
            action=permission.action,
            is_system=permission.is_system,
        )


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/roles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=3, max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)
    inactivity_lock_enabled: bool = False
    inactivity_lock_days: int = Field(default=30, ge=1, le=365)
    permission_ids: list[int] = Field(default_factory=list, max_length=500)


class RoleUpdate(BaseModel):
    """Request body for PUT /api/v1/roles/{id}.

    Omitted fields are left unchanged. permission_ids, when present, replaces
    the role's whole grant set (an empty list revokes everything).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=3, max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)
    inactivity_lock_enabled: Optional[bool] = None
    inactivity_lock_days: Optional[int] = Field(default=None, ge=1, le=365)
    permission_ids: Optional[list[int]] = Field(default=None, max_length=500)


class RoleAssign(BaseModel):
    """Request body for POST /api/v1/roles/{id}/users."""

    user_id: int = Field(ge=1)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: Optional[str]
    is_system: bool
    inactivity_lock_enabled: bool
    inactivity_lock_days: int
    user_count: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    permissions: list[PermissionResponse] = Field(default_factory=list)

    @classmethod
    def from_role(cls, role: Role, permissions: Optional[list[Permission]] = None) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            is_system=role.is_system,
            inactivity_lock_enabled=role.inactivity_lock_enabled,
            inactivity_lock_days=role.inactivity_lock_days,
            user_count=role.user_count,
            created_at=_iso(role.created_at),
            updated_at=_iso(role.updated_at),
            permissions=[PermissionResponse.from_permission(p) for p in permissions or []],
        )


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    limit: int
    total: int
    total_pages: int


class RoleListResponse(BaseModel):
    """Response for GET /api/v1/roles."""

    model_config = ConfigDict(frozen=True)

    roles: list[RoleResponse]
    pagination: Pagination


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
