"""
auth/seed.py -- Default system roles and permissions.

seed_defaults() runs once from POST /api/v1/setup, right after the first
account is created, and is safe to re-run: rows that already exist (by name)
are left untouched.

Two permission names do not match their stored action:
reports.view is stored with action "read" and events.manage_signups with
action "manage". Permission names are unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from auth.models import Permission, Role
from auth.store import AuthStore

logger = logging.getLogger("schooladmin.auth")

SUPER_ADMIN = "Super Admin"

# (name, description, module, action)
DEFAULT_PERMISSIONS: tuple[tuple[str, str, str, str], ...] = (
    ("users.create", "Create new users", "users", "create"),
    ("users.read", "View users", "users", "read"),
    ("users.update", "Update user information", "users", "update"),
    ("users.delete", "Delete users", "users", "delete"),
    ("users.manage", "Full user management access", "users", "manage"),
    ("roles.create", "Create new roles", "roles", "create"),
    ("roles.read", "View roles", "roles", "read"),
    ("roles.update", "Update roles", "roles", "update"),
    ("roles.delete", "Delete roles", "roles", "delete"),
    ("roles.manage", "Full role management access", "roles", "manage"),
    ("news.create", "Create news articles", "news", "create"),
    ("news.read", "View news articles", "news", "read"),
    ("news.update", "Update news articles", "news", "update"),
    ("news.delete", "Delete news articles", "news", "delete"),
    ("news.publish", "Publish/unpublish news", "news", "publish"),
    ("events.create", "Create events", "events", "create"),
    ("events.read", "View events", "events", "read"),
    ("events.update", "Update events", "events", "update"),
    ("events.delete", "Delete events", "events", "delete"),
    ("events.publish", "Publish/unpublish events", "events", "publish"),
    ("events.manage_signups", "Manage event signups", "events", "manage"),
    ("gallery.create", "Upload images", "gallery", "create"),
    ("gallery.read", "View gallery", "gallery", "read"),
    ("gallery.update", "Update gallery items", "gallery", "update"),
    ("gallery.delete", "Delete gallery items", "gallery", "delete"),
    ("content.read", "View content pages", "content", "read"),
    ("content.update", "Update content pages", "content", "update"),
    ("settings.read", "View system settings", "settings", "read"),
    ("settings.update", "Update system settings", "settings", "update"),
    ("audit.read", "View audit logs", "audit", "read"),
    ("reports.view", "View reports and analytics", "reports", "read"),
)

_ADMIN_EXCLUDED = {"users.delete", "roles.delete", "settings.update"}
_CONTENT_MODULES = {"news", "events", "gallery", "content"}


def _teacher_grants(p: Permission) -> bool:
    if p.module in ("news", "events") and p.action in ("create", "read", "update"):
        return True
    return p.name in ("events.manage_signups", "gallery.read")


# (name, description, inactivity_lock_enabled, inactivity_lock_days, grant selector)
DEFAULT_ROLES: tuple[tuple[str, str, bool, int, Callable[[Permission], bool]], ...] = (
    (SUPER_ADMIN, "Full system access - cannot be deleted", False, 365, lambda p: True),
    ("Administrator", "Full content and user management", True, 90, lambda p: p.name not in _ADMIN_EXCLUDED),
    (
        "Editor",
        "Can manage news, events, and gallery",
        True,
        60,
        lambda p: p.module in _CONTENT_MODULES and p.action != "delete",
    ),
    ("Teacher", "Can create news and manage events", True, 30, _teacher_grants),
    ("Viewer", "Read-only access to admin panel", True, 30, lambda p: p.action == "read"),
)


def seed_defaults(store: AuthStore, created_by: int | None = None) -> dict[str, int]:
    """Create any missing system permissions and roles. Returns {role name: role id}."""
    permissions: list[Permission] = []
    for name, description, module, action in DEFAULT_PERMISSIONS:
        existing = store.get_permission_by_name(name)
        if existing is None:
            new_id = store.create_permission(
                Permission(
                    name=name,
                    description=description,
                    module=module,
                    action=action,
                    is_system=True,
                    created_by=created_by,
                )
            )
            existing = store.get_permission(new_id)
        permissions.append(existing)

    role_ids: dict[str, int] = {}
    for name, description, lock_enabled, lock_days, selects in DEFAULT_ROLES:
        role = store.get_role_by_name(name)
        if role is not None:
            role_ids[name] = role.id
            continue
        role_ids[name] = store.create_role(
            Role(
                name=name,
                description=description,
                is_system=True,
                inactivity_lock_enabled=lock_enabled,
                inactivity_lock_days=lock_days,
                created_by=created_by,
            ),
            permission_ids=[p.id for p in permissions if selects(p)],
            assigned_by=created_by,
        )
    logger.info("Default RBAC seed applied (%d roles, %d permissions)", len(role_ids), len(permissions))
    return role_ids
