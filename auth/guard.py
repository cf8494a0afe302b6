"""
auth/guard.py -- Authorization checks against an AuthenticatedIdentity.

Pure functions: no I/O, no exceptions. Names compare exactly and
case-sensitively ("News.Publish" does not satisfy "news.publish"). The
FastAPI wrappers that turn a False answer into HTTP 403 live in
auth/dependencies.py.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.models import AuthenticatedIdentity


def has_permission(identity: AuthenticatedIdentity, permission_name: str) -> bool:
    return permission_name in identity.permission_names


def has_any_role(identity: AuthenticatedIdentity, role_names: Iterable[str]) -> bool:
    """True if the identity holds at least one of role_names. An empty list is always False."""
    return any(name in identity.role_names for name in role_names)
