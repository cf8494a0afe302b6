"""
tests/test_rbac.py -- Identity resolution and the authorization guard.

Covers:
  - Roles and permissions reachable through two roles appear once
  - Revoked assignments, inactive roles and cleared grants drop out on the next resolve
  - A newly granted permission is visible on the next resolve
  - Missing or inactive users raise UserNotFound
  - has_permission / has_any_role are exact, case-sensitive membership tests
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import PersistenceError, UserNotFound
from auth.guard import has_any_role, has_permission
from auth.models import AuthenticatedIdentity, Permission, Role, User
from auth.rbac import resolve_identity
from auth.store import AuthStore


@pytest.fixture
def graph(store, make_user):
    """carol holds Editor and Teacher; both grant news.read."""
    perms = {
        name: store.create_permission(Permission(name=name, module=name.split(".")[0], action=name.split(".")[1]))
        for name in ("news.read", "news.create", "news.publish", "events.read")
    }
    editor = store.create_role(Role(name="Editor"), [perms["news.read"], perms["news.create"]])
    teacher = store.create_role(Role(name="Teacher"), [perms["news.read"], perms["events.read"]])
    carol = make_user(store, "carol")
    store.assign_role(carol, editor)
    store.assign_role(carol, teacher)
    return {"user": carol, "editor": editor, "teacher": teacher, **perms}


class TestResolveIdentity:
    def test_union_without_duplicates(self, store, graph):
        identity = resolve_identity(store, graph["user"])

        assert sorted(r.name for r in identity.roles) == ["Editor", "Teacher"]
        names = [p.name for p in identity.permissions]
        assert sorted(names) == ["events.read", "news.create", "news.read"]
        assert len(names) == len(set(names))

    def test_revoked_assignment_drops_its_permissions(self, store, graph):
        store.remove_role(graph["user"], graph["teacher"])

        identity = resolve_identity(store, graph["user"])

        assert identity.role_names == {"Editor"}
        assert "events.read" not in identity.permission_names
        # still reachable through Editor
        assert "news.read" in identity.permission_names

    def test_inactive_role_drops_out(self, store, graph):
        store.deactivate_role(graph["editor"])

        identity = resolve_identity(store, graph["user"])

        assert identity.role_names == {"Teacher"}
        assert "news.create" not in identity.permission_names

    def test_cleared_grant_drops_out(self, store, graph):
        store.revoke_permission(graph["editor"], graph["news.create"])
        assert "news.create" not in resolve_identity(store, graph["user"]).permission_names

    def test_new_grant_visible_on_next_resolve(self, store, graph):
        before = resolve_identity(store, graph["user"])
        assert not has_permission(before, "news.publish")

        store.grant_permission(graph["editor"], graph["news.publish"])

        assert has_permission(resolve_identity(store, graph["user"]), "news.publish")

    def test_user_without_roles_has_empty_identity(self, store, make_user):
        uid = make_user(store, "dave")
        identity = resolve_identity(store, uid)
        assert identity.roles == ()
        assert identity.permissions == ()

    def test_missing_user(self, store):
        with pytest.raises(UserNotFound):
            resolve_identity(store, 9999)

    def test_inactive_user(self, store, graph):
        store.update_user(graph["user"], is_active=False)
        with pytest.raises(UserNotFound):
            resolve_identity(store, graph["user"])

    def test_store_failure_fails_closed(self):
        store = MagicMock(spec=AuthStore)
        store.get_user.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        with pytest.raises(PersistenceError):
            resolve_identity(store, 1)


class TestGuard:
    @pytest.fixture
    def identity(self) -> AuthenticatedIdentity:
        user = User(username="erin", email="erin@school.test", full_name="Erin", password_hash="x", id=1)
        return AuthenticatedIdentity(
            user=user,
            roles=(Role(name="Teacher", id=4),),
            permissions=(Permission(name="news.create", module="news", action="create", id=11),),
        )

    def test_has_permission_exact_match(self, identity):
        assert has_permission(identity, "news.create")
        assert not has_permission(identity, "news.publish")

    def test_has_permission_is_case_sensitive(self, identity):
        assert not has_permission(identity, "News.Create")

    def test_has_any_role(self, identity):
        assert has_any_role(identity, ["Administrator", "Teacher"])
        assert not has_any_role(identity, ["Administrator", "Editor"])
        assert not has_any_role(identity, ["teacher"])

    def test_has_any_role_empty_list_is_false(self, identity):
        assert not has_any_role(identity, [])
