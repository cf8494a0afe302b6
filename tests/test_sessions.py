"""
tests/test_sessions.py -- Session lifecycle and per-role inactivity policy.

Covers:
  - start() stores only the HMAC digest of the session id
  - validate() rejects missing/unknown ids and stamps last_activity
  - Inactivity timeout is the minimum over active, enabled roles
  - A 1-day policy expires strictly after one day idle, and destroys the session
  - Absolute lifetime expiry raises SessionExpired (a NotAuthenticated)
  - resolve_inactivity_timeout() fails open
  - destroy / destroy_all / purge_expired / peek
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import InactivityExpired, NotAuthenticated, SessionExpired
from auth.models import Role
from auth.sessions import SessionPolicy
from auth.store import AuthStore
from auth.tokens import hash_session_id


@pytest.fixture
def policy(store, clock) -> SessionPolicy:
    return SessionPolicy(store, lifetime=None, clock=clock)


@pytest.fixture
def user_id(store, make_user) -> int:
    return make_user(store, "bob")


def _give_role(store: AuthStore, user_id: int, name: str, enabled: bool, days: int) -> int:
    role_id = store.create_role(Role(name=name, inactivity_lock_enabled=enabled, inactivity_lock_days=days))
    store.assign_role(user_id, role_id)
    return role_id


class TestStartAndValidate:
    def test_start_stores_digest_not_raw_id(self, store, policy, user_id):
        raw_id, session = policy.start(user_id)

        assert session.session_key == hash_session_id(raw_id)
        assert session.session_key != raw_id
        assert store.get_session(raw_id) is None
        assert store.get_session(session.session_key).user_id == user_id

    def test_missing_id_is_not_authenticated(self, policy):
        with pytest.raises(NotAuthenticated):
            policy.validate(None)
        with pytest.raises(NotAuthenticated):
            policy.validate("")

    def test_unknown_id_is_not_authenticated(self, policy):
        with pytest.raises(NotAuthenticated):
            policy.validate("not-a-real-session")

    def test_validate_stamps_last_activity(self, store, policy, clock, user_id):
        raw_id, session = policy.start(user_id)
        clock.advance(hours=3)

        validated = policy.validate(raw_id)

        assert validated.user_id == user_id
        assert store.get_session(session.session_key).last_activity == clock.now


class TestInactivityTimeout:
    def test_minimum_over_enabled_roles(self, store, policy, user_id):
        _give_role(store, user_id, "Editor", enabled=False, days=60)
        _give_role(store, user_id, "Teacher", enabled=True, days=30)

        assert policy.resolve_inactivity_timeout(user_id) == timedelta(days=30)

    def test_smallest_enabled_value_wins(self, store, policy, user_id):
        _give_role(store, user_id, "Administrator", enabled=True, days=90)
        _give_role(store, user_id, "Teacher", enabled=True, days=30)

        assert policy.resolve_inactivity_timeout(user_id) == timedelta(days=30)

    def test_no_enabled_role_means_unbounded(self, store, policy, clock, user_id):
        _give_role(store, user_id, "Super Admin", enabled=False, days=365)
        raw_id, _ = policy.start(user_id)

        assert policy.resolve_inactivity_timeout(user_id) is None
        clock.advance(days=400)
        assert policy.validate(raw_id).user_id == user_id

    def test_inactive_role_and_revoked_assignment_are_ignored(self, store, policy, user_id):
        short = _give_role(store, user_id, "Short", enabled=True, days=1)
        revoked = _give_role(store, user_id, "Revoked", enabled=True, days=2)
        _give_role(store, user_id, "Normal", enabled=True, days=30)

        store.deactivate_role(short)
        store.remove_role(user_id, revoked)

        assert policy.resolve_inactivity_timeout(user_id) == timedelta(days=30)

    def test_one_day_policy_survives_exactly_one_day(self, store, policy, clock, user_id):
        _give_role(store, user_id, "Day", enabled=True, days=1)
        raw_id, _ = policy.start(user_id)

        clock.advance(days=1)
        assert policy.validate(raw_id).user_id == user_id

    def test_one_day_policy_expires_after_one_day(self, store, policy, clock, user_id):
        _give_role(store, user_id, "Day", enabled=True, days=1)
        raw_id, session = policy.start(user_id)

        clock.advance(days=1, seconds=1)
        with pytest.raises(InactivityExpired):
            policy.validate(raw_id)

        assert store.get_session(session.session_key) is None
        with pytest.raises(NotAuthenticated):
            policy.validate(raw_id)

    def test_activity_resets_the_idle_window(self, store, policy, clock, user_id):
        _give_role(store, user_id, "Day", enabled=True, days=1)
        raw_id, _ = policy.start(user_id)

        for _ in range(3):
            clock.advance(hours=20)
            policy.validate(raw_id)

    def test_policy_change_applies_to_open_sessions(self, store, policy, clock, user_id):
        role_id = _give_role(store, user_id, "Teacher", enabled=True, days=30)
        raw_id, _ = policy.start(user_id)

        clock.advance(days=2)
        store.update_role(role_id, inactivity_lock_days=1)
        with pytest.raises(InactivityExpired):
            policy.validate(raw_id)

    def test_lookup_failure_fails_open(self, caplog):
        store = MagicMock(spec=AuthStore)
        store.min_inactivity_days.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        policy = SessionPolicy(store)

        assert policy.resolve_inactivity_timeout(7) is None
        assert "continuing without a limit" in caplog.text


class TestAbsoluteLifetime:
    def test_session_expires_after_lifetime(self, store, clock, user_id):
        policy = SessionPolicy(store, lifetime=timedelta(hours=1), clock=clock)
        raw_id, session = policy.start(user_id)

        clock.advance(minutes=61)
        with pytest.raises(SessionExpired) as exc:
            policy.validate(raw_id)

        assert isinstance(exc.value, NotAuthenticated)
        assert store.get_session(session.session_key) is None

    def test_purge_removes_only_expired_sessions(self, store, clock, user_id):
        policy = SessionPolicy(store, lifetime=timedelta(hours=1), clock=clock)
        old_raw, _ = policy.start(user_id)
        clock.advance(minutes=45)
        new_raw, _ = policy.start(user_id)
        clock.advance(minutes=30)

        assert policy.purge_expired() == 1
        assert policy.peek(old_raw) is None
        assert policy.peek(new_raw) is not None


class TestDestroy:
    def test_destroy_ends_one_session(self, policy, user_id):
        raw_id, _ = policy.start(user_id)

        assert policy.destroy(raw_id) is True
        assert policy.destroy(raw_id) is False
        with pytest.raises(NotAuthenticated):
            policy.validate(raw_id)

    def test_destroy_all_can_keep_the_current_session(self, policy, user_id):
        current, _ = policy.start(user_id)
        other_a, _ = policy.start(user_id)
        other_b, _ = policy.start(user_id)

        assert policy.destroy_all(user_id, keep_raw_session_id=current) == 2
        assert policy.validate(current).user_id == user_id
        assert policy.peek(other_a) is None
        assert policy.peek(other_b) is None


class TestPeek:
    def test_peek_does_not_touch_activity(self, store, policy, clock, user_id):
        raw_id, session = policy.start(user_id)
        clock.advance(hours=2)

        peeked = policy.peek(raw_id)

        assert peeked.last_activity == session.last_activity
        assert store.get_session(session.session_key).last_activity == session.last_activity

    def test_peek_reports_idle_session_as_gone(self, store, policy, clock, user_id):
        _give_role(store, user_id, "Day", enabled=True, days=1)
        raw_id, session = policy.start(user_id)
        clock.advance(days=2)

        assert policy.peek(raw_id) is None
        # peek never destroys
        assert store.get_session(session.session_key) is not None
