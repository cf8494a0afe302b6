"""
auth/sessions.py -- Server-side session lifecycle and per-role inactivity policy.

A session moves Anonymous -> Authenticated -> (Expired | LoggedOut). It is
created by start() after a successful login, kept alive by validate() on
every authenticated request, and ended by destroy() (logout), destroy_all()
(password change, deactivation) or by one of two expiry rules:

  Inactivity: the smallest inactivity_lock_days among the user's active,
      policy-enabled roles. Resolved on every validate() so a role edit
      applies to sessions that are already open. No such role means no
      inactivity limit.

  Absolute lifetime: Settings.session_lifetime_seconds from creation,
      regardless of activity.

resolve_inactivity_timeout() is the one place in the auth core that fails
open: if the roles query errors, the session is treated as having no
inactivity limit and a warning is logged. Every other storage error raises
PersistenceError.

The clock is injectable so tests can move time without sleeping.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InactivityExpired, NotAuthenticated, PersistenceError, SessionExpired
from auth.models import Session
from auth.store import AuthStore
from auth.tokens import generate_session_id, hash_session_id
from core.config import Settings, get_settings

logger = logging.getLogger("schooladmin.sessions")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionPolicy:
    """Create, validate and end server-side sessions.

    Usage:
        policy = SessionPolicy.from_settings(store)
        raw_id, session = policy.start(user_id)    # raw_id goes into the cookie
        session = policy.validate(raw_id)          # raises on expiry
        policy.destroy(raw_id)
    """

    def __init__(
        self,
        store: AuthStore,
        lifetime: timedelta | None = timedelta(days=1),
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.lifetime = lifetime
        self.clock = clock

    @classmethod
    def from_settings(cls, store: AuthStore, settings: Settings | None = None, clock: Clock = utcnow) -> SessionPolicy:
        settings = settings or get_settings()
        return cls(store, lifetime=settings.session_lifetime, clock=clock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, user_id: int) -> tuple[str, Session]:
        """Bind a fresh opaque session id to user_id.

        Returns (raw_session_id, session). Only the HMAC digest is stored.
        """
        raw_id = generate_session_id()
        now = self.clock()
        session = Session(
            session_key=hash_session_id(raw_id),
            user_id=user_id,
            created_at=now,
            last_activity=now,
            expires_at=now + self.lifetime if self.lifetime else None,
        )
        try:
            self.store.create_session(session)
        except SQLAlchemyError as exc:
            logger.error("Could not persist session for user_id=%s", user_id)
            raise PersistenceError() from exc
        logger.info("Session started for user_id=%s", user_id)
        return raw_id, session

    def validate(self, raw_session_id: str | None) -> Session:
        """Check liveness, enforce expiry and stamp activity.

        Raises:
            NotAuthenticated: no id, or no session under it.
            InactivityExpired: idle longer than the user's inactivity timeout.
            SessionExpired: past the absolute lifetime.
            PersistenceError: the store failed.
        """
        if not raw_session_id:
            raise NotAuthenticated()
        session_key = hash_session_id(raw_session_id)
        session = self._load(session_key)
        if session is None:
            raise NotAuthenticated()

        now = self.clock()
        timeout = self.resolve_inactivity_timeout(session.user_id)
        if timeout is not None and now - session.last_activity > timeout:
            self._discard(session_key)
            logger.info("Session for user_id=%s expired after inactivity (limit %s)", session.user_id, timeout)
            raise InactivityExpired()
        if session.expires_at is not None and now > session.expires_at:
            self._discard(session_key)
            logger.info("Session for user_id=%s reached its absolute lifetime", session.user_id)
            raise SessionExpired()

        try:
            self.store.touch_session(session_key, now)
        except SQLAlchemyError as exc:
            raise PersistenceError() from exc
        session.last_activity = now
        return session

    def peek(self, raw_session_id: str | None) -> Session | None:
        """Return the session if it would pass validate(), without touching it.

        Used by the public session-status endpoint. Never raises for expiry and
        never extends the session.
        """
        if not raw_session_id:
            return None
        session = self._load(hash_session_id(raw_session_id))
        if session is None:
            return None
        now = self.clock()
        if session.expires_at is not None and now > session.expires_at:
            return None
        timeout = self.resolve_inactivity_timeout(session.user_id)
        if timeout is not None and now - session.last_activity > timeout:
            return None
        return session

    def destroy(self, raw_session_id: str | None) -> bool:
        """End one session (logout). Returns False if there was nothing to end."""
        if not raw_session_id:
            return False
        try:
            return self.store.delete_session(hash_session_id(raw_session_id))
        except SQLAlchemyError as exc:
            raise PersistenceError() from exc

    def destroy_all(self, user_id: int, keep_raw_session_id: str | None = None) -> int:
        """End every session of a user, optionally sparing the caller's own."""
        keep = hash_session_id(keep_raw_session_id) if keep_raw_session_id else None
        try:
            count = self.store.delete_user_sessions(user_id, keep=keep)
        except SQLAlchemyError as exc:
            raise PersistenceError() from exc
        if count:
            logger.info("Destroyed %d session(s) for user_id=%s", count, user_id)
        return count

    def purge_expired(self) -> int:
        """Delete sessions past their absolute lifetime. Returns rows removed."""
        try:
            count = self.store.purge_sessions(self.clock())
        except SQLAlchemyError as exc:
            raise PersistenceError() from exc
        if count:
            logger.info("Purged %d expired session(s)", count)
        return count

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def resolve_inactivity_timeout(self, user_id: int) -> timedelta | None:
        """Return the user's inactivity limit, or None for unbounded.

        Fails open: a storage error yields None and a warning.
        """
        try:
            days = self.store.min_inactivity_days(user_id)
        except SQLAlchemyError as exc:
            logger.warning(
                "Inactivity timeout lookup failed for user_id=%s (%s); continuing without a limit",
                user_id,
                exc.__class__.__name__,
            )
            return None
        if not days:
            return None
        return timedelta(days=days)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, session_key: str) -> Session | None:
        try:
            return self.store.get_session(session_key)
        except SQLAlchemyError as exc:
            logger.error("Session lookup failed: %s", exc.__class__.__name__)
            raise PersistenceError() from exc

    def _discard(self, session_key: str) -> None:
        try:
            self.store.delete_session(session_key)
        except SQLAlchemyError as exc:
            raise PersistenceError() from exc
