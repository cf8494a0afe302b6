"""
auth/authenticator.py -- Credential verification and lockout policy.

Authenticator.authenticate() is the only supported way to check a password
at login. It owns three properties that are easy to lose when the steps are
inlined in a route:

  [T1] Timing equalization: an unknown identifier still costs one bcrypt
       comparison against a dummy hash, so response time does not reveal
       whether the account exists.

  [L1] Lock precedes password: a locked account is refused before bcrypt
       runs, even with the correct password.

  [L2] Atomic bookkeeping: failures are counted by AuthStore.record_failed_login,
       which increments in SQL inside one transaction. The attempt that reaches
       the threshold sets the lock and is itself reported as AccountLocked.

Outcome table (checked in this order):
  no such user               -> InvalidCredentials
  locked_until > now         -> AccountLocked(remaining minutes, rounded up)
  user inactive              -> AccountDisabled
  wrong password, below max  -> InvalidCredentials
  wrong password, reaches max -> AccountLocked(full lockout)
  correct password           -> counter reset, last_login stamped, identity
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AccountDisabled, AccountLocked, InvalidCredentials, PersistenceError
from auth.models import AuthenticatedIdentity
from auth.rbac import resolve_identity
from auth.sessions import Clock, utcnow
from auth.store import AuthStore
from auth.tokens import equalize_timing, verify_password
from core.config import Settings, get_settings

logger = logging.getLogger("schooladmin.auth")


def _minutes_until(delta: timedelta) -> int:
    return max(1, math.ceil(delta.total_seconds() / 60))


class Authenticator:
    """Verify credentials and apply the lockout policy."""

    def __init__(
        self,
        store: AuthStore,
        max_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.clock = clock

    @classmethod
    def from_settings(cls, store: AuthStore, settings: Settings | None = None, clock: Clock = utcnow) -> Authenticator:
        settings = settings or get_settings()
        return cls(
            store,
            max_attempts=settings.max_login_attempts,
            lockout_duration=settings.lockout_duration,
            clock=clock,
        )

    def authenticate(self, identifier: str, password: str) -> AuthenticatedIdentity:
        """Return the identity for a correct (identifier, password) pair.

        identifier matches a username or an email, exactly. Raises one of
        InvalidCredentials, AccountLocked, AccountDisabled or PersistenceError.
        """
        try:
            user = self.store.get_by_identifier(identifier)
        except SQLAlchemyError as exc:
            logger.error("Credential lookup failed: %s", exc.__class__.__name__)
            raise PersistenceError() from exc

        if user is None:
            equalize_timing(password)  # [T1]
            logger.info("Login failed: unknown identifier")
            raise InvalidCredentials()

        now = self.clock()
        if user.is_locked(now):  # [L1]
            logger.info("Login refused for user_id=%s: account locked", user.id)
            raise AccountLocked(_minutes_until(user.locked_until - now))

        if not user.is_active:
            logger.info("Login refused for user_id=%s: account disabled", user.id)
            raise AccountDisabled()

        if not verify_password(password, user.password_hash):
            try:
                attempts, locked_until = self.store.record_failed_login(  # [L2]
                    user.id, now, self.max_attempts, self.lockout_duration
                )
            except SQLAlchemyError as exc:
                logger.error("Could not record failed login for user_id=%s", user.id)
                raise PersistenceError() from exc
            if locked_until is not None:
                logger.warning("Account user_id=%s locked after %d failed attempts", user.id, attempts)
                raise AccountLocked(_minutes_until(locked_until - now))
            logger.info("Login failed for user_id=%s (attempt %d of %d)", user.id, attempts, self.max_attempts)
            raise InvalidCredentials()

        try:
            self.store.record_successful_login(user.id, now)
        except SQLAlchemyError as exc:
            logger.error("Could not record login for user_id=%s", user.id)
            raise PersistenceError() from exc
        identity = resolve_identity(self.store, user.id)
        logger.info("Login succeeded for user_id=%s", user.id)
        return identity
