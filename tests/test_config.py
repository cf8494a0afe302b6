"""
tests/test_config.py -- Settings validation and derived values.

Settings are built directly (not through get_settings()) so each case
starts from its own keyword arguments. Keyword arguments take precedence
over the DEBUG/BCRYPT_ROUNDS environment set by conftest.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from core.config import Settings

KEY = "k" * 32


def test_production_requires_secret_key():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="", _env_file=None)


def test_short_secret_key_rejected():
    with pytest.raises(ValidationError, match="at least 32 characters"):
        Settings(debug=True, secret_key="too-short", _env_file=None)


def test_debug_generates_key():
    settings = Settings(debug=True, secret_key="", _env_file=None)
    assert len(settings.secret_key) >= 32


def test_derived_durations():
    settings = Settings(
        secret_key=KEY,
        lockout_minutes=20,
        session_lifetime_seconds=7200,
        _env_file=None,
    )
    assert settings.lockout_duration == timedelta(minutes=20)
    assert settings.session_lifetime == timedelta(hours=2)


def test_defaults():
    settings = Settings(secret_key=KEY, _env_file=None)
    assert settings.max_login_attempts == 5
    assert settings.lockout_duration == timedelta(minutes=15)
    assert settings.default_role == "Viewer"
