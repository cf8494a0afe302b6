"""
tests/test_tokens.py -- Password hashing limits and session id digests.

bcrypt only accepts 72 bytes of input. New passwords over that are refused
outright; a login attempt with one still costs a bcrypt comparison and fails.
"""

from __future__ import annotations

from unittest.mock import patch

import bcrypt
import pytest

from auth.tokens import (
    MAX_PASSWORD_BYTES,
    equalize_timing,
    hash_password,
    hash_session_id,
    password_too_long,
    verify_password,
)


class TestPasswordLimits:
    def test_limit_counts_bytes_not_characters(self):
        assert password_too_long("x" * 72) is False
        assert password_too_long("x" * 73) is True
        # two bytes per character in UTF-8
        assert password_too_long("é" * 37) is True

    def test_hash_refuses_long_password(self):
        with pytest.raises(ValueError, match=str(MAX_PASSWORD_BYTES)):
            hash_password("x" * 100, rounds=4)

    def test_password_at_limit_round_trips(self):
        plain = "p" * MAX_PASSWORD_BYTES
        assert verify_password(plain, hash_password(plain, rounds=4))

    def test_long_candidate_never_matches_its_prefix(self):
        stored = hash_password("x" * MAX_PASSWORD_BYTES, rounds=4)
        assert verify_password("x" * 100, stored) is False

    def test_long_candidate_still_runs_bcrypt(self):
        stored = hash_password("right-password", rounds=4)
        with patch("auth.tokens.bcrypt.checkpw", wraps=bcrypt.checkpw) as checkpw:
            assert verify_password("y" * 100, stored) is False
            equalize_timing("z" * 100)
        assert checkpw.call_count == 2

    def test_whitespace_is_significant(self):
        stored = hash_password("newsecret99 ", rounds=4)
        assert verify_password("newsecret99 ", stored)
        assert not verify_password("newsecret99", stored)

    def test_malformed_hash_is_a_mismatch(self, caplog):
        assert verify_password("anything", "not-a-bcrypt-hash") is False
        assert "could not be parsed" in caplog.text


def test_session_digest_is_stable_and_opaque():
    digest = hash_session_id("raw-id")
    assert digest == hash_session_id("raw-id")
    assert digest != hash_session_id("raw-id2")
    assert len(digest) == 64
