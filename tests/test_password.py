"""Tests for the password policy and argon2id hashing."""

from unittest.mock import MagicMock, patch

from streamline.service import password as password_module
from streamline.service.password import (
    COMMON_PASSWORD_MESSAGE,
    hash_password,
    needs_rehash,
    validate_password,
    verify_password,
)


class TestPasswordPolicy:
    def test_accepts_reasonable_password(self):
        result = validate_password("correct horse battery")
        assert result.valid
        assert result.errors == []

    def test_rejects_short_password(self):
        result = validate_password("abc123")
        assert not result.valid
        assert result.errors == ["Password must be at least 8 characters"]

    def test_rejects_long_password(self):
        result = validate_password("x" * 129)
        assert not result.valid
        assert "Password must be less than 128 characters" in result.errors

    def test_length_boundaries_are_inclusive(self):
        assert validate_password("a7Kq9zPw").valid
        assert validate_password("k" * 127 + "z").valid

    def test_common_password_is_case_insensitive(self):
        result = validate_password("PassWord123")
        assert not result.valid
        assert result.errors == [COMMON_PASSWORD_MESSAGE]

    def test_reports_every_violation(self):
        result = validate_password("1234", min_length=8)
        assert len(result.errors) == 1
        result = validate_password("password", min_length=10)
        assert len(result.errors) == 2

    def test_custom_bounds(self):
        assert not validate_password("abcdefghij", min_length=12).valid
        assert validate_password("abcdefghijkl", min_length=12).valid

    def test_non_string_is_invalid(self):
        result = validate_password(None)
        assert not result.valid


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self):
        first = hash_password("TestPassword123!")
        second = hash_password("TestPassword123!")
        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_matches_only_original(self):
        stored = hash_password("TestPassword123!")
        assert verify_password(stored, "TestPassword123!")
        assert not verify_password(stored, "TestPassword123?")

    def test_verify_never_raises_on_garbage(self):
        assert not verify_password("not-a-hash", "whatever")
        assert not verify_password("", "whatever")

    def test_unverifiable_hash_is_logged(self):
        with patch.object(password_module, "logger", MagicMock()) as logger:
            assert not verify_password("$argon2id$v=19$broken", "whatever")
        logger.warning.assert_called_once()
        assert logger.warning.call_args.args[0] == "password_hash_unverifiable"

    def test_current_hash_does_not_need_rehash(self):
        assert not needs_rehash(hash_password("TestPassword123!"))

    def test_invalid_hash_needs_rehash(self):
        assert needs_rehash("plaintext")
