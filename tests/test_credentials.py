"""Unit tests for password hashing, password policy and email checks."""

import pytest

from gatekeep.config import Settings
from gatekeep.service.credentials import (
    PasswordPolicy,
    is_valid_email,
    normalize_email,
)
from gatekeep.service.errors import ValidationError

from conftest import PASSWORD


class TestPasswordHasher:
    def test_hash_and_verify(self, hasher):
        stored = hasher.hash(PASSWORD)

        assert stored.startswith("$argon2id$")
        assert stored != PASSWORD
        assert hasher.verify(stored, PASSWORD)
        assert not hasher.verify(stored, PASSWORD.lower())

    def test_salted(self, hasher):
        assert hasher.hash(PASSWORD) != hasher.hash(PASSWORD)

    def test_unusable_hashes_do_not_raise(self, hasher):
        assert hasher.verify(None, PASSWORD) is False
        assert hasher.verify("", PASSWORD) is False
        assert hasher.verify("not-a-hash", PASSWORD) is False
        assert hasher.verify(hasher.hash(PASSWORD), None) is False


class TestPasswordPolicy:
    @pytest.fixture
    def policy(self):
        return PasswordPolicy(Settings())

    @pytest.mark.parametrize(
        "password,failed",
        [
            ("Sh0rt!", ["length"]),
            ("alllowercase1!", ["uppercase"]),
            ("ALLUPPERCASE1!", ["lowercase"]),
            ("NoDigitsHere!", ["digit"]),
            ("NoSpecials123", ["special"]),
            ("A1!" + "a" * 62, ["length"]),
        ],
    )
    def test_each_rule_reported(self, policy, password, failed):
        with pytest.raises(ValidationError) as exc:
            policy.check(password)

        assert exc.value.detail == {"failed": failed}
        assert exc.value.status_code == 400

    def test_valid_password(self, policy):
        policy.check(PASSWORD)
        assert all(policy.evaluate(PASSWORD).values())

    def test_missing_password(self, policy):
        with pytest.raises(ValidationError):
            policy.check(None)
        with pytest.raises(ValidationError):
            policy.check("")

    def test_rules_can_be_relaxed(self):
        policy = PasswordPolicy(
            Settings(
                password_require_uppercase=False,
                password_require_special=False,
                password_min_length=4,
            )
        )
        policy.check("abc1")
        assert all(policy.evaluate("abc1").values())


class TestEmailHelpers:
    def test_normalize(self):
        assert normalize_email("  Ada@Example.COM ") == "ada@example.com"
        assert normalize_email(None) == ""

    @pytest.mark.parametrize(
        "email,valid",
        [
            ("ada@example.com", True),
            ("first.last+tag@sub.example.org", True),
            ("no-at-sign", False),
            ("two@@example.com", False),
            ("", False),
            (None, False),
            ("a" * 250 + "@example.com", False),
        ],
    )
    def test_is_valid_email(self, email, valid):
        assert is_valid_email(email) is valid
