from __future__ import annotations

import re
from typing import Dict, Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.errors import ValidationError

MAX_EMAIL_LENGTH = 254
_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_!#$%&'*+/=?`{|}~^.-]+@[a-zA-Z0-9.-]+$")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: Optional[str]) -> bool:
    candidate = (email or "").strip()
    if not candidate or len(candidate) > MAX_EMAIL_LENGTH:
        return False
    return bool(_EMAIL_PATTERN.match(candidate))


class PasswordHasher:
    """argon2id hashing with a verify that never raises on bad input."""

    algo = "argon2id"

    def __init__(self, hasher: Optional[Argon2Hasher] = None) -> None:
        self.logger = get_logger(__name__)
        self._hasher = hasher or Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash or password is None:
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unreadable", algo=self.algo)
            return False


class PasswordPolicy:
    """Complexity rules applied to every password the system accepts."""

    def __init__(self, settings: Settings) -> None:
        self.min_length = settings.password_min_length
        self.max_length = settings.password_max_length
        self.require_uppercase = settings.password_require_uppercase
        self.require_lowercase = settings.password_require_lowercase
        self.require_digit = settings.password_require_digit
        self.require_special = settings.password_require_special
        self.special_chars = settings.password_special_chars

    def evaluate(self, password: str) -> Dict[str, bool]:
        """Return ``rule -> passed`` for each complexity rule."""
        return {
            "length": self.min_length <= len(password) <= self.max_length,
            "uppercase": not self.require_uppercase or any(c.isupper() for c in password),
            "lowercase": not self.require_lowercase or any(c.islower() for c in password),
            "digit": not self.require_digit or any(c.isdigit() for c in password),
            "special": not self.require_special
            or any(c in self.special_chars for c in password),
        }

    def check(self, password: Optional[str]) -> None:
        if not password:
            raise ValidationError("password is required", detail={"failed": ["length"]})
        failed = [rule for rule, ok in self.evaluate(password).items() if not ok]
        if failed:
            raise ValidationError(
                "password does not meet complexity requirements",
                detail={"failed": failed},
            )
