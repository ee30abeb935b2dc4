from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from streamline.logging import get_logger

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

# Argon2id cost parameters (19 MiB, 2 passes, single lane, 32 byte tag)
ARGON2_MEMORY_COST = 19456
ARGON2_TIME_COST = 2
ARGON2_PARALLELISM = 1
ARGON2_HASH_LEN = 32

COMMON_PASSWORD_MESSAGE = "This password is too common. Please choose a different password."

# Lowercased; membership is checked case-insensitively
COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password12",
        "password123",
        "password1234",
        "passw0rd",
        "p@ssw0rd",
        "p@ssword",
        "12345678",
        "123456789",
        "1234567890",
        "12341234",
        "11111111",
        "00000000",
        "87654321",
        "qwertyuiop",
        "qwerty123",
        "qwerty12",
        "1qaz2wsx",
        "1q2w3e4r",
        "1q2w3e4r5t",
        "zaq12wsx",
        "asdfghjkl",
        "asdf1234",
        "abcd1234",
        "abc12345",
        "abcdefgh",
        "iloveyou",
        "iloveyou1",
        "sunshine",
        "princess",
        "football",
        "baseball",
        "basketball",
        "superman",
        "batman123",
        "starwars",
        "trustno1",
        "whatever",
        "welcome1",
        "welcome123",
        "letmein1",
        "letmein123",
        "changeme",
        "changeme123",
        "admin123",
        "administrator",
        "computer",
        "internet",
        "michelle",
        "jennifer",
        "charlie1",
        "liverpool",
        "chelsea1",
        "mustang1",
        "shadow12",
        "master12",
        "monkey123",
        "dragon12",
        "freedom1",
        "qwertyui",
        "secret123",
        "test1234",
        "testtest",
        "passpass",
        "youtube1",
        "youtuber",
        "streamline",
    }
)


@dataclass
class PasswordValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def validate_password(
    password: str,
    *,
    min_length: int = PASSWORD_MIN_LENGTH,
    max_length: int = PASSWORD_MAX_LENGTH,
) -> PasswordValidationResult:
    """Check a candidate password against the policy.

    Every violated rule contributes one message; nothing is raised.
    """
    errors: List[str] = []
    if not isinstance(password, str):
        return PasswordValidationResult(valid=False, errors=["Password is required"])
    if len(password) < min_length:
        errors.append(f"Password must be at least {min_length} characters")
    if len(password) > max_length:
        errors.append(f"Password must be less than {max_length} characters")
    if password.lower() in COMMON_PASSWORDS:
        errors.append(COMMON_PASSWORD_MESSAGE)
    return PasswordValidationResult(valid=not errors, errors=errors)


_hasher = PasswordHasher(
    time_cost=ARGON2_TIME_COST,
    memory_cost=ARGON2_MEMORY_COST,
    parallelism=ARGON2_PARALLELISM,
    hash_len=ARGON2_HASH_LEN,
    type=Type.ID,
)


def hash_password(password: str) -> str:
    """Derive an argon2id hash with a fresh random salt.

    The encoded result carries the algorithm tag and cost parameters, so
    hashes made under older parameters still verify.
    """
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """Return True when ``password`` matches ``password_hash``; never raises."""
    if not password_hash or not isinstance(password, str):
        return False
    try:
        return _hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError) as exc:
        logger.warning("password_hash_unverifiable", error_type=type(exc).__name__)
        return False


def needs_rehash(password_hash: str) -> bool:
    """True when the stored hash was produced with different cost parameters."""
    try:
        return _hasher.check_needs_rehash(password_hash)
    except (InvalidHash, ValueError):
        return True


# Verified against on the login path when no account matches, so an unknown
# email costs the same as a wrong password
_dummy_hash: str | None = None


def burn_password_hash(password: str) -> None:
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password("timing-equaliser-password")
    verify_password(_dummy_hash, password)
