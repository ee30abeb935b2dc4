from __future__ import annotations

import re
import secrets
import string

SLUG_MAX_LENGTH = 50
SLUG_SUFFIX_LENGTH = 6
SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$")

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_slug(name: str, fallback: str = "my-project") -> str:
    """Turn a display name into a URL slug, e.g. ``"My Channel!"`` -> ``my-channel``."""
    slug = _NON_ALNUM.sub("-", (name or "").strip().lower()).strip("-")
    slug = slug[:SLUG_MAX_LENGTH].rstrip("-")
    return slug or fallback


def generate_unique_slug(base: str) -> str:
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(SLUG_SUFFIX_LENGTH))
    trimmed = base[: SLUG_MAX_LENGTH - SLUG_SUFFIX_LENGTH - 1].rstrip("-")
    return f"{trimmed}-{suffix}"


def is_valid_slug(value: str) -> bool:
    return bool(value) and len(value) <= SLUG_MAX_LENGTH and bool(SLUG_PATTERN.match(value))
