from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or referential rule rejected a write.

    ``constraint`` names the rule (``user_email``, ``teamspace_slug``,
    ``project_slug``, ``teamspace_member``, ``project_member``,
    ``invitation_consumed``) so callers can translate it without parsing
    driver messages.
    """

    def __init__(
        self,
        message: str,
        *,
        constraint: str,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.constraint = constraint
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]
