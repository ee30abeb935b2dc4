from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP status and a stable error code:
    - bad_request (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - too_many_requests (429)
    - internal_server_error (500)

    Messages are shown to callers verbatim, so they must stay generic and
    never embed emails, tokens, hashes or addresses.
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Input failed validation (400)."""
    status_code = 400
    error_code = "bad_request"


class AuthenticationError(ServiceError):
    """No valid session, or credentials rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Caller is known to the resource but lacks the role (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Resource does not resolve for this caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict: stale version or duplicate (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "too_many_requests"

    def __init__(
        self,
        message: str,
        *,
        retry_after: int,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail={"retryAfter": retry_after, **(detail or {})})
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Invariant violation; the message stays generic (500)."""
    status_code = 500
    error_code = "internal_server_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
