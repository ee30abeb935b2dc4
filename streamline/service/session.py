from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from streamline.logging import get_logger
from streamline.storage.models import Session, User

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "session"
SESSION_LIFETIME = timedelta(days=30)
SESSION_RENEWAL_THRESHOLD = timedelta(days=7)
TOKEN_BYTES = 32


class SessionStore(Protocol):
    def create_session(self, session_id: str, user_id: str, expires_at: datetime) -> Session: ...

    def get_session_and_user(self, session_id: str) -> Optional[tuple[Session, User]]: ...

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> None: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


@dataclass
class SessionValidationResult:
    session: Optional[Session] = None
    user: Optional[User] = None

    @property
    def authenticated(self) -> bool:
        return self.session is not None and self.user is not None


def generate_session_token() -> str:
    """256 random bits as unpadded lowercase base32 (52 characters)."""
    raw = secrets.token_bytes(TOKEN_BYTES)
    return base64.b32encode(raw).decode("ascii").lower().rstrip("=")


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def build_session_cookie(token: str, *, max_age: int, secure: bool) -> str:
    cookie = f"{SESSION_COOKIE_NAME}={token}; Max-Age={max_age}; HttpOnly; Path=/; SameSite=Lax"
    if secure:
        cookie += "; Secure"
    return cookie


def build_blank_session_cookie(*, secure: bool) -> str:
    return build_session_cookie("", max_age=0, secure=secure)


def parse_session_cookie(cookie_header: Optional[str]) -> Optional[str]:
    """Pull the session token out of a ``Cookie`` header; blank counts as absent."""
    if not cookie_header:
        return None
    for part in cookie_header.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name.strip() == SESSION_COOKIE_NAME:
            value = value.strip()
            return value or None
    return None


class SessionManager:
    """Opaque-token sessions with sliding renewal.

    Only ``sha256(token)`` is persisted. Validation deletes expired rows on
    sight and pushes the expiry forward when a session is inside its
    renewal window, without re-issuing the token.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        lifetime: timedelta = SESSION_LIFETIME,
        renewal_threshold: timedelta = SESSION_RENEWAL_THRESHOLD,
        secure_cookies: bool = False,
    ) -> None:
        if renewal_threshold >= lifetime:
            raise ValueError("renewal threshold must be shorter than the session lifetime")
        self.store = store
        self.lifetime = lifetime
        self.renewal_threshold = renewal_threshold
        self.secure_cookies = secure_cookies

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def cookie_max_age(self) -> int:
        return int(self.lifetime.total_seconds())

    def generate_token(self) -> str:
        return generate_session_token()

    async def create_session(self, user_id: str, token: str) -> Session:
        expires_at = self._now() + self.lifetime
        session = self.store.create_session(hash_session_token(token), user_id, expires_at)
        logger.info("session_created", user_id=user_id, expires_at=expires_at.isoformat())
        return session

    async def issue(self, user_id: str) -> tuple[str, Session]:
        """Create a session and return the plaintext token alongside it."""
        token = self.generate_token()
        session = await self.create_session(user_id, token)
        return token, session

    async def validate_token(self, token: Optional[str]) -> SessionValidationResult:
        if not token:
            return SessionValidationResult()
        session_id = hash_session_token(token)
        found = self.store.get_session_and_user(session_id)
        if not found:
            return SessionValidationResult()
        session, user = found
        now = self._now()
        if now >= session.expires_at:
            self.store.delete_session(session_id)
            logger.info("session_expired", user_id=user.id)
            return SessionValidationResult()
        if now >= session.expires_at - self.renewal_threshold:
            session.expires_at = now + self.lifetime
            # Unlocked; concurrent renewals race harmlessly
            self.store.update_session_expiry(session_id, session.expires_at)
            logger.debug("session_renewed", user_id=user.id)
        return SessionValidationResult(session=session, user=user)

    async def invalidate_session(self, session_id: str) -> None:
        self.store.delete_session(session_id)

    async def invalidate_by_token(self, token: str) -> None:
        self.store.delete_session(hash_session_token(token))

    async def invalidate_all_except(self, user_id: str, keep_session_id: str) -> int:
        removed = self.store.delete_user_sessions(user_id, except_session_id=keep_session_id)
        logger.info("sessions_invalidated", user_id=user_id, count=removed, kept_current=True)
        return removed

    async def invalidate_all(self, user_id: str) -> int:
        removed = self.store.delete_user_sessions(user_id)
        logger.info("sessions_invalidated", user_id=user_id, count=removed, kept_current=False)
        return removed

    async def purge_expired(self) -> int:
        return self.store.delete_expired_sessions(self._now())

    def session_cookie(self, token: str) -> str:
        return build_session_cookie(
            token, max_age=self.cookie_max_age, secure=self.secure_cookies
        )

    def blank_session_cookie(self) -> str:
        return build_blank_session_cookie(secure=self.secure_cookies)

    def parse_cookie(self, cookie_header: Optional[str]) -> Optional[str]:
        return parse_session_cookie(cookie_header)
