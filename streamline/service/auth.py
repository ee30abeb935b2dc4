from __future__ import annotations

import contextlib
import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from streamline.config import Settings, TenancyMode
from streamline.logging import get_logger, hash_identifier
from streamline.service.email import EmailService
from streamline.service.errors import (
    AuthenticationError,
    BadRequestError,
    ServerError,
)
from streamline.service.password import (
    burn_password_hash,
    hash_password,
    needs_rehash,
    validate_password,
    verify_password,
)
from streamline.service.rate_limit import (
    RateLimiter,
    login_key,
    password_reset_key,
    registration_key,
)
from streamline.service.session import SessionManager, SessionValidationResult
from streamline.slugs import generate_slug
from streamline.storage.errors import ConstraintViolation
from streamline.storage.models import AccountProvision, Session, User
from streamline.storage.redis_cache import RedisCache
from streamline.storage.repositories import (
    DEFAULT_PROJECT_NAME,
    DEFAULT_PROJECT_SLUG,
    DEFAULT_SINGLE_TENANT_TEAMSPACE_NAME,
    DEFAULT_SINGLE_TENANT_TEAMSPACE_SLUG,
    RESERVED_TEAMSPACE_SLUGS,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password."
LOGIN_SUCCESS_MESSAGE = "Login successful."
LOGOUT_MESSAGE = "Logged out successfully."
REGISTRATION_MESSAGE = "If this email is not already registered, your account has been created."
PASSWORD_RESET_REQUEST_MESSAGE = (
    "If an account exists for this email, a password reset link has been sent."
)
INVALID_RESET_TOKEN_MESSAGE = "This password reset link is invalid or has expired."


class AuthStore(Protocol):
    def transaction(self): ...

    def create_user(self, email: str, name: Optional[str] = None) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...


@dataclass
class AuthResult:
    """What an auth entry point hands back to the HTTP layer.

    ``cookie`` is the full ``Set-Cookie`` value when one must be emitted.
    """

    success: bool
    message: str
    user: Optional[User] = None
    session: Optional[Session] = None
    cookie: Optional[str] = None


def provision_single_tenant_member(
    store,
    user: User,
    *,
    member_role: str,
    project_name: Optional[str] = None,
) -> AccountProvision:
    """Attach ``user`` to the single-tenant workspace, creating it on first use.

    The first user becomes owner of the ``workspace`` teamspace and its
    ``default`` project. Later users join with ``member_role`` and are
    added to the default project without an override. Call inside the
    caller's ``transaction()``.
    """
    teamspace = store.get_teamspace_by_slug(DEFAULT_SINGLE_TENANT_TEAMSPACE_SLUG)
    if teamspace is None:
        teamspace = store.create_teamspace(
            DEFAULT_SINGLE_TENANT_TEAMSPACE_NAME,
            DEFAULT_SINGLE_TENANT_TEAMSPACE_SLUG,
            TenancyMode.SINGLE.value,
        )
        project = store.create_project(
            teamspace.id, project_name or DEFAULT_PROJECT_NAME, DEFAULT_PROJECT_SLUG
        )
        store.add_teamspace_member(teamspace.id, user.id, "owner")
        store.add_project_member(project.id, user.id)
        return AccountProvision(
            user=user,
            teamspace=teamspace,
            project=project,
            teamspace_role="owner",
            created=["teamspace", "project"],
        )
    store.add_teamspace_member(teamspace.id, user.id, member_role)
    projects = store.list_projects(teamspace.id)
    project = next((p for p in projects if p.slug == DEFAULT_PROJECT_SLUG), None)
    if project is None and projects:
        project = projects[0]
    if project is not None:
        store.add_project_member(project.id, user.id)
    return AccountProvision(user=user, teamspace=teamspace, project=project, teamspace_role=member_role)


class AuthService:
    """Registration, login, logout and password management.

    Login and registration never reveal whether an email is registered:
    failures share one message and an unknown email still pays for a
    password hash.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        limiter: RateLimiter,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.limiter = limiter
        self.settings = settings
        self.cache = cache
        self.email_service = email_service
        self._state_lock = threading.Lock()
        # In-process fallback for reset tokens when Redis is unavailable:
        # sha256(token) -> (user_id, expires_at)
        self._password_reset_tokens: dict[str, tuple[str, datetime]] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @contextlib.contextmanager
    def _with_state_lock(self):
        with self._state_lock:
            yield

    def _check_password_policy(self, password: str) -> None:
        result = validate_password(
            password,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )
        if not result.valid:
            raise BadRequestError(result.errors[0], detail={"errors": result.errors})

    async def _start_session(self, user: User, message: str) -> AuthResult:
        token, session = await self.sessions.issue(user.id)
        return AuthResult(
            success=True,
            message=message,
            user=user,
            session=session,
            cookie=self.sessions.session_cookie(token),
        )

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        project_name: Optional[str] = None,
        ip: str = "unknown",
    ) -> AuthResult:
        await self.limiter.check_named("registration", registration_key(ip))
        self._check_password_policy(password)

        multi_tenant = self.settings.tenancy_mode == TenancyMode.MULTI
        project_name = (project_name or "").strip() or None
        if multi_tenant and not project_name:
            raise BadRequestError("Project name is required")

        normalized = email.strip().lower()
        if self.store.get_user_by_email(normalized) is not None:
            # Same answer as a fresh registration, minus the session
            burn_password_hash(password)
            logger.info("registration_existing_email", email_hash=hash_identifier(normalized))
            return AuthResult(success=True, message=REGISTRATION_MESSAGE)

        password_hash = hash_password(password)
        try:
            if multi_tenant:
                provision = self._provision_multi_tenant(normalized, name, password_hash, project_name)
            else:
                with self.store.transaction():
                    user = self.store.create_user(normalized, name)
                    self.store.save_password(user.id, password_hash)
                    provision = provision_single_tenant_member(
                        self.store,
                        user,
                        member_role=self.settings.single_tenant_member_role,
                    )
        except ConstraintViolation as exc:
            if exc.constraint == "user_email":
                # Lost a race with a concurrent registration for the same email
                return AuthResult(success=True, message=REGISTRATION_MESSAGE)
            logger.error("registration_failed", constraint=exc.constraint)
            raise ServerError("Failed to create user account") from exc

        logger.info(
            "user_registered",
            user_id=provision.user.id,
            teamspace_id=provision.teamspace.id,
            teamspace_role=provision.teamspace_role,
            mode=self.settings.tenancy_mode.value,
        )
        return await self._start_session(provision.user, REGISTRATION_MESSAGE)

    def _provision_multi_tenant(
        self,
        email: str,
        name: Optional[str],
        password_hash: str,
        project_name: str,
    ) -> AccountProvision:
        slug = generate_slug(project_name)
        taken_message = (
            f'Project name "{project_name}" is already taken. Please choose a different name.'
        )
        with self.store.transaction():
            if slug in RESERVED_TEAMSPACE_SLUGS or self.store.get_teamspace_by_slug(slug) is not None:
                raise BadRequestError(taken_message)
            user = self.store.create_user(email, name)
            self.store.save_password(user.id, password_hash)
            try:
                teamspace = self.store.create_teamspace(project_name, slug, TenancyMode.MULTI.value)
                project = self.store.create_project(
                    teamspace.id, project_name, slug, globally_unique=True
                )
            except ConstraintViolation as exc:
                if exc.constraint in ("teamspace_slug", "project_slug"):
                    raise BadRequestError(taken_message) from exc
                raise
            self.store.add_teamspace_member(teamspace.id, user.id, "owner")
            self.store.add_project_member(project.id, user.id)
        return AccountProvision(
            user=user,
            teamspace=teamspace,
            project=project,
            teamspace_role="owner",
            created=["teamspace", "project"],
        )

    async def login(self, email: str, password: str, *, ip: str = "unknown") -> AuthResult:
        await self.limiter.check_named("login", login_key(ip, email))
        user = self.store.get_user_by_email(email)
        password_hash = self.store.get_password_hash(user.id) if user else None
        if user is None or password_hash is None:
            burn_password_hash(password)
            logger.info("login_failed", email_hash=hash_identifier(email))
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        if not verify_password(password_hash, password):
            logger.info("login_failed", email_hash=hash_identifier(email))
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        if needs_rehash(password_hash):
            self.store.save_password(user.id, hash_password(password))
            logger.info("password_rehashed", user_id=user.id)
        logger.info("login_succeeded", user_id=user.id)
        return await self._start_session(user, LOGIN_SUCCESS_MESSAGE)

    async def logout(self, cookie_header: Optional[str]) -> AuthResult:
        token = self.sessions.parse_cookie(cookie_header)
        if token:
            try:
                await self.sessions.invalidate_by_token(token)
            except Exception as exc:
                logger.warning("logout_invalidate_failed", error=str(exc))
        return AuthResult(
            success=True, message=LOGOUT_MESSAGE, cookie=self.sessions.blank_session_cookie()
        )

    async def validate_request(self, cookie_header: Optional[str]) -> SessionValidationResult:
        """Resolve the caller from the request's ``Cookie`` header."""
        return await self.sessions.validate_token(self.sessions.parse_cookie(cookie_header))

    async def me(self, cookie_header: Optional[str]) -> Optional[User]:
        return (await self.validate_request(cookie_header)).user

    async def change_password(
        self,
        user: User,
        session: Session,
        current_password: str,
        new_password: str,
    ) -> int:
        """Swap the password and sign out every other session of the user."""
        password_hash = self.store.get_password_hash(user.id)
        if not password_hash or not verify_password(password_hash, current_password):
            raise BadRequestError("Current password is incorrect")
        self._check_password_policy(new_password)
        self.store.save_password(user.id, hash_password(new_password))
        removed = await self.sessions.invalidate_all_except(user.id, session.id)
        logger.info("password_changed", user_id=user.id, sessions_revoked=removed)
        return removed

    async def request_password_reset(self, email: str, *, ip: str = "unknown") -> AuthResult:
        await self.limiter.check_named("password_reset", password_reset_key(email))
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email", email_hash=hash_identifier(email))
            return AuthResult(success=True, message=PASSWORD_RESET_REQUEST_MESSAGE)

        token = secrets.token_urlsafe(32)
        token_hash = hashlib.sha256(token.encode()).hexdigest()
        ttl = timedelta(minutes=self.settings.password_reset_ttl_minutes)
        if self.cache:
            await self.cache.set_password_reset(token_hash, user.id, int(ttl.total_seconds()))
        else:
            with self._with_state_lock():
                self._password_reset_tokens[token_hash] = (user.id, self._now() + ttl)
        if self.email_service:
            self.email_service.dispatch(
                self.email_service.send_password_reset,
                user.email,
                token,
                ttl_minutes=self.settings.password_reset_ttl_minutes,
            )
        logger.info("password_reset_requested", user_id=user.id)
        return AuthResult(success=True, message=PASSWORD_RESET_REQUEST_MESSAGE, user=user)

    async def _consume_reset_token(self, token: str) -> Optional[str]:
        token_hash = hashlib.sha256(token.encode()).hexdigest()
        if self.cache:
            return await self.cache.pop_password_reset(token_hash)
        with self._with_state_lock():
            stored = self._password_reset_tokens.pop(token_hash, None)
        if not stored:
            return None
        user_id, expires_at = stored
        if expires_at <= self._now():
            return None
        return user_id

    async def complete_password_reset(self, token: str, new_password: str) -> AuthResult:
        # Policy first so a weak password does not burn the single-use token
        self._check_password_policy(new_password)
        user_id = await self._consume_reset_token(token) if token else None
        user = self.store.get_user(user_id) if user_id else None
        if user is None:
            logger.warning("password_reset_invalid_token")
            raise BadRequestError(INVALID_RESET_TOKEN_MESSAGE)
        self.store.save_password(user.id, hash_password(new_password))
        removed = await self.sessions.invalidate_all(user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=removed)
        return AuthResult(success=True, message="Your password has been reset.", user=user)

    def cleanup_expired_reset_tokens(self) -> int:
        now = self._now()
        with self._with_state_lock():
            expired = [k for k, (_, exp) in self._password_reset_tokens.items() if exp <= now]
            for key in expired:
                del self._password_reset_tokens[key]
        return len(expired)
