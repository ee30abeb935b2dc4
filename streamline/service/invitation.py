from __future__ import annotations

import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from streamline.config import Settings
from streamline.logging import get_logger, hash_identifier
from streamline.service.access import (
    TeamspaceContext,
    TeamspaceRole,
    has_teamspace_role,
    teamspace_role_message,
)
from streamline.service.auth import INVALID_CREDENTIALS_MESSAGE, AuthResult
from streamline.service.email import EmailService
from streamline.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ServerError,
)
from streamline.service.password import hash_password, validate_password, verify_password
from streamline.service.session import SessionManager
from streamline.storage.errors import ConstraintViolation
from streamline.storage.models import Invitation, User

logger = get_logger(__name__)

INVITABLE_ROLES = ("admin", "editor", "viewer")
INVITATION_TOKEN_LENGTH = 64
_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")

INVALID_TOKEN_MESSAGE = "Invalid invitation token"
ALREADY_ACCEPTED_MESSAGE = "This invitation has already been accepted"
EXPIRED_MESSAGE = "This invitation has expired"
TOO_MANY_ATTEMPTS_MESSAGE = "This invitation has exceeded the maximum number of attempts"
ALREADY_MEMBER_MESSAGE = "You are already a member of this teamspace"
ACCEPTED_MESSAGE = "Invitation accepted successfully"


def generate_invitation_token() -> str:
    """256 bits of randomness as 64 lowercase hex characters."""
    return secrets.token_hex(32)


def compare_tokens(expected: str, provided: str) -> bool:
    if len(expected) != INVITATION_TOKEN_LENGTH or len(provided) != INVITATION_TOKEN_LENGTH:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


@dataclass
class InvitationDetails:
    """Public view of a pending invitation, returned before acceptance."""

    email: str
    role: str
    teamspace_name: str
    teamspace_slug: str


class InvitationService:
    """Teamspace invitations: owners create and revoke, invitees accept.

    A token is consumed exactly once. Every acceptance attempt is counted
    before the invitation is checked, and the counter survives failed
    attempts, so a leaked token can only be guessed at a bounded number
    of times.
    """

    def __init__(
        self,
        store,
        sessions: SessionManager,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.email_service = email_service

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _require_owner(self, ctx: TeamspaceContext) -> None:
        if not has_teamspace_role(ctx.role, TeamspaceRole.OWNER):
            raise ForbiddenError(teamspace_role_message(TeamspaceRole.OWNER))

    def create(self, ctx: TeamspaceContext, email: str, role: str = "editor") -> Invitation:
        self._require_owner(ctx)
        if role not in INVITABLE_ROLES:
            raise BadRequestError(
                "Invalid role", detail={"allowed": list(INVITABLE_ROLES)}
            )
        normalized = email.strip().lower()
        if not normalized or "@" not in normalized:
            raise BadRequestError("Invalid email address")

        existing = self.store.get_user_by_email(normalized)
        if existing is not None and ctx.repository.get_member(existing.id) is not None:
            raise BadRequestError("This user is already a member of this teamspace")
        if ctx.repository.get_pending_invitation_for_email(normalized) is not None:
            raise BadRequestError("There is already a pending invitation for this email address")

        token = generate_invitation_token()
        ttl_hours = self.settings.invitation_ttl_hours
        with self.store.transaction():
            invitation = ctx.repository.create_invitation(
                email=normalized,
                role=role,
                token=token,
                expires_at=self._now() + timedelta(hours=ttl_hours),
                invited_by=ctx.user.id,
            )
            ctx.repository.create_audit_log(
                action="invitation.created",
                entity_type="invitation",
                user_id=ctx.user.id,
                entity_id=invitation.id,
                meta={"email": invitation.email, "role": invitation.role},
            )
        logger.info(
            "invitation_created",
            teamspace_id=ctx.teamspace.id,
            invitation_id=invitation.id,
            email_hash=hash_identifier(normalized),
            role=role,
        )
        if self.email_service:
            self.email_service.dispatch(
                self.email_service.send_invitation,
                normalized,
                token,
                teamspace_name=ctx.teamspace.name,
                role=role,
                inviter_name=ctx.user.name or ctx.user.email,
                ttl_hours=ttl_hours,
            )
        return invitation

    def list_pending(self, ctx: TeamspaceContext) -> List[Invitation]:
        self._require_owner(ctx)
        return ctx.repository.list_pending_invitations()

    def revoke(self, ctx: TeamspaceContext, invitation_id: str) -> None:
        self._require_owner(ctx)
        pending = {inv.id: inv for inv in ctx.repository.list_pending_invitations()}
        with self.store.transaction():
            if not ctx.repository.delete_invitation(invitation_id):
                raise NotFoundError("Invitation not found")
            invitation = pending.get(invitation_id)
            ctx.repository.create_audit_log(
                action="invitation.revoked",
                entity_type="invitation",
                user_id=ctx.user.id,
                entity_id=invitation_id,
                meta={"email": invitation.email} if invitation else {},
            )
        logger.info("invitation_revoked", teamspace_id=ctx.teamspace.id, invitation_id=invitation_id)

    def _lookup(self, token: str) -> Invitation:
        if not token or not _TOKEN_RE.match(token):
            raise NotFoundError(INVALID_TOKEN_MESSAGE)
        invitation = self.store.get_invitation_by_token(token)
        if invitation is None or not compare_tokens(invitation.token, token):
            raise NotFoundError(INVALID_TOKEN_MESSAGE)
        return invitation

    def _check_usable(self, invitation: Invitation) -> None:
        if invitation.accepted_at is not None:
            raise BadRequestError(ALREADY_ACCEPTED_MESSAGE)
        if self._now() > invitation.expires_at:
            raise BadRequestError(EXPIRED_MESSAGE)
        # attempts already includes the current try, so the max-th attempt is refused
        if invitation.attempts >= self.settings.invitation_max_attempts:
            raise BadRequestError(TOO_MANY_ATTEMPTS_MESSAGE)

    def validate(self, token: str) -> InvitationDetails:
        """Describe a usable invitation without consuming it."""
        invitation = self._lookup(token)
        if invitation.accepted_at is not None:
            raise BadRequestError(ALREADY_ACCEPTED_MESSAGE)
        if self._now() > invitation.expires_at:
            raise BadRequestError(EXPIRED_MESSAGE)
        if invitation.attempts >= self.settings.invitation_max_attempts:
            raise BadRequestError(TOO_MANY_ATTEMPTS_MESSAGE)
        teamspace = self.store.get_teamspace(invitation.teamspace_id)
        return InvitationDetails(
            email=invitation.email,
            role=invitation.role,
            teamspace_name=teamspace.name if teamspace else "Unknown Teamspace",
            teamspace_slug=teamspace.slug if teamspace else "",
        )

    async def accept(
        self, token: str, password: str, *, name: Optional[str] = None
    ) -> AuthResult:
        invitation = self._lookup(token)
        counted = self.store.increment_invitation_attempts(invitation.id)
        if counted is None:
            raise NotFoundError(INVALID_TOKEN_MESSAGE)
        self._check_usable(counted)

        policy = validate_password(
            password,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )
        if not policy.valid:
            raise BadRequestError(policy.errors[0], detail={"errors": policy.errors})

        existing = self.store.get_user_by_email(counted.email)
        if existing is not None:
            # Joining with an existing account proves ownership with its password
            password_hash = self.store.get_password_hash(existing.id)
            if not password_hash or not verify_password(password_hash, password):
                logger.info("invitation_accept_bad_password", invitation_id=counted.id)
                raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
            new_hash = None
        else:
            new_hash = hash_password(password)

        try:
            user = self._consume(counted, existing, new_hash, name)
        except ConstraintViolation as exc:
            if exc.constraint == "teamspace_member":
                raise BadRequestError(ALREADY_MEMBER_MESSAGE) from exc
            if exc.constraint == "user_email":
                raise BadRequestError(ALREADY_ACCEPTED_MESSAGE) from exc
            logger.error("invitation_accept_failed", constraint=exc.constraint)
            raise ServerError("Failed to accept invitation") from exc

        logger.info(
            "invitation_accepted",
            invitation_id=counted.id,
            teamspace_id=counted.teamspace_id,
            user_id=user.id,
            new_user=existing is None,
        )
        token_value, session = await self.sessions.issue(user.id)
        return AuthResult(
            success=True,
            message=ACCEPTED_MESSAGE,
            user=user,
            session=session,
            cookie=self.sessions.session_cookie(token_value),
        )

    def _consume(
        self,
        invitation: Invitation,
        existing: Optional[User],
        password_hash: Optional[str],
        name: Optional[str],
    ) -> User:
        with self.store.transaction():
            locked = self.store.lock_invitation(invitation.id)
            if locked is None:
                raise NotFoundError(INVALID_TOKEN_MESSAGE)
            # A concurrent accept may have won between the checks and the lock
            if locked.accepted_at is not None:
                raise BadRequestError(ALREADY_ACCEPTED_MESSAGE)

            if existing is not None:
                if self.store.get_teamspace_member(locked.teamspace_id, existing.id) is not None:
                    raise BadRequestError(ALREADY_MEMBER_MESSAGE)
                user = existing
            else:
                user = self.store.create_user(locked.email, (name or "").strip() or None)
                self.store.save_password(user.id, password_hash)

            self.store.add_teamspace_member(locked.teamspace_id, user.id, locked.role)
            for project in self.store.list_projects(locked.teamspace_id):
                if self.store.get_project_member(project.id, user.id) is None:
                    self.store.add_project_member(project.id, user.id)
            self.store.mark_invitation_accepted(locked.id, self._now())
            self.store.create_audit_log(
                teamspace_id=locked.teamspace_id,
                action="invitation.accepted",
                entity_type="invitation",
                user_id=user.id,
                entity_id=locked.id,
                meta={"email": locked.email, "role": locked.role},
            )
        return user
