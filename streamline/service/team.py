from __future__ import annotations

from typing import List

from streamline.logging import get_logger
from streamline.service.access import (
    TeamspaceContext,
    TeamspaceRole,
    has_teamspace_role,
    teamspace_role_message,
)
from streamline.service.errors import BadRequestError, ForbiddenError, NotFoundError
from streamline.storage.models import TeamspaceMember

logger = get_logger(__name__)

NOT_A_MEMBER_MESSAGE = "User is not a member of this teamspace"


class TeamService:
    """Membership management inside one teamspace.

    Writes are owner-only and can never leave a teamspace without an owner.
    """

    def __init__(self, store) -> None:
        self.store = store

    def list_members(self, ctx: TeamspaceContext) -> List[TeamspaceMember]:
        return ctx.repository.list_members()

    def _require_owner(self, ctx: TeamspaceContext) -> None:
        if not has_teamspace_role(ctx.role, TeamspaceRole.OWNER):
            raise ForbiddenError(teamspace_role_message(TeamspaceRole.OWNER))

    def update_role(self, ctx: TeamspaceContext, user_id: str, role: str) -> TeamspaceMember:
        self._require_owner(ctx)
        try:
            new_role = TeamspaceRole(role)
        except ValueError:
            raise BadRequestError(
                "Invalid role", detail={"allowed": [r.value for r in TeamspaceRole]}
            ) from None
        if user_id == ctx.user.id:
            raise BadRequestError("You cannot change your own role")

        with self.store.transaction():
            ctx.repository.lock()
            existing = ctx.repository.get_member(user_id)
            if existing is None:
                raise NotFoundError(NOT_A_MEMBER_MESSAGE)
            if (
                existing.role == TeamspaceRole.OWNER.value
                and new_role != TeamspaceRole.OWNER
                and ctx.repository.count_owners() <= 1
            ):
                raise BadRequestError(
                    "Cannot change role: teamspace must have at least one owner"
                )
            ctx.repository.update_member_role(user_id, new_role.value)
            ctx.repository.create_audit_log(
                action="team.role_changed",
                entity_type="teamspace_user",
                user_id=ctx.user.id,
                entity_id=user_id,
                meta={"previousRole": existing.role, "newRole": new_role.value},
            )
        logger.info(
            "team_role_changed",
            teamspace_id=ctx.teamspace.id,
            member_id=user_id,
            previous_role=existing.role,
            new_role=new_role.value,
        )
        return next(m for m in ctx.repository.list_members() if m.user_id == user_id)

    def remove_member(self, ctx: TeamspaceContext, user_id: str) -> None:
        """Drop the membership along with every project grant in this teamspace."""
        self._require_owner(ctx)
        if user_id == ctx.user.id:
            raise BadRequestError("You cannot remove yourself from the teamspace")

        with self.store.transaction():
            ctx.repository.lock()
            existing = ctx.repository.get_member(user_id)
            if existing is None:
                raise NotFoundError(NOT_A_MEMBER_MESSAGE)
            if existing.role == TeamspaceRole.OWNER.value and ctx.repository.count_owners() <= 1:
                raise BadRequestError("Cannot remove: teamspace must have at least one owner")
            ctx.repository.remove_member(user_id)
            ctx.repository.create_audit_log(
                action="team.member_removed",
                entity_type="teamspace_user",
                user_id=ctx.user.id,
                entity_id=user_id,
                meta={"role": existing.role},
            )
        logger.info("team_member_removed", teamspace_id=ctx.teamspace.id, member_id=user_id)
