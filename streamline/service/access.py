from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Type

from streamline.logging import get_logger
from streamline.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
)
from streamline.storage.models import Project, ProjectUser, Teamspace, User
from streamline.storage.repositories import ProjectRepository, TeamspaceRepository

logger = get_logger(__name__)

UNAUTHENTICATED_MESSAGE = "You must be logged in to access this resource"
TEAMSPACE_NOT_FOUND_MESSAGE = "Teamspace not found"
PROJECT_NOT_FOUND_MESSAGE = "Project not found"
PROJECT_FORBIDDEN_MESSAGE = "You do not have access to this project"


class TeamspaceRole(str, Enum):
    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"
    OWNER = "owner"


class ProjectRole(str, Enum):
    VIEWER = "viewer"
    EDITOR = "editor"
    OWNER = "owner"


TEAMSPACE_ROLE_HIERARCHY: Dict[TeamspaceRole, int] = {
    TeamspaceRole.VIEWER: 1,
    TeamspaceRole.EDITOR: 2,
    TeamspaceRole.ADMIN: 3,
    TeamspaceRole.OWNER: 4,
}

PROJECT_ROLE_HIERARCHY: Dict[ProjectRole, int] = {
    ProjectRole.VIEWER: 1,
    ProjectRole.EDITOR: 2,
    ProjectRole.OWNER: 3,
}

# Project tier has no admin; admins map to owner so they can never be
# locked out of a project in their own teamspace
_TEAMSPACE_TO_PROJECT: Dict[TeamspaceRole, ProjectRole] = {
    TeamspaceRole.OWNER: ProjectRole.OWNER,
    TeamspaceRole.ADMIN: ProjectRole.OWNER,
    TeamspaceRole.EDITOR: ProjectRole.EDITOR,
    TeamspaceRole.VIEWER: ProjectRole.VIEWER,
}

_unmapped = set(TeamspaceRole) - set(_TEAMSPACE_TO_PROJECT)
if _unmapped:
    raise RuntimeError(
        "teamspace roles without a project mapping: "
        + ", ".join(sorted(r.value for r in _unmapped))
    )
if set(TEAMSPACE_ROLE_HIERARCHY) != set(TeamspaceRole) or set(PROJECT_ROLE_HIERARCHY) != set(
    ProjectRole
):
    raise RuntimeError("role hierarchies must rank every role")


def map_teamspace_role_to_project(role: TeamspaceRole | str) -> ProjectRole:
    return _TEAMSPACE_TO_PROJECT[TeamspaceRole(role)]


def calculate_effective_role(
    teamspace_role: TeamspaceRole | str,
    project_membership: Optional[ProjectUser],
) -> Optional[ProjectRole]:
    """Role a caller actually holds on a project.

    Teamspace admins and owners always get ``owner``. Anyone else needs a
    project membership: its override wins, otherwise the teamspace role is
    mapped down. No membership means no access (``None``).
    """
    ts_role = TeamspaceRole(teamspace_role)
    if ts_role in (TeamspaceRole.ADMIN, TeamspaceRole.OWNER):
        return ProjectRole.OWNER
    if project_membership is None:
        return None
    if project_membership.role_override:
        return ProjectRole(project_membership.role_override)
    return map_teamspace_role_to_project(ts_role)


def has_teamspace_role(role: TeamspaceRole | str, required: TeamspaceRole | str) -> bool:
    return TEAMSPACE_ROLE_HIERARCHY[TeamspaceRole(role)] >= TEAMSPACE_ROLE_HIERARCHY[
        TeamspaceRole(required)
    ]


def has_project_role(role: ProjectRole | str, required: ProjectRole | str) -> bool:
    return PROJECT_ROLE_HIERARCHY[ProjectRole(role)] >= PROJECT_ROLE_HIERARCHY[
        ProjectRole(required)
    ]


def resolve_access_error(exists: bool, is_member: bool) -> Optional[Type[ServiceError]]:
    """Single policy point for enumeration-safe access failures.

    Anything the caller cannot see is NOT_FOUND, so guessing never confirms
    that a slug exists. FORBIDDEN is reserved for resources the caller is
    already entitled to know about. Returns ``None`` when access is fine.
    """
    if not exists:
        return NotFoundError
    if not is_member:
        return ForbiddenError
    return None


def _raise_access_error(exists: bool, is_member: bool, *, not_found: str, forbidden: str) -> None:
    error_cls = resolve_access_error(exists, is_member)
    if error_cls is NotFoundError:
        raise NotFoundError(not_found)
    if error_cls is ForbiddenError:
        raise ForbiddenError(forbidden)


def teamspace_role_message(required: TeamspaceRole | str) -> str:
    return f"This action requires {TeamspaceRole(required).value} role or higher in the teamspace"


def project_role_message(required: ProjectRole | str) -> str:
    return f"This action requires {ProjectRole(required).value} role or higher in the project"


@dataclass
class TeamspaceContext:
    user: User
    teamspace: Teamspace
    role: TeamspaceRole
    repository: TeamspaceRepository


@dataclass
class ProjectContext:
    user: User
    teamspace: Teamspace
    teamspace_role: TeamspaceRole
    project: Project
    role: ProjectRole
    membership: Optional[ProjectUser]
    repository: ProjectRepository


class AccessResolver:
    """Runs the authorization chain against a store.

    authenticated -> teamspace resolved -> project resolved -> role checked.
    Each step raises the ServiceError the HTTP layer renders.
    """

    def __init__(self, store) -> None:
        self.store = store

    def require_user(self, user: Optional[User]) -> User:
        if user is None:
            raise AuthenticationError(UNAUTHENTICATED_MESSAGE)
        return user

    def resolve_teamspace(self, user: Optional[User], teamspace_slug: str) -> TeamspaceContext:
        user = self.require_user(user)
        found = self.store.get_membership_by_slug(teamspace_slug, user.id) if teamspace_slug else None
        # One join answers both questions, so a slug the caller cannot see
        # is indistinguishable from one that does not exist
        _raise_access_error(
            found is not None,
            found is not None,
            not_found=TEAMSPACE_NOT_FOUND_MESSAGE,
            forbidden=TEAMSPACE_NOT_FOUND_MESSAGE,
        )
        teamspace, membership = found
        return TeamspaceContext(
            user=user,
            teamspace=teamspace,
            role=TeamspaceRole(membership.role),
            repository=TeamspaceRepository(self.store, teamspace.id),
        )

    def resolve_project(self, ctx: TeamspaceContext, project_slug: str) -> ProjectContext:
        project = ctx.repository.get_project_by_slug(project_slug) if project_slug else None
        membership = (
            self.store.get_project_member(project.id, ctx.user.id) if project else None
        )
        effective = calculate_effective_role(ctx.role, membership) if project else None
        _raise_access_error(
            project is not None,
            effective is not None,
            not_found=PROJECT_NOT_FOUND_MESSAGE,
            forbidden=PROJECT_FORBIDDEN_MESSAGE,
        )
        if membership is None:
            logger.debug("project_access_via_teamspace_role", teamspace_role=ctx.role.value)
        return ProjectContext(
            user=ctx.user,
            teamspace=ctx.teamspace,
            teamspace_role=ctx.role,
            project=project,
            role=effective,
            membership=membership,
            repository=ProjectRepository(self.store, project.id),
        )

    def resolve(
        self, user: Optional[User], teamspace_slug: str, project_slug: str
    ) -> ProjectContext:
        return self.resolve_project(self.resolve_teamspace(user, teamspace_slug), project_slug)

    def resolve_simple(
        self, user: Optional[User], *, project_id: Optional[str] = None
    ) -> ProjectContext:
        """Slug-free variant.

        Without ``project_id`` the caller's first project is used, which is
        the only one in a single-tenant deployment. Admins and owners reach
        projects of their teamspace whether or not they were added to them.
        """
        user = self.require_user(user)
        if project_id:
            project = self.store.get_project_by_id(project_id)
        else:
            project = self._default_project(user)
        teamspace_membership = (
            self.store.get_teamspace_member(project.teamspace_id, user.id) if project else None
        )
        teamspace = self.store.get_teamspace(project.teamspace_id) if teamspace_membership else None
        # A project in a teamspace the caller does not belong to looks missing
        _raise_access_error(
            teamspace is not None,
            teamspace is not None,
            not_found=PROJECT_NOT_FOUND_MESSAGE,
            forbidden=PROJECT_NOT_FOUND_MESSAGE,
        )
        ts_role = TeamspaceRole(teamspace_membership.role)
        membership = self.store.get_project_member(project.id, user.id)
        effective = calculate_effective_role(ts_role, membership)
        _raise_access_error(
            True,
            effective is not None,
            not_found=PROJECT_NOT_FOUND_MESSAGE,
            forbidden=PROJECT_FORBIDDEN_MESSAGE,
        )
        return ProjectContext(
            user=user,
            teamspace=teamspace,
            teamspace_role=ts_role,
            project=project,
            role=effective,
            membership=membership,
            repository=ProjectRepository(self.store, project.id),
        )

    def _default_project(self, user: User) -> Optional[Project]:
        found = self.store.get_first_project_membership(user.id)
        if found is not None:
            return found[0]
        for teamspace, role in self.store.list_user_teamspaces(user.id):
            if has_teamspace_role(role, TeamspaceRole.ADMIN):
                projects = self.store.list_projects(teamspace.id)
                if projects:
                    return projects[0]
        return None

    def require_teamspace_role(
        self, ctx: TeamspaceContext, required: TeamspaceRole | str
    ) -> TeamspaceContext:
        if not has_teamspace_role(ctx.role, required):
            raise ForbiddenError(teamspace_role_message(required))
        return ctx

    def require_project_role(self, ctx: ProjectContext, required: ProjectRole | str) -> ProjectContext:
        if not has_project_role(ctx.role, required):
            raise ForbiddenError(project_role_message(required))
        return ctx
