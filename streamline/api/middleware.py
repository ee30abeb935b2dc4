from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import Depends, Header, Path, Request, Response

from streamline.logging import get_logger
from streamline.service.access import (
    UNAUTHENTICATED_MESSAGE,
    ProjectContext,
    ProjectRole,
    TeamspaceContext,
    TeamspaceRole,
)
from streamline.service.errors import AuthenticationError, BadRequestError
from streamline.service.rate_limit import general_key, get_client_ip
from streamline.service.runtime import get_runtime
from streamline.service.session import SessionValidationResult
from streamline.storage.models import User

logger = get_logger(__name__)


def client_ip(request: Request) -> str:
    return get_client_ip(request.headers, trusted_proxy=get_runtime().settings.trusted_proxy)


async def get_session(request: Request) -> SessionValidationResult:
    return await get_runtime().auth.validate_request(request.headers.get("cookie"))


async def get_authenticated_session(
    response: Response,
    result: SessionValidationResult = Depends(get_session),
) -> SessionValidationResult:
    """Authentication gate plus the general per-user API limit."""
    if not result.authenticated:
        raise AuthenticationError(UNAUTHENTICATED_MESSAGE)
    runtime = get_runtime()
    info = await runtime.limiter.check_named("general", general_key(result.user.id))
    response.headers["X-RateLimit-Limit"] = str(info.limit)
    response.headers["X-RateLimit-Remaining"] = str(info.remaining)
    response.headers["X-RateLimit-Reset"] = str(info.reset_seconds)
    return result


async def get_current_user(
    result: SessionValidationResult = Depends(get_authenticated_session),
) -> User:
    return result.user


async def require_teamspace(
    teamspace: str = Path(..., max_length=50),
    user: User = Depends(get_current_user),
) -> TeamspaceContext:
    return get_runtime().access.resolve_teamspace(user, teamspace)


async def require_project(
    project: str = Path(..., max_length=50),
    ctx: TeamspaceContext = Depends(require_teamspace),
) -> ProjectContext:
    return get_runtime().access.resolve_project(ctx, project)


def require_teamspace_role(
    role: TeamspaceRole | str,
) -> Callable[..., Awaitable[TeamspaceContext]]:
    """Dependency factory gating a teamspace route on a minimum role."""
    required = TeamspaceRole(role)

    async def _dependency(ctx: TeamspaceContext = Depends(require_teamspace)) -> TeamspaceContext:
        return get_runtime().access.require_teamspace_role(ctx, required)

    return _dependency


def require_project_role(role: ProjectRole | str) -> Callable[..., Awaitable[ProjectContext]]:
    """Dependency factory gating a project route on a minimum effective role."""
    required = ProjectRole(role)

    async def _dependency(ctx: ProjectContext = Depends(require_project)) -> ProjectContext:
        return get_runtime().access.require_project_role(ctx, required)

    return _dependency


async def require_simple_project(
    user: User = Depends(get_current_user),
    x_project_id: Optional[str] = Header(None, alias="X-Project-ID", max_length=64),
) -> ProjectContext:
    """Slug-free project context.

    Single-tenant deployments use the caller's only project. Multi-tenant
    deployments need the project named in ``X-Project-ID``.
    """
    runtime = get_runtime()
    if runtime.settings.is_single_tenant:
        return runtime.access.resolve_simple(user)
    if not x_project_id:
        raise BadRequestError("X-Project-ID header is required")
    return runtime.access.resolve_simple(user, project_id=x_project_id)
