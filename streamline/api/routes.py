from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from streamline.api.middleware import (
    client_ip,
    get_authenticated_session,
    get_current_user,
    require_project,
    require_project_role,
    require_simple_project,
    require_teamspace,
    require_teamspace_role,
)
from streamline.api.schemas import (
    AuditLogResponse,
    AuthResponse,
    CategoryCreateRequest,
    CategoryResponse,
    CategoryUpdateRequest,
    DocumentCreateRequest,
    DocumentResponse,
    DocumentUpdateRequest,
    Envelope,
    InvitationAcceptRequest,
    InvitationCreateRequest,
    InvitationDetailsResponse,
    InvitationResponse,
    LoginRequest,
    MemberResponse,
    MemberRoleUpdateRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProjectContextResponse,
    ProjectCreateRequest,
    ProjectMemberResponse,
    ProjectMemberUpdateRequest,
    ProjectResponse,
    RegisterRequest,
    RevisionResponse,
    SetupRequest,
    SetupStatusResponse,
    TeamspaceCreateRequest,
    TeamspaceResponse,
    TeamspaceUpdateRequest,
    UserResponse,
    VideoCategoriesRequest,
    VideoCreateRequest,
    VideoResponse,
    VideoUpdateRequest,
)
from streamline.logging import get_logger
from streamline.service.access import (
    ProjectContext,
    ProjectRole,
    TeamspaceContext,
    TeamspaceRole,
    has_teamspace_role,
)
from streamline.service.auth import AuthResult
from streamline.service.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from streamline.service.rate_limit import general_key
from streamline.service.runtime import get_runtime
from streamline.service.session import SessionValidationResult
from streamline.service.team import NOT_A_MEMBER_MESSAGE
from streamline.slugs import generate_slug, generate_unique_slug, is_valid_slug
from streamline.storage.models import Project, Teamspace, User, Video
from streamline.storage.repositories import (
    DEFAULT_LIMIT,
    MAX_LIMIT,
    RESERVED_TEAMSPACE_SLUGS,
    create_teamspace,
    list_user_teamspaces,
    teamspace_exists,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

VIDEO_NOT_FOUND = "Video not found or access denied"
DOCUMENT_NOT_FOUND = "Document not found or access denied"
CATEGORY_NOT_FOUND = "Category not found or access denied"


def _ok(data: Any) -> Envelope:
    return Envelope(status="ok", data=data)


def _apply_cookie(response: Response, result: AuthResult) -> None:
    if result.cookie:
        response.headers.append("Set-Cookie", result.cookie)


def _user(user: User) -> UserResponse:
    return UserResponse.model_validate(user, from_attributes=True)


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        message=result.message,
        user=_user(result.user) if result.user and result.session else None,
        session_expires_at=result.session.expires_at if result.session else None,
    )


def _teamspace(teamspace: Teamspace, role: Optional[str] = None) -> TeamspaceResponse:
    return TeamspaceResponse(
        id=teamspace.id,
        name=teamspace.name,
        slug=teamspace.slug,
        mode=teamspace.mode,
        role=role,
        created_at=teamspace.created_at,
    )


def _project(project: Project) -> ProjectResponse:
    return ProjectResponse.model_validate(project, from_attributes=True)


def _video(ctx: ProjectContext, video: Video) -> VideoResponse:
    response = VideoResponse.model_validate(video, from_attributes=True)
    return response.model_copy(
        update={"category_ids": ctx.repository.get_video_category_ids(video.id)}
    )


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account.

    New and already-registered emails get the same body; only a fresh
    account receives a session cookie.
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        name=body.name,
        project_name=body.project_name,
        ip=client_ip(request),
    )
    _apply_cookie(response, result)
    return _ok(AuthResponse(message=result.message))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: unknown email or wrong password, with one shared message
        429: rate limit exceeded for this IP and email
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, ip=client_ip(request))
    _apply_cookie(response, result)
    return _ok(_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.logout(request.headers.get("cookie"))
    _apply_cookie(response, result)
    return _ok(AuthResponse(message=result.message))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    teamspaces = [
        _teamspace(teamspace, role) for teamspace, role in list_user_teamspaces(runtime.store, user.id)
    ]
    return _ok({"user": _user(user), "teamspaces": teamspaces})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    current: SessionValidationResult = Depends(get_authenticated_session),
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        current.user, current.session, body.current_password, body.new_password
    )
    return _ok({"message": "Password updated.", "sessions_revoked": revoked})


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.request_password_reset(body.email, ip=client_ip(request))
    return _ok(AuthResponse(message=result.message))


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    result = await runtime.auth.complete_password_reset(body.token, body.new_password)
    return _ok(AuthResponse(message=result.message))


# setup


@router.get("/setup/status", response_model=Envelope, tags=["setup"])
async def setup_status():
    return _ok(SetupStatusResponse(**get_runtime().setup.status()))


@router.post("/setup", response_model=Envelope, status_code=201, tags=["setup"])
async def run_setup(body: SetupRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.setup.run(
        body.email,
        body.password,
        name=body.name,
        workspace_name=body.workspace_name,
    )
    _apply_cookie(response, result)
    return _ok(_auth_response(result))


# teamspaces


@router.get("/teamspaces", response_model=Envelope, tags=["teamspaces"])
async def list_teamspaces(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    return _ok(
        [_teamspace(teamspace, role) for teamspace, role in list_user_teamspaces(runtime.store, user.id)]
    )


@router.post("/teamspaces", response_model=Envelope, status_code=201, tags=["teamspaces"])
async def create_teamspace_route(
    body: TeamspaceCreateRequest, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    slug = body.slug
    if slug is None:
        slug = generate_slug(body.name, fallback="teamspace")
        # A taken name-derived slug gets a random suffix instead of a conflict
        if slug in RESERVED_TEAMSPACE_SLUGS or teamspace_exists(runtime.store, slug):
            slug = generate_unique_slug(slug)
    if not is_valid_slug(slug):
        raise BadRequestError("Slug may only contain lowercase letters, numbers and hyphens")
    teamspace, membership = create_teamspace(
        runtime.store,
        name=body.name.strip(),
        slug=slug,
        owner_id=user.id,
        mode=runtime.settings.tenancy_mode,
    )
    return _ok(_teamspace(teamspace, membership.role))


@router.get("/teamspaces/{teamspace}", response_model=Envelope, tags=["teamspaces"])
async def get_teamspace(ctx: TeamspaceContext = Depends(require_teamspace)):
    return _ok(_teamspace(ctx.teamspace, ctx.role.value))


@router.patch("/teamspaces/{teamspace}", response_model=Envelope, tags=["teamspaces"])
async def update_teamspace(
    body: TeamspaceUpdateRequest,
    ctx: TeamspaceContext = Depends(require_teamspace_role(TeamspaceRole.ADMIN)),
):
    runtime = get_runtime()
    with runtime.store.transaction():
        updated = ctx.repository.update_teamspace(name=body.name.strip())
        if updated is None:
            raise NotFoundError("Teamspace not found")
        ctx.repository.create_audit_log(
            action="teamspace.updated",
            entity_type="teamspace",
            user_id=ctx.user.id,
            entity_id=updated.id,
            meta={"name": updated.name},
        )
    return _ok(_teamspace(updated, ctx.role.value))


@router.get("/teamspaces/{teamspace}/projects", response_model=Envelope, tags=["teamspaces"])
async def list_projects(ctx: TeamspaceContext = Depends(require_teamspace)):
    runtime = get_runtime()
    projects = ctx.repository.list_projects()
    if not has_teamspace_role(ctx.role, TeamspaceRole.ADMIN):
        projects = [
            p for p in projects if runtime.store.get_project_member(p.id, ctx.user.id) is not None
        ]
    return _ok([_project(p) for p in projects])


@router.post(
    "/teamspaces/{teamspace}/projects",
    response_model=Envelope,
    status_code=201,
    tags=["teamspaces"],
)
async def create_project(
    body: ProjectCreateRequest,
    ctx: TeamspaceContext = Depends(require_teamspace_role(TeamspaceRole.ADMIN)),
):
    runtime = get_runtime()
    slug = body.slug or generate_slug(body.name)
    if not is_valid_slug(slug):
        raise BadRequestError("Slug may only contain lowercase letters, numbers and hyphens")
    with runtime.store.transaction():
        # Multi-tenant project slugs are unique across every teamspace
        project = ctx.repository.create_project(
            name=body.name.strip(),
            slug=slug,
            creator_id=ctx.user.id,
            globally_unique=not runtime.settings.is_single_tenant,
        )
        ctx.repository.create_audit_log(
            action="project.created",
            entity_type="project",
            user_id=ctx.user.id,
            entity_id=project.id,
            meta={"slug": project.slug},
        )
    return _ok(_project(project))


@router.get("/teamspaces/{teamspace}/audit-log", response_model=Envelope, tags=["teamspaces"])
async def get_teamspace_audit_log(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
    ctx: TeamspaceContext = Depends(require_teamspace_role(TeamspaceRole.ADMIN)),
):
    entries = ctx.repository.get_audit_log(limit=limit, offset=offset)
    return _ok([AuditLogResponse.model_validate(e, from_attributes=True) for e in entries])


# members


@router.get("/teamspaces/{teamspace}/members", response_model=Envelope, tags=["team"])
async def list_members(ctx: TeamspaceContext = Depends(require_teamspace)):
    members = get_runtime().team.list_members(ctx)
    return _ok([MemberResponse.model_validate(m, from_attributes=True) for m in members])


@router.patch("/teamspaces/{teamspace}/members/{user_id}", response_model=Envelope, tags=["team"])
async def update_member_role(
    user_id: str,
    body: MemberRoleUpdateRequest,
    ctx: TeamspaceContext = Depends(require_teamspace_role(TeamspaceRole.OWNER)),
):
    member = get_runtime().team.update_role(ctx, user_id, body.role)
    return _ok(MemberResponse.model_validate(member, from_attributes=True))


@router.delete("/teamspaces/{teamspace}/members/{user_id}", response_model=Envelope, tags=["team"])
async def remove_member(
    user_id: str,
    ctx: TeamspaceContext = Depends(require_teamspace_role(TeamspaceRole.OWNER)),
):
    get_runtime().team.remove_member(ctx, user_id)
    return _ok({"success": True})


# invitations


@router.get("/teamspaces/{teamspace}/invitations", response_model=Envelope, tags=["invitations"])
async def list_invitations(
    ctx: TeamspaceContext = Depends(require_teamspace_role(TeamspaceRole.OWNER)),
):
    invitations = get_runtime().invitations.list_pending(ctx)
    return _ok([InvitationResponse.model_validate(i, from_attributes=True) for i in invitations])


@router.post(
    "/teamspaces/{teamspace}/invitations",
    response_model=Envelope,
    status_code=201,
    tags=["invitations"],
)
async def create_invitation(
    body: InvitationCreateRequest,
    ctx: TeamspaceContext = Depends(require_teamspace_role(TeamspaceRole.OWNER)),
):
    invitation = get_runtime().invitations.create(ctx, body.email, body.role)
    return _ok(InvitationResponse.model_validate(invitation, from_attributes=True))


@router.delete(
    "/teamspaces/{teamspace}/invitations/{invitation_id}",
    response_model=Envelope,
    tags=["invitations"],
)
async def revoke_invitation(
    invitation_id: str,
    ctx: TeamspaceContext = Depends(require_teamspace_role(TeamspaceRole.OWNER)),
):
    get_runtime().invitations.revoke(ctx, invitation_id)
    return _ok({"success": True})


@router.get("/invitations/{token}", response_model=Envelope, tags=["invitations"])
async def validate_invitation(token: str, request: Request):
    runtime = get_runtime()
    await runtime.limiter.check_named("general", general_key(f"invitation:{client_ip(request)}"))
    details = runtime.invitations.validate(token)
    return _ok(InvitationDetailsResponse.model_validate(details, from_attributes=True))


@router.post("/invitations/{token}/accept", response_model=Envelope, tags=["invitations"])
async def accept_invitation(
    token: str, body: InvitationAcceptRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await runtime.limiter.check_named("general", general_key(f"invitation:{client_ip(request)}"))
    result = await runtime.invitations.accept(token, body.password, name=body.name)
    _apply_cookie(response, result)
    return _ok(_auth_response(result))


# project context


def _project_context(ctx: ProjectContext) -> ProjectContextResponse:
    return ProjectContextResponse(
        teamspace=_teamspace(ctx.teamspace, ctx.teamspace_role.value),
        project=_project(ctx.project),
        teamspace_role=ctx.teamspace_role.value,
        role=ctx.role.value,
        role_override=ctx.membership.role_override if ctx.membership else None,
    )


@router.get("/t/{teamspace}/{project}", response_model=Envelope, tags=["projects"])
async def get_project_context(ctx: ProjectContext = Depends(require_project)):
    return _ok(_project_context(ctx))


@router.get("/project", response_model=Envelope, tags=["projects"])
async def get_simple_project_context(ctx: ProjectContext = Depends(require_simple_project)):
    return _ok(_project_context(ctx))


_viewer = require_project_role(ProjectRole.VIEWER)
_editor = require_project_role(ProjectRole.EDITOR)
_owner = require_project_role(ProjectRole.OWNER)


# project members


@router.put(
    "/t/{teamspace}/{project}/members/{user_id}", response_model=Envelope, tags=["projects"]
)
async def set_project_member(
    user_id: str, body: ProjectMemberUpdateRequest, ctx: ProjectContext = Depends(_owner)
):
    runtime = get_runtime()
    with runtime.store.transaction():
        membership = ctx.repository.set_member_override(user_id, body.role_override)
        if membership is None:
            raise NotFoundError(NOT_A_MEMBER_MESSAGE)
        ctx.repository.create_audit_log(
            action="project.member_updated",
            entity_type="project_user",
            user_id=ctx.user.id,
            entity_id=user_id,
            meta={"roleOverride": body.role_override},
        )
    return _ok(ProjectMemberResponse.model_validate(membership, from_attributes=True))


@router.delete(
    "/t/{teamspace}/{project}/members/{user_id}", response_model=Envelope, tags=["projects"]
)
async def remove_project_member(user_id: str, ctx: ProjectContext = Depends(_owner)):
    runtime = get_runtime()
    with runtime.store.transaction():
        if not ctx.repository.remove_member(user_id):
            raise NotFoundError("User is not a member of this project")
        ctx.repository.create_audit_log(
            action="project.member_removed",
            entity_type="project_user",
            user_id=ctx.user.id,
            entity_id=user_id,
        )
    return _ok({"success": True})


# videos


@router.get("/t/{teamspace}/{project}/videos", response_model=Envelope, tags=["videos"])
async def list_videos(
    status: Optional[str] = Query(None, max_length=32),
    cursor: Optional[str] = Query(None, max_length=64),
    order_by: str = Query("created_at", pattern="^(created_at|updated_at|due_date|title)$"),
    order_dir: str = Query("desc", pattern="^(asc|desc)$"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    ctx: ProjectContext = Depends(_viewer),
):
    videos = ctx.repository.list_videos(
        status=status, cursor=cursor, order_by=order_by, order_dir=order_dir, limit=limit
    )
    return _ok([_video(ctx, v) for v in videos])


@router.post(
    "/t/{teamspace}/{project}/videos", response_model=Envelope, status_code=201, tags=["videos"]
)
async def create_video(body: VideoCreateRequest, ctx: ProjectContext = Depends(_editor)):
    runtime = get_runtime()
    with runtime.store.transaction():
        video = ctx.repository.create_video(
            title=body.title.strip(),
            status=body.status,
            description=body.description,
            due_date=body.due_date,
            publish_date=body.publish_date,
            created_by=ctx.user.id,
        )
        if body.category_ids:
            ctx.repository.set_video_categories(video.id, body.category_ids)
        ctx.repository.create_audit_log(
            action="video.created",
            entity_type="video",
            user_id=ctx.user.id,
            entity_id=video.id,
            meta={"title": video.title},
        )
    return _ok(_video(ctx, video))


@router.get("/t/{teamspace}/{project}/videos/{video_id}", response_model=Envelope, tags=["videos"])
async def get_video(video_id: str, ctx: ProjectContext = Depends(_viewer)):
    video = ctx.repository.get_video(video_id)
    if video is None:
        raise NotFoundError(VIDEO_NOT_FOUND)
    return _ok(_video(ctx, video))


@router.patch(
    "/t/{teamspace}/{project}/videos/{video_id}", response_model=Envelope, tags=["videos"]
)
async def update_video(
    video_id: str, body: VideoUpdateRequest, ctx: ProjectContext = Depends(_editor)
):
    runtime = get_runtime()
    fields: Dict[str, Any] = body.model_dump(exclude_unset=True)
    if not fields:
        raise BadRequestError("No fields to update")
    with runtime.store.transaction():
        video = ctx.repository.update_video(video_id, fields)
        if video is None:
            raise NotFoundError(VIDEO_NOT_FOUND)
        ctx.repository.create_audit_log(
            action="video.updated",
            entity_type="video",
            user_id=ctx.user.id,
            entity_id=video.id,
            meta={"fields": sorted(fields)},
        )
    return _ok(_video(ctx, video))


@router.delete(
    "/t/{teamspace}/{project}/videos/{video_id}", response_model=Envelope, tags=["videos"]
)
async def delete_video(video_id: str, ctx: ProjectContext = Depends(_owner)):
    runtime = get_runtime()
    with runtime.store.transaction():
        if not ctx.repository.delete_video(video_id):
            raise NotFoundError(VIDEO_NOT_FOUND)
        ctx.repository.create_audit_log(
            action="video.deleted", entity_type="video", user_id=ctx.user.id, entity_id=video_id
        )
    return _ok({"success": True})


@router.put(
    "/t/{teamspace}/{project}/videos/{video_id}/categories",
    response_model=Envelope,
    tags=["videos"],
)
async def set_video_categories(
    video_id: str, body: VideoCategoriesRequest, ctx: ProjectContext = Depends(_editor)
):
    ctx.repository.set_video_categories(video_id, body.category_ids)
    return _ok({"category_ids": ctx.repository.get_video_category_ids(video_id)})


@router.post(
    "/t/{teamspace}/{project}/videos/{video_id}/categories/{category_id}",
    response_model=Envelope,
    tags=["videos"],
)
async def add_video_category(
    video_id: str, category_id: str, ctx: ProjectContext = Depends(_editor)
):
    ctx.repository.add_video_category(video_id, category_id)
    return _ok({"category_ids": ctx.repository.get_video_category_ids(video_id)})


@router.delete(
    "/t/{teamspace}/{project}/videos/{video_id}/categories/{category_id}",
    response_model=Envelope,
    tags=["videos"],
)
async def remove_video_category(
    video_id: str, category_id: str, ctx: ProjectContext = Depends(_editor)
):
    ctx.repository.remove_video_category(video_id, category_id)
    return _ok({"category_ids": ctx.repository.get_video_category_ids(video_id)})


# documents


def _document(document) -> DocumentResponse:
    return DocumentResponse.model_validate(document, from_attributes=True)


@router.get("/t/{teamspace}/{project}/documents", response_model=Envelope, tags=["documents"])
async def list_documents(
    video_id: Optional[str] = Query(None, max_length=64),
    type: Optional[str] = Query(None, max_length=32),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    ctx: ProjectContext = Depends(_viewer),
):
    if video_id and type:
        document = ctx.repository.get_document_by_video_and_type(video_id, type)
        return _ok([_document(document)] if document else [])
    documents = ctx.repository.list_documents(video_id=video_id, type=type, limit=limit)
    return _ok([_document(d) for d in documents])


@router.post(
    "/t/{teamspace}/{project}/documents",
    response_model=Envelope,
    status_code=201,
    tags=["documents"],
)
async def create_document(body: DocumentCreateRequest, ctx: ProjectContext = Depends(_editor)):
    document = ctx.repository.create_document(
        video_id=body.video_id, type=body.type, content=body.content, created_by=ctx.user.id
    )
    if document is None:
        raise NotFoundError(VIDEO_NOT_FOUND)
    return _ok(_document(document))


@router.get(
    "/t/{teamspace}/{project}/documents/{document_id}", response_model=Envelope, tags=["documents"]
)
async def get_document(document_id: str, ctx: ProjectContext = Depends(_viewer)):
    document = ctx.repository.get_document(document_id)
    if document is None:
        raise NotFoundError(DOCUMENT_NOT_FOUND)
    return _ok(_document(document))


@router.put(
    "/t/{teamspace}/{project}/documents/{document_id}", response_model=Envelope, tags=["documents"]
)
async def update_document(
    document_id: str, body: DocumentUpdateRequest, ctx: ProjectContext = Depends(_editor)
):
    """Save with optimistic concurrency.

    A stale ``expected_version`` is a 409 whose details carry the server's
    current version and content so the client can reconcile.
    """
    result = ctx.repository.update_document_with_revision(
        document_id, body.content, body.expected_version, ctx.user.id
    )
    if not result.version_match:
        logger.info(
            "document_version_conflict",
            document_id=document_id,
            expected_version=body.expected_version,
            current_version=result.document.version,
        )
        raise ConflictError(
            "Document has been modified by another user. Please refresh and try again.",
            detail={
                "currentVersion": result.document.version,
                "expectedVersion": body.expected_version,
                "currentContent": result.document.content,
            },
        )
    ctx.repository.create_audit_log(
        action="document.updated",
        entity_type="document",
        user_id=ctx.user.id,
        entity_id=document_id,
        meta={"version": result.document.version},
    )
    return _ok(_document(result.document))


@router.delete(
    "/t/{teamspace}/{project}/documents/{document_id}", response_model=Envelope, tags=["documents"]
)
async def delete_document(document_id: str, ctx: ProjectContext = Depends(_owner)):
    if not ctx.repository.delete_document(document_id):
        raise NotFoundError(DOCUMENT_NOT_FOUND)
    ctx.repository.create_audit_log(
        action="document.deleted", entity_type="document", user_id=ctx.user.id, entity_id=document_id
    )
    return _ok({"success": True})


@router.get(
    "/t/{teamspace}/{project}/documents/{document_id}/revisions",
    response_model=Envelope,
    tags=["documents"],
)
async def list_revisions(
    document_id: str,
    limit: int = Query(MAX_LIMIT, ge=1, le=MAX_LIMIT),
    ctx: ProjectContext = Depends(_viewer),
):
    if ctx.repository.get_document(document_id) is None:
        raise NotFoundError(DOCUMENT_NOT_FOUND)
    revisions = ctx.repository.get_document_revisions(document_id, limit=limit)
    return _ok([RevisionResponse.model_validate(r, from_attributes=True) for r in revisions])


@router.get(
    "/t/{teamspace}/{project}/documents/{document_id}/revisions/{revision_id}",
    response_model=Envelope,
    tags=["documents"],
)
async def get_revision(document_id: str, revision_id: str, ctx: ProjectContext = Depends(_viewer)):
    revision = ctx.repository.get_document_revision(revision_id)
    if revision is None or revision.document_id != document_id:
        raise NotFoundError("Revision not found or access denied")
    return _ok(RevisionResponse.model_validate(revision, from_attributes=True))


@router.post(
    "/t/{teamspace}/{project}/documents/{document_id}/revisions/{revision_id}/restore",
    response_model=Envelope,
    tags=["documents"],
)
async def restore_revision(
    document_id: str, revision_id: str, ctx: ProjectContext = Depends(_editor)
):
    document = ctx.repository.restore_document_revision(document_id, revision_id, ctx.user.id)
    ctx.repository.create_audit_log(
        action="document.revision_restored",
        entity_type="document",
        user_id=ctx.user.id,
        entity_id=document_id,
        meta={"revisionId": revision_id, "version": document.version},
    )
    return _ok(_document(document))


# categories


def _category(category) -> CategoryResponse:
    return CategoryResponse.model_validate(category, from_attributes=True)


@router.get("/t/{teamspace}/{project}/categories", response_model=Envelope, tags=["categories"])
async def list_categories(ctx: ProjectContext = Depends(_viewer)):
    return _ok([_category(c) for c in ctx.repository.list_categories()])


@router.post(
    "/t/{teamspace}/{project}/categories",
    response_model=Envelope,
    status_code=201,
    tags=["categories"],
)
async def create_category(body: CategoryCreateRequest, ctx: ProjectContext = Depends(_editor)):
    category = ctx.repository.create_category(name=body.name.strip(), color=body.color)
    return _ok(_category(category))


@router.patch(
    "/t/{teamspace}/{project}/categories/{category_id}",
    response_model=Envelope,
    tags=["categories"],
)
async def update_category(
    category_id: str, body: CategoryUpdateRequest, ctx: ProjectContext = Depends(_editor)
):
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if not fields:
        raise BadRequestError("No fields to update")
    category = ctx.repository.update_category(category_id, fields)
    if category is None:
        raise NotFoundError(CATEGORY_NOT_FOUND)
    return _ok(_category(category))


@router.delete(
    "/t/{teamspace}/{project}/categories/{category_id}",
    response_model=Envelope,
    tags=["categories"],
)
async def delete_category(category_id: str, ctx: ProjectContext = Depends(_owner)):
    if not ctx.repository.delete_category(category_id):
        raise NotFoundError(CATEGORY_NOT_FOUND)
    return _ok({"success": True})


# audit log


@router.get("/t/{teamspace}/{project}/audit-log", response_model=Envelope, tags=["audit"])
async def get_audit_log(
    entity_type: Optional[str] = Query(None, max_length=32),
    entity_id: Optional[str] = Query(None, max_length=64),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
    ctx: ProjectContext = Depends(_viewer),
):
    if entity_type and entity_id:
        entries = ctx.repository.get_audit_log_for_entity(
            entity_type, entity_id, limit=limit, offset=offset
        )
    else:
        entries = ctx.repository.get_audit_log(limit=limit, offset=offset)
    items: List[AuditLogResponse] = [
        AuditLogResponse.model_validate(e, from_attributes=True) for e in entries
    ]
    return _ok(items)
