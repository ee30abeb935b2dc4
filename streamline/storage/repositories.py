from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Union

from streamline.config import TenancyMode
from streamline.logging import get_logger
from streamline.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
)
from streamline.storage.errors import ConstraintViolation
from streamline.storage.models import (
    AuditLogEntry,
    Category,
    Document,
    DocumentRevision,
    DocumentUpdateResult,
    Invitation,
    Project,
    ProjectUser,
    Teamspace,
    TeamspaceMember,
    TeamspaceUser,
    Video,
    utcnow,
)

if TYPE_CHECKING:
    from streamline.storage.memory import MemoryStore
    from streamline.storage.postgres import PostgresStore

    Store = Union[MemoryStore, PostgresStore]

logger = get_logger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 100
MAX_REVISION_LIMIT = 100
MAX_DOCUMENT_LENGTH = 512000

DEFAULT_SINGLE_TENANT_TEAMSPACE_SLUG = "workspace"
DEFAULT_SINGLE_TENANT_TEAMSPACE_NAME = "Workspace"
DEFAULT_PROJECT_SLUG = "default"
DEFAULT_PROJECT_NAME = "Default"
RESERVED_TEAMSPACE_SLUGS = frozenset({DEFAULT_SINGLE_TENANT_TEAMSPACE_SLUG})
DEFAULT_CATEGORY_COLOR = "#6B7280"


def _clamp_limit(limit: Optional[int], maximum: int = MAX_LIMIT) -> int:
    if not limit or limit < 1:
        return min(DEFAULT_LIMIT, maximum)
    return min(limit, maximum)


def _mode_value(mode: Union[TenancyMode, str]) -> str:
    return mode.value if isinstance(mode, TenancyMode) else TenancyMode(mode).value


# Unscoped teamspace operations. These run before a tenant id is known
# and are the only teamspace queries outside TeamspaceRepository.


def create_teamspace(
    store: "Store",
    *,
    name: str,
    slug: str,
    owner_id: str,
    mode: Union[TenancyMode, str],
) -> tuple[Teamspace, TeamspaceUser]:
    """Create a teamspace and make ``owner_id`` its owner in one transaction.

    Single-tenant deployments allow exactly one teamspace; multi-tenant
    deployments refuse the slug reserved for the single-tenant workspace.
    """
    mode_value = _mode_value(mode)
    with store.transaction():
        if mode_value == TenancyMode.SINGLE.value:
            if get_teamspace_count(store) > 0:
                raise ForbiddenError(
                    "Cannot create multiple teamspaces in single-tenant mode",
                    detail={"reason": "SINGLE_TENANT_CONSTRAINT"},
                )
        elif slug in RESERVED_TEAMSPACE_SLUGS:
            raise BadRequestError(
                f"The slug '{slug}' is reserved and cannot be used",
                detail={"reason": "RESERVED_SLUG"},
            )
        try:
            teamspace = store.create_teamspace(name, slug, mode_value)
        except ConstraintViolation as exc:
            raise ConflictError("A teamspace with this slug already exists") from exc
        membership = store.add_teamspace_member(teamspace.id, owner_id, "owner")
    logger.info("teamspace_created", teamspace_id=teamspace.id, mode=mode_value)
    return teamspace, membership


def teamspace_exists(store: "Store", slug: str) -> bool:
    return store.get_teamspace_by_slug(slug) is not None


def get_teamspace_count(store: "Store") -> int:
    return store.count_teamspaces()


def list_user_teamspaces(store: "Store", user_id: str) -> List[tuple[Teamspace, str]]:
    return store.list_user_teamspaces(user_id)


class TeamspaceRepository:
    """Teamspace-scoped data access: members, projects, invitations, audit."""

    def __init__(self, store: "Store", teamspace_id: str) -> None:
        if not teamspace_id:
            raise ValueError("teamspace_id is required")
        self.store = store
        self.teamspace_id = teamspace_id

    def get_teamspace(self) -> Optional[Teamspace]:
        return self.store.get_teamspace(self.teamspace_id)

    def update_teamspace(self, *, name: str) -> Optional[Teamspace]:
        return self.store.update_teamspace(self.teamspace_id, name=name)

    # members
    def list_members(self) -> List[TeamspaceMember]:
        return self.store.list_teamspace_members(self.teamspace_id)

    def get_member(self, user_id: str) -> Optional[TeamspaceUser]:
        return self.store.get_teamspace_member(self.teamspace_id, user_id)

    def get_member_role(self, user_id: str) -> Optional[str]:
        membership = self.get_member(user_id)
        return membership.role if membership else None

    def add_member(self, user_id: str, role: str) -> TeamspaceUser:
        return self.store.add_teamspace_member(self.teamspace_id, user_id, role)

    def update_member_role(self, user_id: str, role: str) -> Optional[TeamspaceUser]:
        return self.store.update_teamspace_member_role(self.teamspace_id, user_id, role)

    def remove_member(self, user_id: str) -> bool:
        return self.store.remove_teamspace_member(self.teamspace_id, user_id)

    def lock(self) -> Optional[Teamspace]:
        """Serialize membership changes on this teamspace until the transaction ends."""
        return self.store.lock_teamspace(self.teamspace_id)

    def count_owners(self) -> int:
        return self.store.count_teamspace_owners(self.teamspace_id)

    # projects
    def list_projects(self) -> List[Project]:
        return self.store.list_projects(self.teamspace_id)

    def get_project(self, project_id: str) -> Optional[Project]:
        return self.store.get_project(self.teamspace_id, project_id)

    def get_project_by_slug(self, slug: str) -> Optional[Project]:
        return self.store.get_project_by_slug(self.teamspace_id, slug)

    def create_project(
        self,
        *,
        name: str,
        slug: str,
        creator_id: Optional[str] = None,
        globally_unique: bool = False,
    ) -> Project:
        with self.store.transaction():
            try:
                project = self.store.create_project(
                    self.teamspace_id, name, slug, globally_unique=globally_unique
                )
            except ConstraintViolation as exc:
                raise ConflictError("A project with this slug already exists") from exc
            if creator_id:
                self.store.add_project_member(project.id, creator_id)
        return project

    # invitations
    def create_invitation(
        self,
        *,
        email: str,
        role: str,
        token: str,
        expires_at,
        invited_by: Optional[str],
    ) -> Invitation:
        return self.store.create_invitation(
            self.teamspace_id,
            email=email,
            role=role,
            token=token,
            expires_at=expires_at,
            invited_by=invited_by,
        )

    def list_pending_invitations(self) -> List[Invitation]:
        return self.store.list_pending_invitations(self.teamspace_id, utcnow())

    def get_pending_invitation_for_email(self, email: str) -> Optional[Invitation]:
        return self.store.get_pending_invitation_for_email(self.teamspace_id, email, utcnow())

    def delete_invitation(self, invitation_id: str) -> bool:
        return self.store.delete_invitation(self.teamspace_id, invitation_id)

    # audit
    def create_audit_log(
        self,
        *,
        action: str,
        entity_type: str,
        user_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> AuditLogEntry:
        return self.store.create_audit_log(
            teamspace_id=self.teamspace_id,
            action=action,
            entity_type=entity_type,
            user_id=user_id,
            entity_id=entity_id,
            meta=meta,
        )

    def get_audit_log(self, *, limit: Optional[int] = None, offset: int = 0) -> List[AuditLogEntry]:
        return self.store.list_teamspace_audit_log(
            self.teamspace_id, limit=_clamp_limit(limit), offset=max(0, offset)
        )


class ProjectRepository:
    """Project-scoped data access.

    Every method filters on ``project_id`` directly or through the owning
    video. Rows belonging to another project come back as ``None`` or an
    empty list, exactly like rows that do not exist.
    """

    def __init__(self, store: "Store", project_id: str) -> None:
        if not project_id:
            raise ValueError("project_id is required")
        self.store = store
        self.project_id = project_id

    # members
    def get_member(self, user_id: str) -> Optional[ProjectUser]:
        return self.store.get_project_member(self.project_id, user_id)

    def set_member_override(
        self, user_id: str, role_override: Optional[str]
    ) -> Optional[ProjectUser]:
        """Grant access or change the override; ``None`` falls back to the teamspace role.

        Only members of the owning teamspace can hold a project membership,
        anyone else gets ``None`` back.
        """
        with self.store.transaction():
            project = self.store.get_project_by_id(self.project_id)
            if project is None:
                return None
            if self.store.get_teamspace_member(project.teamspace_id, user_id) is None:
                return None
            membership = self.store.update_project_member_override(
                self.project_id, user_id, role_override
            )
            if membership is None:
                membership = self.store.add_project_member(self.project_id, user_id, role_override)
        return membership

    def remove_member(self, user_id: str) -> bool:
        return self.store.remove_project_member(self.project_id, user_id)

    # videos
    def list_videos(
        self,
        *,
        status: Optional[str] = None,
        cursor: Optional[str] = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: Optional[int] = None,
    ) -> List[Video]:
        return self.store.list_videos(
            self.project_id,
            status=status,
            cursor=cursor,
            order_by=order_by,
            order_dir=order_dir,
            limit=_clamp_limit(limit),
        )

    def get_video(self, video_id: str) -> Optional[Video]:
        return self.store.get_video(self.project_id, video_id)

    def create_video(
        self,
        *,
        title: str,
        status: str = "idea",
        description: Optional[str] = None,
        due_date: Optional[date] = None,
        publish_date: Optional[date] = None,
        created_by: Optional[str] = None,
    ) -> Video:
        return self.store.create_video(
            self.project_id,
            title=title,
            status=status,
            description=description,
            due_date=due_date,
            publish_date=publish_date,
            created_by=created_by,
        )

    def update_video(self, video_id: str, fields: Dict[str, Any]) -> Optional[Video]:
        return self.store.update_video(self.project_id, video_id, fields)

    def delete_video(self, video_id: str) -> bool:
        return self.store.delete_video(self.project_id, video_id)

    # documents
    def list_documents(
        self,
        *,
        video_id: Optional[str] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        return self.store.list_documents(
            self.project_id, video_id=video_id, type=type, limit=_clamp_limit(limit)
        )

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.store.get_document(self.project_id, document_id)

    def get_document_by_video_and_type(self, video_id: str, type: str) -> Optional[Document]:
        return self.store.get_document_by_video_and_type(self.project_id, video_id, type)

    def create_document(
        self,
        *,
        video_id: str,
        type: str,
        content: str = "",
        created_by: Optional[str] = None,
    ) -> Optional[Document]:
        try:
            return self.store.create_document(
                self.project_id,
                video_id=video_id,
                type=type,
                content=content,
                created_by=created_by,
            )
        except ConstraintViolation as exc:
            raise ConflictError("A document of this type already exists for this video") from exc

    def delete_document(self, document_id: str) -> bool:
        return self.store.delete_document(self.project_id, document_id)

    def update_document_with_revision(
        self,
        document_id: str,
        content: str,
        expected_version: int,
        user_id: str,
    ) -> DocumentUpdateResult:
        """Optimistic-concurrency write.

        Under a row lock: a stale ``expected_version`` returns the current
        row with ``version_match=False`` and writes nothing; otherwise the
        pre-update content is snapshotted as a revision and the document
        moves to ``version + 1``.
        """
        with self.store.transaction():
            current = self.store.lock_document(self.project_id, document_id)
            if current is None:
                raise NotFoundError("Document not found or access denied")
            if current.version != expected_version:
                return DocumentUpdateResult(document=current, version_match=False)
            self.store.insert_document_revision(
                self.project_id,
                document_id,
                content=current.content,
                version=current.version,
                created_by=current.updated_by or user_id,
            )
            updated = self.store.write_document(
                self.project_id,
                document_id,
                content=content,
                version=current.version + 1,
                updated_by=user_id,
            )
            if updated is None:
                raise ServerError("Failed to update document")
        return DocumentUpdateResult(document=updated, version_match=True)

    def get_document_revisions(
        self, document_id: str, *, limit: Optional[int] = None
    ) -> List[DocumentRevision]:
        return self.store.list_document_revisions(
            self.project_id,
            document_id,
            limit=_clamp_limit(limit or MAX_REVISION_LIMIT, MAX_REVISION_LIMIT),
        )

    def get_document_revision(self, revision_id: str) -> Optional[DocumentRevision]:
        return self.store.get_document_revision(self.project_id, revision_id)

    def restore_document_revision(
        self, document_id: str, revision_id: str, user_id: str
    ) -> Document:
        """Write an old revision's content back as a new version.

        The current state is snapshotted first, so history only grows.
        """
        if self.get_document(document_id) is None:
            raise NotFoundError("Document not found or access denied")
        revision = self.get_document_revision(revision_id)
        if revision is None:
            raise NotFoundError("Revision not found or access denied")
        if revision.document_id != document_id:
            raise BadRequestError("Revision does not belong to this document")
        with self.store.transaction():
            current = self.store.lock_document(self.project_id, document_id)
            if current is None:
                raise NotFoundError("Document not found or access denied")
            self.store.insert_document_revision(
                self.project_id,
                document_id,
                content=current.content,
                version=current.version,
                created_by=current.updated_by or user_id,
            )
            restored = self.store.write_document(
                self.project_id,
                document_id,
                content=revision.content,
                version=current.version + 1,
                updated_by=user_id,
            )
            if restored is None:
                raise ServerError("Failed to restore document")
        return restored

    # categories
    def list_categories(self, *, order_by: str = "name") -> List[Category]:
        return self.store.list_categories(self.project_id, order_by=order_by)

    def get_category(self, category_id: str) -> Optional[Category]:
        return self.store.get_category(self.project_id, category_id)

    def create_category(self, *, name: str, color: Optional[str] = None) -> Category:
        return self.store.create_category(
            self.project_id, name=name, color=color or DEFAULT_CATEGORY_COLOR
        )

    def update_category(self, category_id: str, fields: Dict[str, Any]) -> Optional[Category]:
        return self.store.update_category(self.project_id, category_id, fields)

    def delete_category(self, category_id: str) -> bool:
        return self.store.delete_category(self.project_id, category_id)

    def get_video_category_ids(self, video_id: str) -> List[str]:
        return self.store.get_video_category_ids(self.project_id, video_id)

    def set_video_categories(self, video_id: str, category_ids: Sequence[str]) -> None:
        unique_ids = list(dict.fromkeys(category_ids))
        with self.store.transaction():
            if self.get_video(video_id) is None:
                raise NotFoundError("Video not found or access denied")
            if self.store.count_project_categories(self.project_id, unique_ids) != len(unique_ids):
                raise NotFoundError("Category not found or access denied")
            self.store.replace_video_categories(self.project_id, video_id, unique_ids)

    def add_video_category(self, video_id: str, category_id: str) -> None:
        if self.get_video(video_id) is None:
            raise NotFoundError("Video not found or access denied")
        if self.get_category(category_id) is None:
            raise NotFoundError("Category not found or access denied")
        self.store.add_video_category(self.project_id, video_id, category_id)

    def remove_video_category(self, video_id: str, category_id: str) -> None:
        if self.get_video(video_id) is None:
            raise NotFoundError("Video not found or access denied")
        self.store.remove_video_category(self.project_id, video_id, category_id)

    # audit
    def create_audit_log(
        self,
        *,
        action: str,
        entity_type: str,
        user_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> AuditLogEntry:
        return self.store.create_audit_log(
            project_id=self.project_id,
            action=action,
            entity_type=entity_type,
            user_id=user_id,
            entity_id=entity_id,
            meta=meta,
        )

    def get_audit_log(self, *, limit: Optional[int] = None, offset: int = 0) -> List[AuditLogEntry]:
        return self.store.list_project_audit_log(
            self.project_id, limit=_clamp_limit(limit), offset=max(0, offset)
        )

    def get_audit_log_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        return self.store.list_project_audit_log(
            self.project_id,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=_clamp_limit(limit),
            offset=max(0, offset),
        )
