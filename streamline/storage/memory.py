from __future__ import annotations

import contextlib
import copy
import threading
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from streamline.logging import get_logger
from streamline.storage.errors import ConstraintViolation
from streamline.storage.models import (
    AuditLogEntry,
    Category,
    Document,
    DocumentRevision,
    Invitation,
    Project,
    ProjectUser,
    Session,
    Teamspace,
    TeamspaceMember,
    TeamspaceUser,
    User,
    Video,
    new_id,
    utcnow,
)

_VIDEO_ORDER_FIELDS = {"created_at", "updated_at", "due_date", "title"}

# Tables copied on transaction entry and restored on failure
_TABLES = (
    "users",
    "credentials",
    "sessions",
    "teamspaces",
    "teamspace_users",
    "projects",
    "project_users",
    "invitations",
    "videos",
    "documents",
    "document_revisions",
    "categories",
    "video_categories",
    "audit_log",
)


def _sort_key(value: Any) -> Any:
    # None sorts after every real value, matching NULLS LAST
    if value is None:
        return (1, "")
    if isinstance(value, date) and not isinstance(value, datetime):
        return (0, value.isoformat())
    if isinstance(value, str):
        return (0, value.lower())
    return (0, value)


class MemoryStore:
    """In-process store for tests and single-node development.

    Every public method takes the store lock; ``transaction()`` holds it for
    a whole block and restores a snapshot of all tables if the block raises.
    Nothing is persisted across restarts.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.teamspaces: Dict[str, Teamspace] = {}
        self.teamspace_users: Dict[tuple[str, str], TeamspaceUser] = {}
        self.projects: Dict[str, Project] = {}
        self.project_users: Dict[tuple[str, str], ProjectUser] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.videos: Dict[str, Video] = {}
        self.documents: Dict[str, Document] = {}
        self.document_revisions: Dict[str, DocumentRevision] = {}
        self.categories: Dict[str, Category] = {}
        self.video_categories: set[tuple[str, str]] = set()
        self.audit_log: List[AuditLogEntry] = []
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            outermost = self._tx_depth == 0
            snapshot = (
                {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
                if outermost
                else None
            )
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    for name, table in snapshot.items():
                        setattr(self, name, table)
                raise
            finally:
                self._tx_depth -= 1

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users
    def create_user(self, email: str, name: Optional[str] = None) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", constraint="user_email", detail={"field": "email"}
                )
            user = User(id=new_id(), email=normalized, name=name)
            self.users[user.id] = user
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return copy.copy(user)
        return None

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user missing", constraint="user_fk", detail={"user_id": user_id}
                )
            self.credentials[user_id] = password_hash
            self.users[user_id].updated_at = utcnow()

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(self, session_id: str, user_id: str, expires_at: datetime) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user missing", constraint="user_fk", detail={"user_id": user_id}
                )
            session = Session(id=session_id, user_id=user_id, expires_at=expires_at)
            self.sessions[session_id] = session
            return copy.copy(session)

    def get_session_and_user(self, session_id: str) -> Optional[tuple[Session, User]]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            user = self.users.get(session.user_id)
            if not user:
                return None
            return copy.copy(session), copy.copy(user)

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session:
                session.expires_at = expires_at

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in doomed:
                self.sessions.pop(sid, None)
            return len(doomed)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [sid for sid, sess in self.sessions.items() if sess.expires_at <= now]
            for sid in doomed:
                self.sessions.pop(sid, None)
            return len(doomed)

    # teamspaces
    def create_teamspace(self, name: str, slug: str, mode: str) -> Teamspace:
        with self._data_lock:
            if any(t.slug == slug for t in self.teamspaces.values()):
                raise ConstraintViolation(
                    "teamspace slug already exists",
                    constraint="teamspace_slug",
                    detail={"field": "slug"},
                )
            teamspace = Teamspace(id=new_id(), name=name, slug=slug, mode=mode)
            self.teamspaces[teamspace.id] = teamspace
            return copy.copy(teamspace)

    def get_teamspace(self, teamspace_id: str) -> Optional[Teamspace]:
        with self._data_lock:
            teamspace = self.teamspaces.get(teamspace_id)
            return copy.copy(teamspace) if teamspace else None

    def get_teamspace_by_slug(self, slug: str) -> Optional[Teamspace]:
        with self._data_lock:
            for teamspace in self.teamspaces.values():
                if teamspace.slug == slug:
                    return copy.copy(teamspace)
        return None

    def count_teamspaces(self) -> int:
        with self._data_lock:
            return len(self.teamspaces)

    def update_teamspace(self, teamspace_id: str, *, name: str) -> Optional[Teamspace]:
        with self._data_lock:
            teamspace = self.teamspaces.get(teamspace_id)
            if not teamspace:
                return None
            teamspace.name = name
            teamspace.updated_at = utcnow()
            return copy.copy(teamspace)

    def get_membership_by_slug(
        self, slug: str, user_id: str
    ) -> Optional[tuple[Teamspace, TeamspaceUser]]:
        with self._data_lock:
            for teamspace in self.teamspaces.values():
                if teamspace.slug != slug:
                    continue
                membership = self.teamspace_users.get((teamspace.id, user_id))
                if membership:
                    return copy.copy(teamspace), copy.copy(membership)
        return None

    def list_user_teamspaces(self, user_id: str) -> List[tuple[Teamspace, str]]:
        with self._data_lock:
            rows = [
                (copy.copy(self.teamspaces[ts_id]), membership.role)
                for (ts_id, uid), membership in self.teamspace_users.items()
                if uid == user_id and ts_id in self.teamspaces
            ]
        return sorted(rows, key=lambda row: row[0].name.lower())

    def add_teamspace_member(self, teamspace_id: str, user_id: str, role: str) -> TeamspaceUser:
        with self._data_lock:
            if teamspace_id not in self.teamspaces or user_id not in self.users:
                raise ConstraintViolation(
                    "teamspace or user missing", constraint="teamspace_member_fk"
                )
            key = (teamspace_id, user_id)
            if key in self.teamspace_users:
                raise ConstraintViolation(
                    "already a teamspace member", constraint="teamspace_member"
                )
            membership = TeamspaceUser(teamspace_id=teamspace_id, user_id=user_id, role=role)
            self.teamspace_users[key] = membership
            return copy.copy(membership)

    def get_teamspace_member(self, teamspace_id: str, user_id: str) -> Optional[TeamspaceUser]:
        with self._data_lock:
            membership = self.teamspace_users.get((teamspace_id, user_id))
            return copy.copy(membership) if membership else None

    def list_teamspace_members(self, teamspace_id: str) -> List[TeamspaceMember]:
        with self._data_lock:
            members = []
            for (ts_id, user_id), membership in self.teamspace_users.items():
                if ts_id != teamspace_id:
                    continue
                user = self.users.get(user_id)
                if not user:
                    continue
                members.append(
                    TeamspaceMember(
                        user_id=user_id,
                        email=user.email,
                        name=user.name,
                        role=membership.role,
                        joined_at=membership.joined_at,
                    )
                )
        return sorted(members, key=lambda m: m.joined_at)

    def update_teamspace_member_role(
        self, teamspace_id: str, user_id: str, role: str
    ) -> Optional[TeamspaceUser]:
        with self._data_lock:
            membership = self.teamspace_users.get((teamspace_id, user_id))
            if not membership:
                return None
            membership.role = role
            return copy.copy(membership)

    def remove_teamspace_member(self, teamspace_id: str, user_id: str) -> bool:
        with self._data_lock:
            removed = self.teamspace_users.pop((teamspace_id, user_id), None) is not None
            if removed:
                project_ids = {
                    p.id for p in self.projects.values() if p.teamspace_id == teamspace_id
                }
                for key in [k for k in self.project_users if k[0] in project_ids and k[1] == user_id]:
                    self.project_users.pop(key, None)
            return removed

    def lock_teamspace(self, teamspace_id: str) -> Optional[Teamspace]:
        # transaction() already holds the data lock for the whole block
        return self.get_teamspace(teamspace_id)

    def count_teamspace_owners(self, teamspace_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for (ts_id, _), membership in self.teamspace_users.items()
                if ts_id == teamspace_id and membership.role == "owner"
            )

    # projects
    def create_project(
        self, teamspace_id: str, name: str, slug: str, *, globally_unique: bool = False
    ) -> Project:
        with self._data_lock:
            if teamspace_id not in self.teamspaces:
                raise ConstraintViolation("teamspace missing", constraint="teamspace_fk")
            if any(
                p.slug == slug and (globally_unique or p.teamspace_id == teamspace_id)
                for p in self.projects.values()
            ):
                raise ConstraintViolation(
                    "project slug already exists",
                    constraint="project_slug",
                    detail={"field": "slug"},
                )
            project = Project(id=new_id(), teamspace_id=teamspace_id, name=name, slug=slug)
            self.projects[project.id] = project
            return copy.copy(project)

    def get_project(self, teamspace_id: str, project_id: str) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
            if not project or project.teamspace_id != teamspace_id:
                return None
            return copy.copy(project)

    def get_project_by_slug(self, teamspace_id: str, slug: str) -> Optional[Project]:
        with self._data_lock:
            for project in self.projects.values():
                if project.teamspace_id == teamspace_id and project.slug == slug:
                    return copy.copy(project)
        return None

    def list_projects(self, teamspace_id: str) -> List[Project]:
        with self._data_lock:
            rows = [copy.copy(p) for p in self.projects.values() if p.teamspace_id == teamspace_id]
        return sorted(rows, key=lambda p: p.created_at)

    def add_project_member(
        self, project_id: str, user_id: str, role_override: Optional[str] = None
    ) -> ProjectUser:
        with self._data_lock:
            if project_id not in self.projects or user_id not in self.users:
                raise ConstraintViolation("project or user missing", constraint="project_member_fk")
            key = (project_id, user_id)
            if key in self.project_users:
                raise ConstraintViolation("already a project member", constraint="project_member")
            membership = ProjectUser(
                project_id=project_id, user_id=user_id, role_override=role_override
            )
            self.project_users[key] = membership
            return copy.copy(membership)

    def get_project_member(self, project_id: str, user_id: str) -> Optional[ProjectUser]:
        with self._data_lock:
            membership = self.project_users.get((project_id, user_id))
            return copy.copy(membership) if membership else None

    def update_project_member_override(
        self, project_id: str, user_id: str, role_override: Optional[str]
    ) -> Optional[ProjectUser]:
        with self._data_lock:
            membership = self.project_users.get((project_id, user_id))
            if not membership:
                return None
            membership.role_override = role_override
            return copy.copy(membership)

    def remove_project_member(self, project_id: str, user_id: str) -> bool:
        with self._data_lock:
            return self.project_users.pop((project_id, user_id), None) is not None

    def get_first_project_membership(
        self, user_id: str
    ) -> Optional[tuple[Project, ProjectUser]]:
        with self._data_lock:
            memberships = sorted(
                (m for (_, uid), m in self.project_users.items() if uid == user_id),
                key=lambda m: m.joined_at,
            )
            for membership in memberships:
                project = self.projects.get(membership.project_id)
                if project:
                    return copy.copy(project), copy.copy(membership)
        return None

    def get_project_by_id(self, project_id: str) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
            return copy.copy(project) if project else None

    # invitations
    def create_invitation(
        self,
        teamspace_id: str,
        *,
        email: str,
        role: str,
        token: str,
        expires_at: datetime,
        invited_by: Optional[str],
    ) -> Invitation:
        with self._data_lock:
            invitation = Invitation(
                id=new_id(),
                teamspace_id=teamspace_id,
                email=email.strip().lower(),
                role=role,
                token=token,
                expires_at=expires_at,
                invited_by=invited_by,
            )
            self.invitations[invitation.id] = invitation
            return copy.copy(invitation)

    def list_pending_invitations(self, teamspace_id: str, now: datetime) -> List[Invitation]:
        with self._data_lock:
            rows = [
                copy.copy(inv)
                for inv in self.invitations.values()
                if inv.teamspace_id == teamspace_id
                and inv.accepted_at is None
                and inv.expires_at > now
            ]
        return sorted(rows, key=lambda inv: inv.created_at)

    def get_pending_invitation_for_email(
        self, teamspace_id: str, email: str, now: datetime
    ) -> Optional[Invitation]:
        normalized = email.strip().lower()
        for inv in self.list_pending_invitations(teamspace_id, now):
            if inv.email == normalized:
                return inv
        return None

    def delete_invitation(self, teamspace_id: str, invitation_id: str) -> bool:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation or invitation.teamspace_id != teamspace_id:
                return False
            del self.invitations[invitation_id]
            return True

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._data_lock:
            for invitation in self.invitations.values():
                if invitation.token == token:
                    return copy.copy(invitation)
        return None

    def lock_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            return copy.copy(invitation) if invitation else None

    def increment_invitation_attempts(self, invitation_id: str) -> Optional[Invitation]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation:
                return None
            invitation.attempts += 1
            return copy.copy(invitation)

    def mark_invitation_accepted(self, invitation_id: str, accepted_at: datetime) -> None:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if invitation:
                invitation.accepted_at = accepted_at

    # videos
    def list_videos(
        self,
        project_id: str,
        *,
        status: Optional[str] = None,
        cursor: Optional[str] = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
    ) -> List[Video]:
        field_name = order_by if order_by in _VIDEO_ORDER_FIELDS else "created_at"
        with self._data_lock:
            rows = [
                copy.copy(v)
                for v in self.videos.values()
                if v.project_id == project_id
                and (status is None or v.status == status)
                and (cursor is None or v.id > cursor)
            ]
        rows.sort(key=lambda v: _sort_key(getattr(v, field_name)), reverse=order_dir == "desc")
        return rows[:limit]

    def get_video(self, project_id: str, video_id: str) -> Optional[Video]:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video or video.project_id != project_id:
                return None
            return copy.copy(video)

    def create_video(
        self,
        project_id: str,
        *,
        title: str,
        status: str = "idea",
        description: Optional[str] = None,
        due_date: Optional[date] = None,
        publish_date: Optional[date] = None,
        created_by: Optional[str] = None,
    ) -> Video:
        with self._data_lock:
            if project_id not in self.projects:
                raise ConstraintViolation("project missing", constraint="project_fk")
            video = Video(
                id=new_id(),
                project_id=project_id,
                title=title,
                status=status,
                description=description,
                due_date=due_date,
                publish_date=publish_date,
                created_by=created_by,
            )
            self.videos[video.id] = video
            return copy.copy(video)

    def update_video(
        self, project_id: str, video_id: str, fields: Dict[str, Any]
    ) -> Optional[Video]:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video or video.project_id != project_id:
                return None
            for key, value in fields.items():
                setattr(video, key, value)
            video.updated_at = utcnow()
            return copy.copy(video)

    def delete_video(self, project_id: str, video_id: str) -> bool:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video or video.project_id != project_id:
                return False
            del self.videos[video_id]
            doc_ids = {d.id for d in self.documents.values() if d.video_id == video_id}
            for doc_id in doc_ids:
                self.documents.pop(doc_id, None)
            for rev_id in [r.id for r in self.document_revisions.values() if r.document_id in doc_ids]:
                self.document_revisions.pop(rev_id, None)
            self.video_categories = {vc for vc in self.video_categories if vc[0] != video_id}
            return True

    # documents, scoped through the owning video
    def _document_in_project(self, project_id: str, document_id: str) -> Optional[Document]:
        document = self.documents.get(document_id)
        if not document:
            return None
        video = self.videos.get(document.video_id)
        if not video or video.project_id != project_id:
            return None
        return document

    def list_documents(
        self,
        project_id: str,
        *,
        video_id: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Document]:
        with self._data_lock:
            video_ids = {v.id for v in self.videos.values() if v.project_id == project_id}
            rows = [
                copy.copy(d)
                for d in self.documents.values()
                if d.video_id in video_ids
                and (video_id is None or d.video_id == video_id)
                and (type is None or d.type == type)
            ]
        rows.sort(key=lambda d: d.updated_at, reverse=True)
        return rows[:limit]

    def get_document(self, project_id: str, document_id: str) -> Optional[Document]:
        with self._data_lock:
            document = self._document_in_project(project_id, document_id)
            return copy.copy(document) if document else None

    def get_document_by_video_and_type(
        self, project_id: str, video_id: str, type: str
    ) -> Optional[Document]:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video or video.project_id != project_id:
                return None
            for document in self.documents.values():
                if document.video_id == video_id and document.type == type:
                    return copy.copy(document)
        return None

    def create_document(
        self,
        project_id: str,
        *,
        video_id: str,
        type: str,
        content: str = "",
        created_by: Optional[str] = None,
    ) -> Optional[Document]:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video or video.project_id != project_id:
                return None
            if any(d.video_id == video_id and d.type == type for d in self.documents.values()):
                raise ConstraintViolation(
                    "document type already exists for video", constraint="document_type"
                )
            document = Document(
                id=new_id(),
                video_id=video_id,
                type=type,
                content=content,
                updated_by=created_by,
            )
            self.documents[document.id] = document
            return copy.copy(document)

    def lock_document(self, project_id: str, document_id: str) -> Optional[Document]:
        # The caller's transaction() already holds the store lock
        return self.get_document(project_id, document_id)

    def insert_document_revision(
        self,
        project_id: str,
        document_id: str,
        *,
        content: str,
        version: int,
        created_by: Optional[str],
    ) -> Optional[DocumentRevision]:
        with self._data_lock:
            if self._document_in_project(project_id, document_id) is None:
                return None
            revision = DocumentRevision(
                id=new_id(),
                document_id=document_id,
                content=content,
                version=version,
                created_by=created_by,
            )
            self.document_revisions[revision.id] = revision
            return copy.copy(revision)

    def write_document(
        self,
        project_id: str,
        document_id: str,
        *,
        content: str,
        version: int,
        updated_by: Optional[str],
    ) -> Optional[Document]:
        with self._data_lock:
            document = self._document_in_project(project_id, document_id)
            if not document:
                return None
            document.content = content
            document.version = version
            document.updated_by = updated_by
            document.updated_at = utcnow()
            return copy.copy(document)

    def list_document_revisions(
        self, project_id: str, document_id: str, limit: int = 50
    ) -> List[DocumentRevision]:
        with self._data_lock:
            if not self._document_in_project(project_id, document_id):
                return []
            rows = [
                copy.copy(r)
                for r in self.document_revisions.values()
                if r.document_id == document_id
            ]
        rows.sort(key=lambda r: (r.created_at, r.version), reverse=True)
        return rows[:limit]

    def get_document_revision(
        self, project_id: str, revision_id: str
    ) -> Optional[DocumentRevision]:
        with self._data_lock:
            revision = self.document_revisions.get(revision_id)
            if not revision or not self._document_in_project(project_id, revision.document_id):
                return None
            return copy.copy(revision)

    def delete_document(self, project_id: str, document_id: str) -> bool:
        with self._data_lock:
            if not self._document_in_project(project_id, document_id):
                return False
            del self.documents[document_id]
            for rev_id in [r.id for r in self.document_revisions.values() if r.document_id == document_id]:
                self.document_revisions.pop(rev_id, None)
            return True

    # categories
    def list_categories(self, project_id: str, *, order_by: str = "name") -> List[Category]:
        with self._data_lock:
            rows = [copy.copy(c) for c in self.categories.values() if c.project_id == project_id]
        if order_by == "created_at":
            rows.sort(key=lambda c: c.created_at)
        else:
            rows.sort(key=lambda c: c.name.lower())
        return rows

    def get_category(self, project_id: str, category_id: str) -> Optional[Category]:
        with self._data_lock:
            category = self.categories.get(category_id)
            if not category or category.project_id != project_id:
                return None
            return copy.copy(category)

    def create_category(self, project_id: str, *, name: str, color: str) -> Category:
        with self._data_lock:
            if project_id not in self.projects:
                raise ConstraintViolation("project missing", constraint="project_fk")
            category = Category(id=new_id(), project_id=project_id, name=name, color=color)
            self.categories[category.id] = category
            return copy.copy(category)

    def update_category(
        self, project_id: str, category_id: str, fields: Dict[str, Any]
    ) -> Optional[Category]:
        with self._data_lock:
            category = self.categories.get(category_id)
            if not category or category.project_id != project_id:
                return None
            for key, value in fields.items():
                setattr(category, key, value)
            category.updated_at = utcnow()
            return copy.copy(category)

    def delete_category(self, project_id: str, category_id: str) -> bool:
        with self._data_lock:
            category = self.categories.get(category_id)
            if not category or category.project_id != project_id:
                return False
            del self.categories[category_id]
            self.video_categories = {vc for vc in self.video_categories if vc[1] != category_id}
            return True

    def count_project_categories(self, project_id: str, category_ids: Sequence[str]) -> int:
        with self._data_lock:
            return sum(
                1
                for cid in set(category_ids)
                if cid in self.categories and self.categories[cid].project_id == project_id
            )

    def get_video_category_ids(self, project_id: str, video_id: str) -> List[str]:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video or video.project_id != project_id:
                return []
            return sorted(cid for vid, cid in self.video_categories if vid == video_id)

    def replace_video_categories(
        self, project_id: str, video_id: str, category_ids: Sequence[str]
    ) -> None:
        with self._data_lock:
            self.video_categories = {vc for vc in self.video_categories if vc[0] != video_id}
            for cid in category_ids:
                self.video_categories.add((video_id, cid))

    def add_video_category(self, project_id: str, video_id: str, category_id: str) -> None:
        with self._data_lock:
            self.video_categories.add((video_id, category_id))

    def remove_video_category(self, project_id: str, video_id: str, category_id: str) -> bool:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video or video.project_id != project_id:
                return False
            key = (video_id, category_id)
            if key not in self.video_categories:
                return False
            self.video_categories.discard(key)
            return True

    # audit log
    def create_audit_log(
        self,
        *,
        action: str,
        entity_type: str,
        teamspace_id: Optional[str] = None,
        project_id: Optional[str] = None,
        user_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> AuditLogEntry:
        if bool(teamspace_id) == bool(project_id):
            raise ValueError("audit entries need exactly one of teamspace_id or project_id")
        with self._data_lock:
            entry = AuditLogEntry(
                id=new_id(),
                teamspace_id=teamspace_id,
                project_id=project_id,
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                meta=dict(meta) if meta else None,
            )
            self.audit_log.append(entry)
            return copy.copy(entry)

    def _list_audit(
        self,
        predicate,
        *,
        entity_type: Optional[str],
        entity_id: Optional[str],
        limit: int,
        offset: int,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            rows = [
                copy.copy(e)
                for e in self.audit_log
                if predicate(e)
                and (entity_type is None or e.entity_type == entity_type)
                and (entity_id is None or e.entity_id == entity_id)
            ]
        # Stable on equal timestamps: later inserts first
        rows.reverse()
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return rows[offset : offset + limit]

    def list_project_audit_log(
        self,
        project_id: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        return self._list_audit(
            lambda e: e.project_id == project_id,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
            offset=offset,
        )

    def list_teamspace_audit_log(
        self,
        teamspace_id: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        return self._list_audit(
            lambda e: e.teamspace_id == teamspace_id,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
            offset=offset,
        )
