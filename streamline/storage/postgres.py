from __future__ import annotations

import contextlib
import json
import uuid
from contextvars import ContextVar
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
)

REQUIRED_TABLES = (
    "app_user",
    "user_credential",
    "auth_session",
    "teamspace",
    "teamspace_user",
    "project",
    "project_user",
    "invitation",
    "video",
    "document",
    "document_revision",
    "category",
    "video_category",
    "audit_log",
)

# Whitelisted ORDER BY columns; never interpolate caller input
_VIDEO_ORDER_COLUMNS = {
    "created_at": "v.created_at",
    "updated_at": "v.updated_at",
    "due_date": "v.due_date",
    "title": "lower(v.title)",
}
_VIDEO_UPDATE_COLUMNS = {"title", "description", "status", "due_date", "publish_date"}
_CATEGORY_UPDATE_COLUMNS = {"name", "color"}

_TEAMSPACE_COLUMNS = "t.id, t.name, t.slug, t.mode, t.created_at, t.updated_at"
_VIDEO_COLUMNS = (
    "v.id, v.project_id, v.title, v.status, v.description, v.due_date, "
    "v.publish_date, v.created_by, v.created_at, v.updated_at"
)
_DOCUMENT_COLUMNS = (
    "d.id, d.video_id, d.type, d.content, d.version, d.updated_by, d.created_at, d.updated_at"
)


def _user(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _teamspace(row: Dict[str, Any], prefix: str = "") -> Teamspace:
    return Teamspace(
        id=str(row[f"{prefix}id"]),
        name=row[f"{prefix}name"],
        slug=row[f"{prefix}slug"],
        mode=row[f"{prefix}mode"],
        created_at=row[f"{prefix}created_at"],
        updated_at=row[f"{prefix}updated_at"],
    )


def _project(row: Dict[str, Any]) -> Project:
    return Project(
        id=str(row["id"]),
        teamspace_id=str(row["teamspace_id"]),
        name=row["name"],
        slug=row["slug"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _project_user(row: Dict[str, Any]) -> ProjectUser:
    return ProjectUser(
        project_id=str(row["project_id"]),
        user_id=str(row["user_id"]),
        role_override=row.get("role_override"),
        joined_at=row["joined_at"],
    )


def _invitation(row: Dict[str, Any]) -> Invitation:
    return Invitation(
        id=str(row["id"]),
        teamspace_id=str(row["teamspace_id"]),
        email=row["email"],
        role=row["role"],
        token=row["token"],
        expires_at=row["expires_at"],
        invited_by=str(row["invited_by"]) if row.get("invited_by") else None,
        attempts=row.get("attempts") or 0,
        accepted_at=row.get("accepted_at"),
        created_at=row["created_at"],
    )


def _video(row: Dict[str, Any]) -> Video:
    return Video(
        id=str(row["id"]),
        project_id=str(row["project_id"]),
        title=row["title"],
        status=row["status"],
        description=row.get("description"),
        due_date=row.get("due_date"),
        publish_date=row.get("publish_date"),
        created_by=str(row["created_by"]) if row.get("created_by") else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _document(row: Dict[str, Any]) -> Document:
    return Document(
        id=str(row["id"]),
        video_id=str(row["video_id"]),
        type=row["type"],
        content=row.get("content") or "",
        version=row["version"],
        updated_by=str(row["updated_by"]) if row.get("updated_by") else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _revision(row: Dict[str, Any]) -> DocumentRevision:
    return DocumentRevision(
        id=str(row["id"]),
        document_id=str(row["document_id"]),
        content=row.get("content") or "",
        version=row["version"],
        created_by=str(row["created_by"]) if row.get("created_by") else None,
        created_at=row["created_at"],
    )


def _category(row: Dict[str, Any]) -> Category:
    return Category(
        id=str(row["id"]),
        project_id=str(row["project_id"]),
        name=row["name"],
        color=row["color"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _audit(row: Dict[str, Any]) -> AuditLogEntry:
    meta = row.get("meta")
    if isinstance(meta, str):
        meta = json.loads(meta)
    return AuditLogEntry(
        id=str(row["id"]),
        action=row["action"],
        entity_type=row["entity_type"],
        teamspace_id=str(row["teamspace_id"]) if row.get("teamspace_id") else None,
        project_id=str(row["project_id"]) if row.get("project_id") else None,
        user_id=str(row["user_id"]) if row.get("user_id") else None,
        entity_id=row.get("entity_id"),
        meta=meta,
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed store for users, sessions and tenant data.

    Single statements run in their own transaction. ``transaction()`` binds
    one pooled connection to the current context so every store call made
    inside the block shares it and commits or rolls back together.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._bound_conn: ContextVar[Any] = ContextVar(
            f"streamline_pg_conn_{id(self)}", default=None
        )
        self._verify_required_schema()

    def _connect(self):
        bound = self._bound_conn.get()
        if bound is not None:
            return contextlib.nullcontext(bound)
        return self.pool.connection()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if self._bound_conn.get() is not None:
            with self._bound_conn.get().transaction():
                yield self
            return
        with self.pool.connection() as conn, conn.transaction():
            token = self._bound_conn.set(conn)
            try:
                yield self
            finally:
                self._bound_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Refuse to start when migrations have not been applied."""

        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
            if missing:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                        ", ".join(sorted(missing))
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, email: str, name: Optional[str] = None) -> User:
        normalized = email.strip().lower()
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name)
                    VALUES (%s, %s, %s)
                    RETURNING id, email, name, created_at, updated_at
                    """,
                    (str(uuid.uuid4()), normalized, name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", constraint="user_email", detail={"field": "email"}
            )
        return _user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, name, created_at, updated_at FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        return _user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, name, created_at, updated_at FROM app_user WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return _user(row) if row else None

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS n FROM app_user").fetchone()
        return int(row["n"]) if row else 0

    def save_password(self, user_id: str, password_hash: str) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (user_id)
                    DO UPDATE SET password_hash = EXCLUDED.password_hash, updated_at = now()
                    """,
                    (user_id, password_hash),
                )
                conn.execute("UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,))
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user missing", constraint="user_fk", detail={"user_id": user_id}
            )

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM user_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return row["password_hash"] if row else None

    # sessions
    def create_session(self, session_id: str, user_id: str, expires_at: datetime) -> Session:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING id, user_id, expires_at, created_at
                    """,
                    (session_id, user_id, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user missing", constraint="user_fk", detail={"user_id": user_id}
            )
        return Session(
            id=row["id"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def get_session_and_user(self, session_id: str) -> Optional[tuple[Session, User]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.created_at AS session_created_at,
                       u.id, u.email, u.name, u.created_at, u.updated_at
                FROM auth_session s
                JOIN app_user u ON u.id = s.user_id
                WHERE s.id = %s
                """,
                (session_id,),
            ).fetchone()
        if not row:
            return None
        session = Session(
            id=row["session_id"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["session_created_at"],
        )
        return session, _user(row)

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE id = %s", (expires_at, session_id)
            )

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn, conn.transaction():
            if except_session_id:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # teamspaces
    def create_teamspace(self, name: str, slug: str, mode: str) -> Teamspace:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO teamspace (id, name, slug, mode)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, name, slug, mode, created_at, updated_at
                    """,
                    (str(uuid.uuid4()), name, slug, mode),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "teamspace slug already exists",
                constraint="teamspace_slug",
                detail={"field": "slug"},
            )
        return _teamspace(row)

    def get_teamspace(self, teamspace_id: str) -> Optional[Teamspace]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TEAMSPACE_COLUMNS} FROM teamspace t WHERE t.id = %s", (teamspace_id,)
            ).fetchone()
        return _teamspace(row) if row else None

    def get_teamspace_by_slug(self, slug: str) -> Optional[Teamspace]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TEAMSPACE_COLUMNS} FROM teamspace t WHERE t.slug = %s", (slug,)
            ).fetchone()
        return _teamspace(row) if row else None

    def count_teamspaces(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS n FROM teamspace").fetchone()
        return int(row["n"]) if row else 0

    def update_teamspace(self, teamspace_id: str, *, name: str) -> Optional[Teamspace]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE teamspace SET name = %s, updated_at = now()
                WHERE id = %s
                RETURNING id, name, slug, mode, created_at, updated_at
                """,
                (name, teamspace_id),
            ).fetchone()
        return _teamspace(row) if row else None

    def get_membership_by_slug(
        self, slug: str, user_id: str
    ) -> Optional[tuple[Teamspace, TeamspaceUser]]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_TEAMSPACE_COLUMNS}, tu.role, tu.joined_at
                FROM teamspace t
                JOIN teamspace_user tu ON tu.teamspace_id = t.id AND tu.user_id = %s
                WHERE t.slug = %s
                """,
                (user_id, slug),
            ).fetchone()
        if not row:
            return None
        teamspace = _teamspace(row)
        membership = TeamspaceUser(
            teamspace_id=teamspace.id,
            user_id=user_id,
            role=row["role"],
            joined_at=row["joined_at"],
        )
        return teamspace, membership

    def list_user_teamspaces(self, user_id: str) -> List[tuple[Teamspace, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TEAMSPACE_COLUMNS}, tu.role
                FROM teamspace t
                JOIN teamspace_user tu ON tu.teamspace_id = t.id
                WHERE tu.user_id = %s
                ORDER BY lower(t.name)
                """,
                (user_id,),
            ).fetchall()
        return [(_teamspace(row), row["role"]) for row in rows]

    def add_teamspace_member(self, teamspace_id: str, user_id: str, role: str) -> TeamspaceUser:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO teamspace_user (teamspace_id, user_id, role)
                    VALUES (%s, %s, %s)
                    RETURNING teamspace_id, user_id, role, joined_at
                    """,
                    (teamspace_id, user_id, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("already a teamspace member", constraint="teamspace_member")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("teamspace or user missing", constraint="teamspace_member_fk")
        return TeamspaceUser(
            teamspace_id=str(row["teamspace_id"]),
            user_id=str(row["user_id"]),
            role=row["role"],
            joined_at=row["joined_at"],
        )

    def get_teamspace_member(self, teamspace_id: str, user_id: str) -> Optional[TeamspaceUser]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT teamspace_id, user_id, role, joined_at FROM teamspace_user
                WHERE teamspace_id = %s AND user_id = %s
                """,
                (teamspace_id, user_id),
            ).fetchone()
        if not row:
            return None
        return TeamspaceUser(
            teamspace_id=str(row["teamspace_id"]),
            user_id=str(row["user_id"]),
            role=row["role"],
            joined_at=row["joined_at"],
        )

    def list_teamspace_members(self, teamspace_id: str) -> List[TeamspaceMember]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.id AS user_id, u.email, u.name, tu.role, tu.joined_at
                FROM teamspace_user tu
                JOIN app_user u ON u.id = tu.user_id
                WHERE tu.teamspace_id = %s
                ORDER BY tu.joined_at
                """,
                (teamspace_id,),
            ).fetchall()
        return [
            TeamspaceMember(
                user_id=str(row["user_id"]),
                email=row["email"],
                name=row.get("name"),
                role=row["role"],
                joined_at=row["joined_at"],
            )
            for row in rows
        ]

    def update_teamspace_member_role(
        self, teamspace_id: str, user_id: str, role: str
    ) -> Optional[TeamspaceUser]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE teamspace_user SET role = %s
                WHERE teamspace_id = %s AND user_id = %s
                RETURNING teamspace_id, user_id, role, joined_at
                """,
                (role, teamspace_id, user_id),
            ).fetchone()
        if not row:
            return None
        return TeamspaceUser(
            teamspace_id=str(row["teamspace_id"]),
            user_id=str(row["user_id"]),
            role=row["role"],
            joined_at=row["joined_at"],
        )

    def remove_teamspace_member(self, teamspace_id: str, user_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM teamspace_user WHERE teamspace_id = %s AND user_id = %s",
                (teamspace_id, user_id),
            )
            removed = cur.rowcount > 0
            if removed:
                conn.execute(
                    """
                    DELETE FROM project_user
                    WHERE user_id = %s
                      AND project_id IN (SELECT id FROM project WHERE teamspace_id = %s)
                    """,
                    (user_id, teamspace_id),
                )
        return removed

    def lock_teamspace(self, teamspace_id: str) -> Optional[Teamspace]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TEAMSPACE_COLUMNS} FROM teamspace t WHERE t.id = %s FOR UPDATE",
                (teamspace_id,),
            ).fetchone()
        return _teamspace(row) if row else None

    def count_teamspace_owners(self, teamspace_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS n FROM teamspace_user
                WHERE teamspace_id = %s AND role = 'owner'
                """,
                (teamspace_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    # projects
    def create_project(
        self, teamspace_id: str, name: str, slug: str, *, globally_unique: bool = False
    ) -> Project:
        """Insert a project; ``globally_unique`` extends the slug check to every teamspace.

        The schema only enforces per-teamspace uniqueness, so the global
        check runs under a transaction-scoped advisory lock keyed on the slug.
        """
        try:
            with self._connect() as conn, conn.transaction():
                if globally_unique:
                    conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))", (f"project_slug:{slug}",)
                    )
                    taken = conn.execute(
                        "SELECT 1 AS hit FROM project WHERE slug = %s LIMIT 1", (slug,)
                    ).fetchone()
                    if taken:
                        raise ConstraintViolation(
                            "project slug already exists",
                            constraint="project_slug",
                            detail={"field": "slug"},
                        )
                row = conn.execute(
                    """
                    INSERT INTO project (id, teamspace_id, name, slug)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, teamspace_id, name, slug, created_at, updated_at
                    """,
                    (str(uuid.uuid4()), teamspace_id, name, slug),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "project slug already exists",
                constraint="project_slug",
                detail={"field": "slug"},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("teamspace missing", constraint="teamspace_fk")
        return _project(row)

    def get_project(self, teamspace_id: str, project_id: str) -> Optional[Project]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, teamspace_id, name, slug, created_at, updated_at FROM project
                WHERE id = %s AND teamspace_id = %s
                """,
                (project_id, teamspace_id),
            ).fetchone()
        return _project(row) if row else None

    def get_project_by_slug(self, teamspace_id: str, slug: str) -> Optional[Project]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, teamspace_id, name, slug, created_at, updated_at FROM project
                WHERE teamspace_id = %s AND slug = %s
                """,
                (teamspace_id, slug),
            ).fetchone()
        return _project(row) if row else None

    def list_projects(self, teamspace_id: str) -> List[Project]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, teamspace_id, name, slug, created_at, updated_at FROM project
                WHERE teamspace_id = %s ORDER BY created_at
                """,
                (teamspace_id,),
            ).fetchall()
        return [_project(row) for row in rows]

    def add_project_member(
        self, project_id: str, user_id: str, role_override: Optional[str] = None
    ) -> ProjectUser:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO project_user (project_id, user_id, role_override)
                    VALUES (%s, %s, %s)
                    RETURNING project_id, user_id, role_override, joined_at
                    """,
                    (project_id, user_id, role_override),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("already a project member", constraint="project_member")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("project or user missing", constraint="project_member_fk")
        return _project_user(row)

    def get_project_member(self, project_id: str, user_id: str) -> Optional[ProjectUser]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT project_id, user_id, role_override, joined_at FROM project_user
                WHERE project_id = %s AND user_id = %s
                """,
                (project_id, user_id),
            ).fetchone()
        return _project_user(row) if row else None

    def update_project_member_override(
        self, project_id: str, user_id: str, role_override: Optional[str]
    ) -> Optional[ProjectUser]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE project_user SET role_override = %s
                WHERE project_id = %s AND user_id = %s
                RETURNING project_id, user_id, role_override, joined_at
                """,
                (role_override, project_id, user_id),
            ).fetchone()
        return _project_user(row) if row else None

    def remove_project_member(self, project_id: str, user_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM project_user WHERE project_id = %s AND user_id = %s",
                (project_id, user_id),
            )
            return cur.rowcount > 0

    def _project_membership_query(self, where: str, params: Sequence[Any]):
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT p.id, p.teamspace_id, p.name, p.slug, p.created_at, p.updated_at,
                       pu.project_id, pu.user_id, pu.role_override, pu.joined_at
                FROM project_user pu
                JOIN project p ON p.id = pu.project_id
                WHERE {where}
                ORDER BY pu.joined_at
                LIMIT 1
                """,
                params,
            ).fetchone()
        if not row:
            return None
        return _project(row), _project_user(row)

    def get_first_project_membership(
        self, user_id: str
    ) -> Optional[tuple[Project, ProjectUser]]:
        return self._project_membership_query("pu.user_id = %s", (user_id,))

    def get_project_by_id(self, project_id: str) -> Optional[Project]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, teamspace_id, name, slug, created_at, updated_at FROM project
                WHERE id = %s
                """,
                (project_id,),
            ).fetchone()
        return _project(row) if row else None

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
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                INSERT INTO invitation (id, teamspace_id, email, role, token, expires_at, invited_by)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    teamspace_id,
                    email.strip().lower(),
                    role,
                    token,
                    expires_at,
                    invited_by,
                ),
            ).fetchone()
        return _invitation(row)

    def list_pending_invitations(self, teamspace_id: str, now: datetime) -> List[Invitation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM invitation
                WHERE teamspace_id = %s AND accepted_at IS NULL AND expires_at > %s
                ORDER BY created_at
                """,
                (teamspace_id, now),
            ).fetchall()
        return [_invitation(row) for row in rows]

    def get_pending_invitation_for_email(
        self, teamspace_id: str, email: str, now: datetime
    ) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM invitation
                WHERE teamspace_id = %s AND email = %s
                  AND accepted_at IS NULL AND expires_at > %s
                LIMIT 1
                """,
                (teamspace_id, email.strip().lower(), now),
            ).fetchone()
        return _invitation(row) if row else None

    def delete_invitation(self, teamspace_id: str, invitation_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM invitation WHERE id = %s AND teamspace_id = %s",
                (invitation_id, teamspace_id),
            )
            return cur.rowcount > 0

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM invitation WHERE token = %s", (token,)).fetchone()
        return _invitation(row) if row else None

    def lock_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invitation WHERE id = %s FOR UPDATE", (invitation_id,)
            ).fetchone()
        return _invitation(row) if row else None

    def increment_invitation_attempts(self, invitation_id: str) -> Optional[Invitation]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "UPDATE invitation SET attempts = attempts + 1 WHERE id = %s RETURNING *",
                (invitation_id,),
            ).fetchone()
        return _invitation(row) if row else None

    def mark_invitation_accepted(self, invitation_id: str, accepted_at: datetime) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "UPDATE invitation SET accepted_at = %s WHERE id = %s",
                (accepted_at, invitation_id),
            )

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
        column = _VIDEO_ORDER_COLUMNS.get(order_by, "v.created_at")
        direction = "ASC" if order_dir == "asc" else "DESC"
        clauses = ["v.project_id = %s"]
        params: List[Any] = [project_id]
        if status:
            clauses.append("v.status = %s")
            params.append(status)
        if cursor:
            clauses.append("v.id > %s")
            params.append(cursor)
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_VIDEO_COLUMNS} FROM video v
                WHERE {" AND ".join(clauses)}
                ORDER BY {column} {direction} NULLS LAST
                LIMIT %s
                """,
                params,
            ).fetchall()
        return [_video(row) for row in rows]

    def get_video(self, project_id: str, video_id: str) -> Optional[Video]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM video v WHERE v.id = %s AND v.project_id = %s",
                (video_id, project_id),
            ).fetchone()
        return _video(row) if row else None

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
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO video (id, project_id, title, status, description,
                                       due_date, publish_date, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        project_id,
                        title,
                        status,
                        description,
                        due_date,
                        publish_date,
                        created_by,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("project missing", constraint="project_fk")
        return _video(row)

    def update_video(
        self, project_id: str, video_id: str, fields: Dict[str, Any]
    ) -> Optional[Video]:
        updates = {k: v for k, v in fields.items() if k in _VIDEO_UPDATE_COLUMNS}
        assignments = [f"{column} = %s" for column in updates] + ["updated_at = now()"]
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"""
                UPDATE video SET {", ".join(assignments)}
                WHERE id = %s AND project_id = %s
                RETURNING *
                """,
                [*updates.values(), video_id, project_id],
            ).fetchone()
        return _video(row) if row else None

    def delete_video(self, project_id: str, video_id: str) -> bool:
        # documents, revisions and category links cascade
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM video WHERE id = %s AND project_id = %s", (video_id, project_id)
            )
            return cur.rowcount > 0

    # documents, scoped through the owning video
    def list_documents(
        self,
        project_id: str,
        *,
        video_id: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Document]:
        clauses = ["v.project_id = %s"]
        params: List[Any] = [project_id]
        if video_id:
            clauses.append("d.video_id = %s")
            params.append(video_id)
        if type:
            clauses.append("d.type = %s")
            params.append(type)
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_DOCUMENT_COLUMNS} FROM document d
                JOIN video v ON v.id = d.video_id
                WHERE {" AND ".join(clauses)}
                ORDER BY d.updated_at DESC
                LIMIT %s
                """,
                params,
            ).fetchall()
        return [_document(row) for row in rows]

    def get_document(self, project_id: str, document_id: str) -> Optional[Document]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_DOCUMENT_COLUMNS} FROM document d
                JOIN video v ON v.id = d.video_id
                WHERE d.id = %s AND v.project_id = %s
                """,
                (document_id, project_id),
            ).fetchone()
        return _document(row) if row else None

    def get_document_by_video_and_type(
        self, project_id: str, video_id: str, type: str
    ) -> Optional[Document]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_DOCUMENT_COLUMNS} FROM document d
                JOIN video v ON v.id = d.video_id
                WHERE d.video_id = %s AND d.type = %s AND v.project_id = %s
                """,
                (video_id, type, project_id),
            ).fetchone()
        return _document(row) if row else None

    def create_document(
        self,
        project_id: str,
        *,
        video_id: str,
        type: str,
        content: str = "",
        created_by: Optional[str] = None,
    ) -> Optional[Document]:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO document (id, video_id, type, content, version, updated_by)
                    SELECT %s, v.id, %s, %s, 1, %s FROM video v
                    WHERE v.id = %s AND v.project_id = %s
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), type, content, created_by, video_id, project_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "document type already exists for video", constraint="document_type"
            )
        return _document(row) if row else None

    def lock_document(self, project_id: str, document_id: str) -> Optional[Document]:
        """Row-lock a document for the enclosing ``transaction()``."""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_DOCUMENT_COLUMNS} FROM document d
                JOIN video v ON v.id = d.video_id
                WHERE d.id = %s AND v.project_id = %s
                FOR UPDATE OF d
                """,
                (document_id, project_id),
            ).fetchone()
        return _document(row) if row else None

    def insert_document_revision(
        self,
        project_id: str,
        document_id: str,
        *,
        content: str,
        version: int,
        created_by: Optional[str],
    ) -> Optional[DocumentRevision]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                INSERT INTO document_revision (id, document_id, content, version, created_by)
                SELECT %s::uuid, d.id, %s::text, %s::integer, %s::uuid
                FROM document d
                JOIN video v ON v.id = d.video_id
                WHERE d.id = %s AND v.project_id = %s
                RETURNING *
                """,
                (str(uuid.uuid4()), content, version, created_by, document_id, project_id),
            ).fetchone()
        return _revision(row) if row else None

    def write_document(
        self,
        project_id: str,
        document_id: str,
        *,
        content: str,
        version: int,
        updated_by: Optional[str],
    ) -> Optional[Document]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE document d
                SET content = %s, version = %s, updated_by = %s, updated_at = now()
                FROM video v
                WHERE d.id = %s AND v.id = d.video_id AND v.project_id = %s
                RETURNING d.*
                """,
                (content, version, updated_by, document_id, project_id),
            ).fetchone()
        return _document(row) if row else None

    def list_document_revisions(
        self, project_id: str, document_id: str, limit: int = 50
    ) -> List[DocumentRevision]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM document_revision r
                JOIN document d ON d.id = r.document_id
                JOIN video v ON v.id = d.video_id
                WHERE r.document_id = %s AND v.project_id = %s
                ORDER BY r.created_at DESC, r.version DESC
                LIMIT %s
                """,
                (document_id, project_id, limit),
            ).fetchall()
        return [_revision(row) for row in rows]

    def get_document_revision(
        self, project_id: str, revision_id: str
    ) -> Optional[DocumentRevision]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT r.* FROM document_revision r
                JOIN document d ON d.id = r.document_id
                JOIN video v ON v.id = d.video_id
                WHERE r.id = %s AND v.project_id = %s
                """,
                (revision_id, project_id),
            ).fetchone()
        return _revision(row) if row else None

    def delete_document(self, project_id: str, document_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                """
                DELETE FROM document d USING video v
                WHERE d.id = %s AND v.id = d.video_id AND v.project_id = %s
                """,
                (document_id, project_id),
            )
            return cur.rowcount > 0

    # categories
    def list_categories(self, project_id: str, *, order_by: str = "name") -> List[Category]:
        order = "created_at" if order_by == "created_at" else "lower(name)"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM category WHERE project_id = %s ORDER BY {order}",
                (project_id,),
            ).fetchall()
        return [_category(row) for row in rows]

    def get_category(self, project_id: str, category_id: str) -> Optional[Category]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM category WHERE id = %s AND project_id = %s",
                (category_id, project_id),
            ).fetchone()
        return _category(row) if row else None

    def create_category(self, project_id: str, *, name: str, color: str) -> Category:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO category (id, project_id, name, color)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), project_id, name, color),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("project missing", constraint="project_fk")
        return _category(row)

    def update_category(
        self, project_id: str, category_id: str, fields: Dict[str, Any]
    ) -> Optional[Category]:
        updates = {k: v for k, v in fields.items() if k in _CATEGORY_UPDATE_COLUMNS}
        assignments = [f"{column} = %s" for column in updates] + ["updated_at = now()"]
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"""
                UPDATE category SET {", ".join(assignments)}
                WHERE id = %s AND project_id = %s
                RETURNING *
                """,
                [*updates.values(), category_id, project_id],
            ).fetchone()
        return _category(row) if row else None

    def delete_category(self, project_id: str, category_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM category WHERE id = %s AND project_id = %s",
                (category_id, project_id),
            )
            return cur.rowcount > 0

    def count_project_categories(self, project_id: str, category_ids: Sequence[str]) -> int:
        ids = list(set(category_ids))
        if not ids:
            return 0
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM category WHERE project_id = %s AND id = ANY(%s)",
                (project_id, ids),
            ).fetchone()
        return int(row["n"]) if row else 0

    def get_video_category_ids(self, project_id: str, video_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT vc.category_id FROM video_category vc
                JOIN video v ON v.id = vc.video_id
                WHERE vc.video_id = %s AND v.project_id = %s
                ORDER BY vc.category_id
                """,
                (video_id, project_id),
            ).fetchall()
        return [str(row["category_id"]) for row in rows]

    def replace_video_categories(
        self, project_id: str, video_id: str, category_ids: Sequence[str]
    ) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                DELETE FROM video_category vc USING video v
                WHERE vc.video_id = %s AND v.id = vc.video_id AND v.project_id = %s
                """,
                (video_id, project_id),
            )
            for category_id in category_ids:
                conn.execute(
                    "INSERT INTO video_category (video_id, category_id) VALUES (%s, %s)",
                    (video_id, category_id),
                )

    def add_video_category(self, project_id: str, video_id: str, category_id: str) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO video_category (video_id, category_id) VALUES (%s, %s)
                ON CONFLICT DO NOTHING
                """,
                (video_id, category_id),
            )

    def remove_video_category(self, project_id: str, video_id: str, category_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                """
                DELETE FROM video_category vc USING video v
                WHERE vc.video_id = %s AND vc.category_id = %s
                  AND v.id = vc.video_id AND v.project_id = %s
                """,
                (video_id, category_id, project_id),
            )
            return cur.rowcount > 0

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
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                INSERT INTO audit_log (id, teamspace_id, project_id, user_id, action,
                                       entity_type, entity_id, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    teamspace_id,
                    project_id,
                    user_id,
                    action,
                    entity_type,
                    entity_id,
                    json.dumps(meta) if meta else None,
                ),
            ).fetchone()
        return _audit(row)

    def _list_audit(
        self,
        column: str,
        tenant_id: str,
        *,
        entity_type: Optional[str],
        entity_id: Optional[str],
        limit: int,
        offset: int,
    ) -> List[AuditLogEntry]:
        clauses = [f"{column} = %s"]
        params: List[Any] = [tenant_id]
        if entity_type:
            clauses.append("entity_type = %s")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = %s")
            params.append(entity_id)
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM audit_log
                WHERE {" AND ".join(clauses)}
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                params,
            ).fetchall()
        return [_audit(row) for row in rows]

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
            "project_id",
            project_id,
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
            "teamspace_id",
            teamspace_id,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
            offset=offset,
        )
