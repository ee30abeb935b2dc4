from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


DOCUMENT_TYPES = ("script", "description", "notes", "thumbnail_ideas")
VIDEO_STATUSES = (
    "idea",
    "scripting",
    "filming",
    "editing",
    "review",
    "scheduled",
    "published",
    "archived",
)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    # sha256 of the bearer token; the token itself is never stored
    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Teamspace:
    id: str
    name: str
    slug: str
    mode: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TeamspaceUser:
    teamspace_id: str
    user_id: str
    role: str
    joined_at: datetime = field(default_factory=utcnow)


@dataclass
class TeamspaceMember:
    """Membership joined with the member's public profile."""

    user_id: str
    email: str
    name: Optional[str]
    role: str
    joined_at: datetime


@dataclass
class Project:
    id: str
    teamspace_id: str
    name: str
    slug: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ProjectUser:
    project_id: str
    user_id: str
    role_override: Optional[str] = None
    joined_at: datetime = field(default_factory=utcnow)


@dataclass
class Invitation:
    id: str
    teamspace_id: str
    email: str
    role: str
    token: str
    expires_at: datetime
    invited_by: Optional[str] = None
    attempts: int = 0
    accepted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Video:
    id: str
    project_id: str
    title: str
    status: str = "idea"
    description: Optional[str] = None
    due_date: Optional[date] = None
    publish_date: Optional[date] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Document:
    id: str
    video_id: str
    type: str
    content: str = ""
    version: int = 1
    updated_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class DocumentRevision:
    id: str
    document_id: str
    content: str
    version: int
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Category:
    id: str
    project_id: str
    name: str
    color: str = "#6B7280"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditLogEntry:
    # Exactly one of teamspace_id / project_id scopes the entry
    id: str
    action: str
    entity_type: str
    teamspace_id: Optional[str] = None
    project_id: Optional[str] = None
    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    meta: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DocumentUpdateResult:
    document: Document
    version_match: bool


@dataclass
class AccountProvision:
    """Everything a registration created in one transaction."""

    user: User
    teamspace: Teamspace
    project: Optional[Project] = None
    teamspace_role: str = "owner"
    created: List[str] = field(default_factory=list)
