from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from streamline.storage.repositories import MAX_DOCUMENT_LENGTH

# Upper bound only; the password policy itself lives in the auth service
MAX_PASSWORD_FIELD_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "bad_request",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "too_many_requests",
    "internal_server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    return cleaned or None


class _EmailModel(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


# auth


class RegisterRequest(_EmailModel):
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    name: Optional[str] = Field(default=None, max_length=100)
    project_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("name", "project_name")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)


class LoginRequest(BaseModel):
    # Not validated beyond size: malformed emails must fail like wrong passwords
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_FIELD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class PasswordResetRequest(_EmailModel):
    pass


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    created_at: datetime


class AuthResponse(BaseModel):
    message: str
    user: Optional[UserResponse] = None
    session_expires_at: Optional[datetime] = None


class SetupRequest(_EmailModel):
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    name: Optional[str] = Field(default=None, max_length=100)
    workspace_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("name", "workspace_name")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)


# teamspaces and projects


class TeamspaceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(default=None, max_length=50)


class TeamspaceUpdateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class TeamspaceResponse(BaseModel):
    id: str
    name: str
    slug: str
    mode: str
    role: Optional[str] = None
    created_at: datetime


class ProjectCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(default=None, max_length=50)


class ProjectResponse(BaseModel):
    id: str
    teamspace_id: str
    name: str
    slug: str
    created_at: datetime


class ProjectContextResponse(BaseModel):
    teamspace: TeamspaceResponse
    project: ProjectResponse
    teamspace_role: str
    role: str
    role_override: Optional[str] = None


class MemberResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    role: str
    joined_at: datetime


class MemberRoleUpdateRequest(BaseModel):
    role: Literal["owner", "admin", "editor", "viewer"]


class ProjectMemberUpdateRequest(BaseModel):
    # null clears the override so the teamspace role applies
    role_override: Optional[Literal["owner", "editor", "viewer"]] = None


class ProjectMemberResponse(BaseModel):
    project_id: str
    user_id: str
    role_override: Optional[str] = None
    joined_at: datetime


# invitations


class InvitationCreateRequest(_EmailModel):
    role: Literal["admin", "editor", "viewer"] = "editor"


class InvitationResponse(BaseModel):
    """Never carries the token; it only travels in the invitation email."""

    id: str
    email: str
    role: str
    expires_at: datetime
    created_at: datetime
    invited_by: Optional[str] = None


class InvitationDetailsResponse(BaseModel):
    email: str
    role: str
    teamspace_name: str
    teamspace_slug: str


class InvitationAcceptRequest(BaseModel):
    password: str = Field(..., min_length=8, max_length=MAX_PASSWORD_FIELD_LENGTH)
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("name")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)


# videos

VideoStatus = Literal[
    "idea", "scripting", "filming", "editing", "review", "scheduled", "published", "archived"
]

DocumentType = Literal["script", "description", "notes", "thumbnail_ideas"]


class VideoCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    status: VideoStatus = "idea"
    description: Optional[str] = Field(default=None, max_length=5000)
    due_date: Optional[date] = None
    publish_date: Optional[date] = None
    category_ids: List[str] = Field(default_factory=list, max_length=50)


class VideoUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    status: Optional[VideoStatus] = None
    description: Optional[str] = Field(default=None, max_length=5000)
    due_date: Optional[date] = None
    publish_date: Optional[date] = None


class VideoCategoriesRequest(BaseModel):
    category_ids: List[str] = Field(default_factory=list, max_length=50)


class VideoResponse(BaseModel):
    id: str
    project_id: str
    title: str
    status: str
    description: Optional[str] = None
    due_date: Optional[date] = None
    publish_date: Optional[date] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    category_ids: List[str] = Field(default_factory=list)


# documents


class DocumentCreateRequest(BaseModel):
    video_id: str
    type: DocumentType
    content: str = Field(default="", max_length=MAX_DOCUMENT_LENGTH)


class DocumentUpdateRequest(BaseModel):
    content: str = Field(..., max_length=MAX_DOCUMENT_LENGTH)
    expected_version: int = Field(..., ge=1)


class DocumentResponse(BaseModel):
    id: str
    video_id: str
    type: str
    content: str
    version: int
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class RevisionResponse(BaseModel):
    id: str
    document_id: str
    content: str
    version: int
    created_by: Optional[str] = None
    created_at: datetime


# categories


class CategoryCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = None

    @field_validator("color")
    @classmethod
    def _validate_color(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _HEX_COLOR.match(value):
            raise ValueError("color must be a hex value like #6B7280")
        return value


class CategoryUpdateRequest(CategoryCreateRequest):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)


class CategoryResponse(BaseModel):
    id: str
    project_id: str
    name: str
    color: str
    created_at: datetime
    updated_at: datetime


# audit


class AuditLogResponse(BaseModel):
    id: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    created_at: datetime


class SetupStatusResponse(BaseModel):
    mode: str
    required: bool
    completed: bool
    completed_at: Optional[str] = None
