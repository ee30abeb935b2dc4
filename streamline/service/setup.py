from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from streamline.config import Settings
from streamline.logging import get_logger
from streamline.service.auth import AuthResult, provision_single_tenant_member
from streamline.service.errors import BadRequestError, ConflictError, ForbiddenError, ServerError
from streamline.service.password import hash_password, validate_password
from streamline.service.session import SessionManager
from streamline.storage.errors import ConstraintViolation

logger = get_logger(__name__)

SETUP_FLAG_NAME = ".setup-complete"
SETUP_VERSION = "1.0"
SETUP_COMPLETE_MESSAGE = "Setup completed successfully! Welcome to Streamline Studio."


class SetupService:
    """First-run wizard for single-tenant deployments.

    Completion is tracked by a read-only flag file under ``DATA_DIR`` rather
    than in the database, so wiping the database does not reopen setup.
    """

    def __init__(self, store, sessions: SessionManager, settings: Settings) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings

    @property
    def flag_path(self) -> Path:
        return Path(self.settings.data_dir) / SETUP_FLAG_NAME

    def is_complete(self) -> bool:
        try:
            return self.flag_path.exists()
        except OSError as exc:
            logger.error("setup_flag_check_failed", error=str(exc))
            return False

    def details(self) -> Optional[dict]:
        if not self.is_complete():
            return None
        try:
            return json.loads(self.flag_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("setup_flag_read_failed", error=str(exc))
            return None

    def status(self) -> dict:
        details = self.details() or {}
        return {
            "mode": self.settings.tenancy_mode.value,
            "required": self.settings.is_single_tenant and not self.is_complete(),
            "completed": self.is_complete(),
            "completed_at": details.get("timestamp"),
        }

    def mark_complete(self) -> dict:
        data = {
            "completed": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": SETUP_VERSION,
        }
        path = self.flag_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".setup-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, indent=2)
                os.replace(tmp_path, path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
            os.chmod(path, 0o444)
        except OSError as exc:
            logger.error("setup_mark_complete_failed", error=str(exc))
            raise ServerError("Failed to persist setup completion") from exc
        logger.info("setup_marked_complete", timestamp=data["timestamp"])
        return data

    async def run(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        workspace_name: Optional[str] = None,
    ) -> AuthResult:
        if not self.settings.is_single_tenant:
            raise ForbiddenError("Setup is only available in single-tenant mode.")
        if self.is_complete():
            raise ForbiddenError("Setup has already been completed.")

        policy = validate_password(
            password,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )
        if not policy.valid:
            raise BadRequestError(policy.errors[0], detail={"errors": policy.errors})
        if self.store.count_users() > 0:
            raise ConflictError("Users already exist. Setup cannot be run.")

        password_hash = hash_password(password)
        try:
            with self.store.transaction():
                if self.store.count_users() > 0:
                    raise ConflictError("Users already exist. Setup cannot be run.")
                user = self.store.create_user(email.strip().lower(), (name or "").strip() or None)
                self.store.save_password(user.id, password_hash)
                provision = provision_single_tenant_member(
                    self.store,
                    user,
                    member_role=self.settings.single_tenant_member_role,
                    project_name=(workspace_name or "").strip() or None,
                )
        except ConstraintViolation as exc:
            logger.error("setup_failed", constraint=exc.constraint)
            raise ServerError("Failed to create user account") from exc

        self.mark_complete()
        logger.info(
            "setup_completed",
            user_id=user.id,
            teamspace_id=provision.teamspace.id,
            teamspace_role=provision.teamspace_role,
        )
        token, session = await self.sessions.issue(user.id)
        return AuthResult(
            success=True,
            message=SETUP_COMPLETE_MESSAGE,
            user=user,
            session=session,
            cookie=self.sessions.session_cookie(token),
        )
