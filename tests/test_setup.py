"""Tests for the single-tenant first-run setup."""

import json
import os
import stat

import pytest

from streamline.config import Settings
from streamline.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
)
from streamline.service.session import SessionManager
from streamline.service.setup import SETUP_COMPLETE_MESSAGE, SETUP_FLAG_NAME, SetupService

PASSWORD = "Setup-Pass-2024"


@pytest.fixture
def setup_service(memory_store, settings):
    return SetupService(memory_store, SessionManager(memory_store), settings)


class TestStatus:
    def test_required_before_completion(self, setup_service):
        status = setup_service.status()
        assert status == {
            "mode": "single-tenant",
            "required": True,
            "completed": False,
            "completed_at": None,
        }

    def test_not_required_in_multi_tenant(self, memory_store, tmp_path):
        settings = Settings(data_dir=str(tmp_path), tenancy_mode="multi-tenant")
        service = SetupService(memory_store, SessionManager(memory_store), settings)
        assert service.status()["required"] is False


class TestRun:
    async def test_creates_owner_and_flag(self, setup_service, memory_store, tmp_path):
        result = await setup_service.run(
            "Admin@Example.com", PASSWORD, name="Admin", workspace_name="My Studio"
        )
        assert result.message == SETUP_COMPLETE_MESSAGE
        assert result.cookie.startswith("session=")

        teamspace = memory_store.get_teamspace_by_slug("workspace")
        assert memory_store.get_teamspace_member(teamspace.id, result.user.id).role == "owner"
        assert [p.name for p in memory_store.list_projects(teamspace.id)] == ["My Studio"]

        flag = tmp_path / SETUP_FLAG_NAME
        data = json.loads(flag.read_text())
        assert data["completed"] is True
        assert data["version"] == "1.0"
        assert not os.stat(flag).st_mode & stat.S_IWUSR

        status = setup_service.status()
        assert status["completed"] is True
        assert status["required"] is False
        assert status["completed_at"] == data["timestamp"]

    async def test_runs_only_once(self, setup_service):
        await setup_service.run("admin@example.com", PASSWORD)
        with pytest.raises(ForbiddenError) as exc_info:
            await setup_service.run("other@example.com", PASSWORD)
        assert exc_info.value.message == "Setup has already been completed."

    async def test_refused_when_users_exist(self, setup_service, memory_store):
        memory_store.create_user("early@example.com")
        with pytest.raises(ConflictError):
            await setup_service.run("admin@example.com", PASSWORD)
        assert not setup_service.is_complete()

    async def test_weak_password(self, setup_service, memory_store):
        with pytest.raises(BadRequestError):
            await setup_service.run("admin@example.com", "short")
        assert memory_store.count_users() == 0

    async def test_multi_tenant_refuses(self, memory_store, tmp_path):
        settings = Settings(data_dir=str(tmp_path), tenancy_mode="multi-tenant")
        service = SetupService(memory_store, SessionManager(memory_store), settings)
        with pytest.raises(ForbiddenError):
            await service.run("admin@example.com", PASSWORD)
