"""Unit tests for the auth service.

Covers:
- Registration in both tenancy modes, including enumeration resistance
- Login failures that all look alike
- Logout
- Password change and reset
"""

from unittest.mock import patch

import pytest

from streamline.config import Settings
from streamline.service import auth as auth_module
from streamline.service.auth import (
    INVALID_CREDENTIALS_MESSAGE,
    INVALID_RESET_TOKEN_MESSAGE,
    LOGOUT_MESSAGE,
    PASSWORD_RESET_REQUEST_MESSAGE,
    REGISTRATION_MESSAGE,
    AuthService,
)
from streamline.service.errors import (
    AuthenticationError,
    BadRequestError,
    RateLimitedError,
)
from streamline.service.rate_limit import RateLimiter
from streamline.service.session import SessionManager

PASSWORD = "Sup3r-Secret-Pass"


def _cookie_header(result):
    return result.cookie.split(";", 1)[0]


@pytest.fixture
def single_settings(tmp_path):
    return Settings(data_dir=str(tmp_path), tenancy_mode="single-tenant")


@pytest.fixture
def multi_settings(tmp_path):
    return Settings(data_dir=str(tmp_path), tenancy_mode="multi-tenant")


def _service(store, settings, email=None):
    return AuthService(
        store,
        SessionManager(store),
        RateLimiter.from_settings(settings),
        settings,
        email_service=email,
    )


@pytest.fixture
def auth(memory_store, single_settings, recording_email):
    return _service(memory_store, single_settings, recording_email)


@pytest.fixture
def multi_auth(memory_store, multi_settings):
    return _service(memory_store, multi_settings)


class TestSingleTenantRegistration:
    async def test_first_user_owns_workspace(self, auth, memory_store):
        result = await auth.register("First@Example.com", PASSWORD, name="First")
        assert result.success
        assert result.message == REGISTRATION_MESSAGE
        assert result.cookie.startswith("session=")
        assert result.user.email == "first@example.com"

        teamspace = memory_store.get_teamspace_by_slug("workspace")
        assert teamspace.mode == "single-tenant"
        assert memory_store.get_teamspace_member(teamspace.id, result.user.id).role == "owner"
        projects = memory_store.list_projects(teamspace.id)
        assert [p.slug for p in projects] == ["default"]
        assert memory_store.get_project_member(projects[0].id, result.user.id) is not None

    async def test_later_users_join_with_member_role(self, auth, memory_store):
        await auth.register("first@example.com", PASSWORD)
        second = await auth.register("second@example.com", PASSWORD)
        teamspace = memory_store.get_teamspace_by_slug("workspace")
        assert memory_store.count_teamspaces() == 1
        assert memory_store.get_teamspace_member(teamspace.id, second.user.id).role == "editor"

    async def test_member_role_is_configurable(self, memory_store, tmp_path):
        settings = Settings(data_dir=str(tmp_path), single_tenant_member_role="viewer")
        service = _service(memory_store, settings)
        await service.register("first@example.com", PASSWORD)
        second = await service.register("second@example.com", PASSWORD)
        teamspace = memory_store.get_teamspace_by_slug("workspace")
        assert memory_store.get_teamspace_member(teamspace.id, second.user.id).role == "viewer"

    async def test_existing_email_gets_same_message_without_session(self, auth, memory_store):
        await auth.register("taken@example.com", PASSWORD)
        again = await auth.register("TAKEN@example.com", "Another-Pass-123")
        assert again.success
        assert again.message == REGISTRATION_MESSAGE
        assert again.cookie is None
        assert again.session is None
        assert memory_store.count_users() == 1

    async def test_weak_password_is_rejected_before_anything_is_written(self, auth, memory_store):
        with pytest.raises(BadRequestError) as exc_info:
            await auth.register("weak@example.com", "password123")
        assert "too common" in exc_info.value.message
        assert memory_store.count_users() == 0

    async def test_registration_is_rate_limited_per_ip(self, auth):
        for i in range(3):
            await auth.register(f"user{i}@example.com", PASSWORD, ip="10.0.0.1")
        with pytest.raises(RateLimitedError):
            await auth.register("user9@example.com", PASSWORD, ip="10.0.0.1")
        await auth.register("other@example.com", PASSWORD, ip="10.0.0.2")


class TestMultiTenantRegistration:
    async def test_creates_private_teamspace(self, multi_auth, memory_store):
        result = await multi_auth.register("maker@example.com", PASSWORD, project_name="My Channel")
        teamspace = memory_store.get_teamspace_by_slug("my-channel")
        assert teamspace.mode == "multi-tenant"
        assert memory_store.get_teamspace_member(teamspace.id, result.user.id).role == "owner"
        assert [p.slug for p in memory_store.list_projects(teamspace.id)] == ["my-channel"]

    async def test_project_name_required(self, multi_auth):
        with pytest.raises(BadRequestError) as exc_info:
            await multi_auth.register("maker@example.com", PASSWORD)
        assert exc_info.value.message == "Project name is required"

    async def test_taken_project_name(self, multi_auth, memory_store):
        await multi_auth.register("a@example.com", PASSWORD, project_name="Daily Vlog")
        with pytest.raises(BadRequestError) as exc_info:
            await multi_auth.register("b@example.com", PASSWORD, project_name="daily vlog!")
        assert "already taken" in exc_info.value.message
        # Rolled back: no orphan account
        assert memory_store.get_user_by_email("b@example.com") is None

    async def test_reserved_slug_is_taken(self, multi_auth):
        with pytest.raises(BadRequestError):
            await multi_auth.register("a@example.com", PASSWORD, project_name="Workspace")


class TestLogin:
    async def test_login_success(self, auth):
        await auth.register("login@example.com", PASSWORD)
        result = await auth.login("login@example.com", PASSWORD)
        assert result.success
        assert result.session is not None
        assert result.cookie.startswith("session=")

    async def test_wrong_password_and_unknown_email_look_identical(self, auth):
        await auth.register("login@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await auth.login("login@example.com", "Wrong-Pass-999", ip="1.1.1.1")
        with pytest.raises(AuthenticationError) as unknown:
            await auth.login("nobody@example.com", PASSWORD, ip="1.1.1.1")
        assert wrong.value.message == unknown.value.message == INVALID_CREDENTIALS_MESSAGE
        assert wrong.value.status_code == unknown.value.status_code == 401

    async def test_unknown_email_still_hashes(self, auth):
        with patch.object(auth_module, "burn_password_hash") as burn:
            with pytest.raises(AuthenticationError):
                await auth.login("nobody@example.com", PASSWORD)
        burn.assert_called_once_with(PASSWORD)

    async def test_login_rate_limit(self, auth):
        await auth.register("login@example.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth.login("login@example.com", "Wrong-Pass-999", ip="2.2.2.2")
        with pytest.raises(RateLimitedError):
            await auth.login("login@example.com", PASSWORD, ip="2.2.2.2")

    async def test_logged_failures_never_contain_email(self, auth):
        with patch.object(auth_module, "logger") as logger:
            with pytest.raises(AuthenticationError):
                await auth.login("secret.person@example.com", PASSWORD)
        for call in logger.info.call_args_list:
            assert "secret.person@example.com" not in repr(call)


class TestLogout:
    async def test_logout_invalidates_session(self, auth):
        registered = await auth.register("out@example.com", PASSWORD)
        header = _cookie_header(registered)
        assert (await auth.validate_request(header)).authenticated

        result = await auth.logout(header)
        assert result.message == LOGOUT_MESSAGE
        assert "Max-Age=0" in result.cookie
        assert not (await auth.validate_request(header)).authenticated

    async def test_logout_without_cookie_is_fine(self, auth):
        result = await auth.logout(None)
        assert result.success
        assert "Max-Age=0" in result.cookie


class TestPasswordChange:
    async def test_change_revokes_other_sessions(self, auth):
        first = await auth.register("pw@example.com", PASSWORD)
        second = await auth.login("pw@example.com", PASSWORD)

        revoked = await auth.change_password(first.user, first.session, PASSWORD, "Brand-New-Pass-1")
        assert revoked == 1
        assert (await auth.validate_request(_cookie_header(first))).authenticated
        assert not (await auth.validate_request(_cookie_header(second))).authenticated
        await auth.login("pw@example.com", "Brand-New-Pass-1")

    async def test_wrong_current_password(self, auth):
        first = await auth.register("pw@example.com", PASSWORD)
        with pytest.raises(BadRequestError):
            await auth.change_password(first.user, first.session, "nope-nope-nope", "Brand-New-Pass-1")


class TestPasswordReset:
    async def test_unknown_email_gets_same_answer(self, auth, recording_email):
        result = await auth.request_password_reset("ghost@example.com")
        assert result.message == PASSWORD_RESET_REQUEST_MESSAGE
        assert recording_email.sent == []

    async def test_full_reset_flow(self, auth, recording_email):
        registered = await auth.register("reset@example.com", PASSWORD)
        await auth.request_password_reset("reset@example.com")
        token = recording_email.last_token("send_password_reset")

        result = await auth.complete_password_reset(token, "Fresh-Password-42")
        assert result.success
        # Every session is revoked
        assert not (await auth.validate_request(_cookie_header(registered))).authenticated
        await auth.login("reset@example.com", "Fresh-Password-42")

    async def test_token_is_single_use(self, auth, recording_email):
        await auth.register("reset@example.com", PASSWORD)
        await auth.request_password_reset("reset@example.com")
        token = recording_email.last_token("send_password_reset")
        await auth.complete_password_reset(token, "Fresh-Password-42")
        with pytest.raises(BadRequestError) as exc_info:
            await auth.complete_password_reset(token, "Other-Password-43")
        assert exc_info.value.message == INVALID_RESET_TOKEN_MESSAGE

    async def test_weak_password_keeps_token_usable(self, auth, recording_email):
        await auth.register("reset@example.com", PASSWORD)
        await auth.request_password_reset("reset@example.com")
        token = recording_email.last_token("send_password_reset")
        with pytest.raises(BadRequestError):
            await auth.complete_password_reset(token, "short")
        await auth.complete_password_reset(token, "Fresh-Password-42")

    async def test_expired_tokens_are_swept(self, auth, recording_email):
        await auth.register("reset@example.com", PASSWORD)
        await auth.request_password_reset("reset@example.com")
        for key, (user_id, _) in list(auth._password_reset_tokens.items()):
            auth._password_reset_tokens[key] = (user_id, auth._now())
        assert auth.cleanup_expired_reset_tokens() == 1
