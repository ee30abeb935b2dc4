"""Integration tests for the HTTP API.

Covers the envelope format, the auth endpoints, the authorization chain on
tenant-scoped routes, optimistic document saves and invitations.
"""

import pytest
from fastapi.testclient import TestClient

from streamline import app as app_module
from streamline.service.auth import INVALID_CREDENTIALS_MESSAGE, REGISTRATION_MESSAGE
from streamline.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Integration-Pass-1"


def _client():
    return TestClient(app_module.app)


@pytest.fixture
def client():
    return _client()


@pytest.fixture
def multi_tenant(monkeypatch):
    monkeypatch.setenv("MODE", "multi-tenant")
    reset_runtime_for_tests()


def _register(client, email, password=PASSWORD, **extra):
    return client.post("/v1/auth/register", json={"email": email, "password": password, **extra})


def _signed_in(email, **extra):
    client = _client()
    response = _register(client, email, **extra)
    assert response.status_code == 201
    return client


class TestEnvelope:
    def test_health(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-12345"})
        assert response.headers["X-Request-ID"] == "req-12345"

    def test_security_headers(self, client):
        response = client.get("/v1/setup/status")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_validation_error_shape(self, client):
        response = _register(client, "not-an-email")
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "bad_request"
        assert body["error"]["details"]["fields"][0]["field"] == "email"
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_unauthenticated(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestAuthEndpoints:
    def test_register_sets_cookie_and_returns_message(self, client):
        response = _register(client, "new@example.com")
        assert response.status_code == 201
        assert response.json()["data"] == {
            "message": REGISTRATION_MESSAGE,
            "user": None,
            "session_expires_at": None,
        }
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("session=")
        assert "HttpOnly" in cookie

    def test_duplicate_registration_is_indistinguishable(self, client):
        first = _register(client, "dup@example.com")
        second = _register(_client(), "dup@example.com", password="Other-Password-9")
        assert second.status_code == first.status_code == 201
        assert second.json()["data"] == first.json()["data"]
        assert "set-cookie" not in second.headers

    def test_login_failures_are_identical(self, client):
        _register(client, "known@example.com")
        wrong = _client().post(
            "/v1/auth/login", json={"email": "known@example.com", "password": "Wrong-Pass-1"}
        )
        unknown = _client().post(
            "/v1/auth/login", json={"email": "unknown@example.com", "password": "Wrong-Pass-1"}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == INVALID_CREDENTIALS_MESSAGE

    def test_malformed_login_email_fails_like_bad_credentials(self, client):
        response = client.post("/v1/auth/login", json={"email": "nope", "password": "x"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == INVALID_CREDENTIALS_MESSAGE

    def test_login_me_logout(self, client):
        _register(client, "flow@example.com", name="Flow")
        fresh = _client()
        login = fresh.post(
            "/v1/auth/login", json={"email": "flow@example.com", "password": PASSWORD}
        )
        assert login.status_code == 200
        assert login.json()["data"]["user"]["email"] == "flow@example.com"

        me = fresh.get("/v1/auth/me")
        assert me.status_code == 200
        data = me.json()["data"]
        assert data["user"]["name"] == "Flow"
        assert [t["slug"] for t in data["teamspaces"]] == ["workspace"]
        assert me.headers["X-RateLimit-Limit"] == "1000"

        logout = fresh.post("/v1/auth/logout")
        assert logout.status_code == 200
        assert "Max-Age=0" in logout.headers["set-cookie"]
        assert fresh.get("/v1/auth/me").status_code == 401

    def test_login_rate_limit_headers(self, client):
        _register(client, "limited@example.com")
        attacker = _client()
        for _ in range(5):
            attacker.post(
                "/v1/auth/login", json={"email": "limited@example.com", "password": "Wrong-Pass-1"}
            )
        response = attacker.post(
            "/v1/auth/login", json={"email": "limited@example.com", "password": PASSWORD}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "too_many_requests"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_password_change(self, client):
        _register(client, "change@example.com")
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "Changed-Pass-22"},
        )
        assert response.status_code == 200
        login = _client().post(
            "/v1/auth/login", json={"email": "change@example.com", "password": "Changed-Pass-22"}
        )
        assert login.status_code == 200

    def test_password_reset_request_is_uniform(self, client):
        _register(client, "reset@example.com")
        known = client.post("/v1/auth/password/reset/request", json={"email": "reset@example.com"})
        unknown = client.post("/v1/auth/password/reset/request", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]


class TestSetup:
    @pytest.fixture(autouse=True)
    def isolated_data_dir(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        reset_runtime_for_tests()

    def test_setup_flow(self, client):
        status = client.get("/v1/setup/status").json()["data"]
        assert status["required"] is True

        response = client.post(
            "/v1/setup",
            json={"email": "admin@example.com", "password": PASSWORD, "workspace_name": "HQ"},
        )
        assert response.status_code == 201
        assert response.json()["data"]["user"]["email"] == "admin@example.com"
        assert client.get("/v1/auth/me").status_code == 200

        status = client.get("/v1/setup/status").json()["data"]
        assert status["completed"] is True
        again = _client().post(
            "/v1/setup", json={"email": "second@example.com", "password": PASSWORD}
        )
        assert again.status_code == 403


@pytest.mark.usefixtures("multi_tenant")
class TestTenantRoutes:
    def test_registration_provisions_own_teamspace(self):
        owner = _signed_in("alpha@example.com", project_name="Alpha")
        teamspaces = owner.get("/v1/teamspaces").json()["data"]
        assert [(t["slug"], t["role"]) for t in teamspaces] == [("alpha", "owner")]
        context = owner.get("/v1/t/alpha/alpha")
        assert context.status_code == 200
        assert context.json()["data"]["role"] == "owner"

    def test_other_tenants_see_not_found(self):
        _signed_in("alpha@example.com", project_name="Alpha")
        outsider = _signed_in("beta@example.com", project_name="Beta")
        for path in ("/v1/teamspaces/alpha", "/v1/t/alpha/alpha", "/v1/t/alpha/alpha/videos"):
            response = outsider.get(path)
            assert response.status_code == 404, path
        missing = outsider.get("/v1/t/no-such-space/alpha")
        assert missing.json()["error"]["message"] == outsider.get(
            "/v1/t/alpha/alpha"
        ).json()["error"]["message"]

    def test_simple_project_needs_header(self):
        owner = _signed_in("alpha@example.com", project_name="Alpha")
        assert owner.get("/v1/project").status_code == 400
        project_id = owner.get("/v1/t/alpha/alpha").json()["data"]["project"]["id"]
        response = owner.get("/v1/project", headers={"X-Project-ID": project_id})
        assert response.status_code == 200
        assert response.json()["data"]["project"]["slug"] == "alpha"

    def test_video_and_document_lifecycle(self):
        owner = _signed_in("alpha@example.com", project_name="Alpha")
        base = "/v1/t/alpha/alpha"
        category = owner.post(f"{base}/categories", json={"name": "Tutorials", "color": "#112233"})
        assert category.status_code == 201
        category_id = category.json()["data"]["id"]

        video = owner.post(
            f"{base}/videos", json={"title": "Episode 1", "category_ids": [category_id]}
        )
        assert video.status_code == 201
        video_data = video.json()["data"]
        assert video_data["status"] == "idea"
        assert video_data["category_ids"] == [category_id]

        patched = owner.patch(f"{base}/videos/{video_data['id']}", json={"status": "scripting"})
        assert patched.json()["data"]["status"] == "scripting"
        assert owner.patch(f"{base}/videos/{video_data['id']}", json={"bogus": 1}).status_code == 400

        document = owner.post(
            f"{base}/documents",
            json={"video_id": video_data["id"], "type": "script", "content": "draft"},
        )
        assert document.status_code == 201
        doc_id = document.json()["data"]["id"]
        assert document.json()["data"]["version"] == 1

        duplicate = owner.post(
            f"{base}/documents", json={"video_id": video_data["id"], "type": "script"}
        )
        assert duplicate.status_code == 409

        saved = owner.put(
            f"{base}/documents/{doc_id}", json={"content": "second draft", "expected_version": 1}
        )
        assert saved.status_code == 200
        assert saved.json()["data"]["version"] == 2

        stale = owner.put(
            f"{base}/documents/{doc_id}", json={"content": "lost", "expected_version": 1}
        )
        assert stale.status_code == 409
        error = stale.json()["error"]
        assert error["code"] == "conflict"
        assert error["details"] == {
            "currentVersion": 2,
            "expectedVersion": 1,
            "currentContent": "second draft",
        }

        revisions = owner.get(f"{base}/documents/{doc_id}/revisions").json()["data"]
        assert [(r["version"], r["content"]) for r in revisions] == [(1, "draft")]
        restored = owner.post(f"{base}/documents/{doc_id}/revisions/{revisions[0]['id']}/restore")
        assert restored.json()["data"]["version"] == 3
        assert restored.json()["data"]["content"] == "draft"

        log = owner.get(f"{base}/audit-log").json()["data"]
        actions = {entry["action"] for entry in log}
        assert {"video.created", "video.updated", "document.updated", "document.revision_restored"} <= actions

        assert owner.delete(f"{base}/videos/{video_data['id']}").status_code == 200
        assert owner.get(f"{base}/videos/{video_data['id']}").status_code == 404

    def test_invitation_flow(self, recording_email):
        owner = _signed_in("alpha@example.com", project_name="Alpha")
        get_runtime().invitations.email_service = recording_email

        created = owner.post(
            "/v1/teamspaces/alpha/invitations", json={"email": "guest@example.com", "role": "viewer"}
        )
        assert created.status_code == 201
        assert "token" not in created.json()["data"]
        token = recording_email.last_token("send_invitation")

        details = _client().get(f"/v1/invitations/{token}")
        assert details.status_code == 200
        assert details.json()["data"]["teamspace_slug"] == "alpha"

        guest = _client()
        accepted = guest.post(
            f"/v1/invitations/{token}/accept", json={"password": "Guest-Password-1", "name": "Guest"}
        )
        assert accepted.status_code == 200
        context = guest.get("/v1/t/alpha/alpha").json()["data"]
        assert context["role"] == "viewer"

        # Viewers can read but not write
        assert guest.get("/v1/t/alpha/alpha/videos").status_code == 200
        blocked = guest.post("/v1/t/alpha/alpha/videos", json={"title": "Nope"})
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "forbidden"

        members = owner.get("/v1/teamspaces/alpha/members").json()["data"]
        assert {m["email"]: m["role"] for m in members} == {
            "alpha@example.com": "owner",
            "guest@example.com": "viewer",
        }
        assert owner.get("/v1/teamspaces/alpha/invitations").json()["data"] == []

    def test_member_management_requires_owner(self, recording_email):
        owner = _signed_in("alpha@example.com", project_name="Alpha")
        get_runtime().invitations.email_service = recording_email
        owner.post("/v1/teamspaces/alpha/invitations", json={"email": "ed@example.com"})
        token = recording_email.last_token("send_invitation")
        editor = _client()
        editor.post(f"/v1/invitations/{token}/accept", json={"password": "Editor-Password-1"})

        members = owner.get("/v1/teamspaces/alpha/members").json()["data"]
        editor_id = next(m["user_id"] for m in members if m["email"] == "ed@example.com")
        owner_id = next(m["user_id"] for m in members if m["email"] == "alpha@example.com")

        assert editor.delete(f"/v1/teamspaces/alpha/members/{owner_id}").status_code == 403
        promoted = owner.patch(f"/v1/teamspaces/alpha/members/{editor_id}", json={"role": "admin"})
        assert promoted.status_code == 200
        assert promoted.json()["data"]["role"] == "admin"
        assert owner.delete(f"/v1/teamspaces/alpha/members/{editor_id}").status_code == 200
        assert editor.get("/v1/teamspaces/alpha").status_code == 404

    def test_project_member_overrides(self, recording_email):
        owner = _signed_in("alpha@example.com", project_name="Alpha")
        get_runtime().invitations.email_service = recording_email
        owner.post("/v1/teamspaces/alpha/invitations", json={"email": "ed@example.com"})
        token = recording_email.last_token("send_invitation")
        editor = _client()
        editor.post(f"/v1/invitations/{token}/accept", json={"password": "Editor-Password-1"})
        members = owner.get("/v1/teamspaces/alpha/members").json()["data"]
        editor_id = next(m["user_id"] for m in members if m["email"] == "ed@example.com")
        base = "/v1/t/alpha/alpha"

        assert editor.post(f"{base}/videos", json={"title": "Mine"}).status_code == 201
        assert editor.put(
            f"{base}/members/{editor_id}", json={"role_override": "owner"}
        ).status_code == 403

        demoted = owner.put(f"{base}/members/{editor_id}", json={"role_override": "viewer"})
        assert demoted.status_code == 200
        assert demoted.json()["data"]["role_override"] == "viewer"
        assert editor.get(base).json()["data"]["role"] == "viewer"
        assert editor.post(f"{base}/videos", json={"title": "Nope"}).status_code == 403

        assert owner.put(f"{base}/members/missing-user", json={}).status_code == 404
        assert owner.delete(f"{base}/members/{editor_id}").status_code == 200
        assert editor.get(base).status_code == 403
        actions = {e["action"] for e in owner.get(f"{base}/audit-log").json()["data"]}
        assert {"project.member_updated", "project.member_removed"} <= actions

    def test_project_creation_is_admin_only_and_globally_unique(self):
        owner = _signed_in("alpha@example.com", project_name="Alpha")
        _signed_in("beta@example.com", project_name="Beta")
        created = owner.post("/v1/teamspaces/alpha/projects", json={"name": "Shorts"})
        assert created.status_code == 201
        assert created.json()["data"]["slug"] == "shorts"
        clash = owner.post("/v1/teamspaces/alpha/projects", json={"name": "Beta"})
        assert clash.status_code == 409
        projects = owner.get("/v1/teamspaces/alpha/projects").json()["data"]
        assert sorted(p["slug"] for p in projects) == ["alpha", "shorts"]

    def test_teamspace_creation_suffixes_taken_slugs(self):
        owner = _signed_in("alpha@example.com", project_name="Alpha")
        created = owner.post("/v1/teamspaces", json={"name": "Side Hustle"})
        assert created.status_code == 201
        assert created.json()["data"]["slug"] == "side-hustle"
        assert created.json()["data"]["role"] == "owner"

        again = owner.post("/v1/teamspaces", json={"name": "Side Hustle"})
        assert again.status_code == 201
        assert again.json()["data"]["slug"].startswith("side-hustle-")

        explicit = owner.post("/v1/teamspaces", json={"name": "Other", "slug": "side-hustle"})
        assert explicit.status_code == 409

    def test_single_category_links(self):
        owner = _signed_in("alpha@example.com", project_name="Alpha")
        base = "/v1/t/alpha/alpha"
        video_id = owner.post(f"{base}/videos", json={"title": "Clip"}).json()["data"]["id"]
        category_id = owner.post(f"{base}/categories", json={"name": "Shorts"}).json()["data"]["id"]

        added = owner.post(f"{base}/videos/{video_id}/categories/{category_id}")
        assert added.json()["data"]["category_ids"] == [category_id]
        removed = owner.delete(f"{base}/videos/{video_id}/categories/{category_id}")
        assert removed.json()["data"]["category_ids"] == []
