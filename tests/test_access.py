"""Tests for role arithmetic and the authorization chain."""

import pytest

from streamline.service.access import (
    PROJECT_FORBIDDEN_MESSAGE,
    PROJECT_NOT_FOUND_MESSAGE,
    TEAMSPACE_NOT_FOUND_MESSAGE,
    UNAUTHENTICATED_MESSAGE,
    AccessResolver,
    ProjectRole,
    TeamspaceRole,
    calculate_effective_role,
    has_project_role,
    has_teamspace_role,
    map_teamspace_role_to_project,
    resolve_access_error,
)
from streamline.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
)
from streamline.storage.models import ProjectUser
from streamline.storage.repositories import create_teamspace


def _membership(override=None):
    return ProjectUser(project_id="p", user_id="u", role_override=override)


class TestEffectiveRole:
    @pytest.mark.parametrize("role", ["owner", "admin"])
    def test_admins_and_owners_are_project_owners_without_membership(self, role):
        assert calculate_effective_role(role, None) == ProjectRole.OWNER

    @pytest.mark.parametrize("role", ["owner", "admin"])
    def test_override_cannot_demote_admins(self, role):
        assert calculate_effective_role(role, _membership("viewer")) == ProjectRole.OWNER

    @pytest.mark.parametrize("role", ["editor", "viewer"])
    def test_no_membership_means_no_access(self, role):
        assert calculate_effective_role(role, None) is None

    def test_override_wins_for_members(self):
        assert calculate_effective_role("viewer", _membership("editor")) == ProjectRole.EDITOR
        assert calculate_effective_role("editor", _membership("viewer")) == ProjectRole.VIEWER

    def test_membership_without_override_maps_teamspace_role(self):
        assert calculate_effective_role("editor", _membership()) == ProjectRole.EDITOR
        assert calculate_effective_role("viewer", _membership()) == ProjectRole.VIEWER

    def test_every_teamspace_role_maps_to_a_project_role(self):
        for role in TeamspaceRole:
            assert isinstance(map_teamspace_role_to_project(role), ProjectRole)


class TestHierarchy:
    def test_teamspace_hierarchy(self):
        assert has_teamspace_role("owner", "admin")
        assert has_teamspace_role("admin", "admin")
        assert not has_teamspace_role("editor", "admin")
        assert has_teamspace_role("viewer", "viewer")

    def test_project_hierarchy(self):
        assert has_project_role("owner", "editor")
        assert has_project_role("editor", "editor")
        assert not has_project_role("viewer", "editor")

    def test_unknown_role_is_rejected(self):
        with pytest.raises(ValueError):
            has_teamspace_role("superuser", "viewer")


class TestAccessErrorPolicy:
    def test_missing_resource_is_not_found(self):
        assert resolve_access_error(False, False) is NotFoundError

    def test_visible_but_not_member_is_forbidden(self):
        assert resolve_access_error(True, False) is ForbiddenError

    def test_member_has_access(self):
        assert resolve_access_error(True, True) is None


@pytest.fixture
def world(memory_store):
    """Two tenants: acme (owner, editor, outsider-to-project viewer) and globex."""
    store = memory_store
    owner = store.create_user("owner@acme.test")
    editor = store.create_user("editor@acme.test")
    viewer = store.create_user("viewer@acme.test")
    stranger = store.create_user("boss@globex.test")

    acme, _ = create_teamspace(store, name="Acme", slug="acme", owner_id=owner.id, mode="multi-tenant")
    store.add_teamspace_member(acme.id, editor.id, "editor")
    store.add_teamspace_member(acme.id, viewer.id, "viewer")
    channel = store.create_project(acme.id, "Channel", "channel")
    store.add_project_member(channel.id, editor.id)

    globex, _ = create_teamspace(
        store, name="Globex", slug="globex", owner_id=stranger.id, mode="multi-tenant"
    )
    store.create_project(globex.id, "Secret", "secret")
    return {
        "store": store,
        "owner": owner,
        "editor": editor,
        "viewer": viewer,
        "stranger": stranger,
        "channel": channel,
    }


class TestAccessResolver:
    def test_anonymous_is_unauthenticated(self, world):
        resolver = AccessResolver(world["store"])
        with pytest.raises(AuthenticationError) as exc_info:
            resolver.resolve_teamspace(None, "acme")
        assert exc_info.value.message == UNAUTHENTICATED_MESSAGE

    def test_foreign_teamspace_looks_missing(self, world):
        resolver = AccessResolver(world["store"])
        with pytest.raises(NotFoundError) as exists:
            resolver.resolve_teamspace(world["stranger"], "acme")
        with pytest.raises(NotFoundError) as missing:
            resolver.resolve_teamspace(world["stranger"], "no-such-teamspace")
        assert exists.value.message == missing.value.message == TEAMSPACE_NOT_FOUND_MESSAGE

    def test_project_of_another_teamspace_is_not_found(self, world):
        resolver = AccessResolver(world["store"])
        with pytest.raises(NotFoundError) as exc_info:
            resolver.resolve(world["owner"], "acme", "secret")
        assert exc_info.value.message == PROJECT_NOT_FOUND_MESSAGE

    def test_teamspace_member_without_project_membership_is_forbidden(self, world):
        resolver = AccessResolver(world["store"])
        with pytest.raises(ForbiddenError) as exc_info:
            resolver.resolve(world["viewer"], "acme", "channel")
        assert exc_info.value.message == PROJECT_FORBIDDEN_MESSAGE

    def test_owner_reaches_project_without_membership(self, world):
        resolver = AccessResolver(world["store"])
        ctx = resolver.resolve(world["owner"], "acme", "channel")
        assert ctx.role == ProjectRole.OWNER
        assert ctx.membership is None
        assert ctx.repository.project_id == world["channel"].id

    def test_member_role_check(self, world):
        resolver = AccessResolver(world["store"])
        ctx = resolver.resolve(world["editor"], "acme", "channel")
        assert ctx.role == ProjectRole.EDITOR
        assert resolver.require_project_role(ctx, "editor") is ctx
        with pytest.raises(ForbiddenError) as exc_info:
            resolver.require_project_role(ctx, ProjectRole.OWNER)
        assert "owner role or higher" in exc_info.value.message

    def test_teamspace_role_check(self, world):
        resolver = AccessResolver(world["store"])
        ctx = resolver.resolve_teamspace(world["editor"], "acme")
        with pytest.raises(ForbiddenError):
            resolver.require_teamspace_role(ctx, TeamspaceRole.ADMIN)

    def test_simple_resolution_uses_first_project(self, world):
        resolver = AccessResolver(world["store"])
        ctx = resolver.resolve_simple(world["editor"])
        assert ctx.project.id == world["channel"].id
        assert ctx.teamspace_role == TeamspaceRole.EDITOR

    def test_simple_resolution_with_foreign_project_id(self, world):
        resolver = AccessResolver(world["store"])
        with pytest.raises(NotFoundError):
            resolver.resolve_simple(world["stranger"], project_id=world["channel"].id)

    def test_simple_resolution_gives_admins_projects_they_never_joined(self, world):
        store = world["store"]
        admin = store.create_user("admin@acme.test")
        store.add_teamspace_member(store.get_teamspace_by_slug("acme").id, admin.id, "admin")
        resolver = AccessResolver(store)
        ctx = resolver.resolve_simple(admin, project_id=world["channel"].id)
        assert ctx.role == ProjectRole.OWNER
        assert ctx.membership is None
        assert resolver.resolve_simple(admin).project.id == world["channel"].id

    def test_simple_resolution_owner_without_membership(self, world):
        resolver = AccessResolver(world["store"])
        ctx = resolver.resolve_simple(world["owner"], project_id=world["channel"].id)
        assert ctx.role == ProjectRole.OWNER

    def test_simple_resolution_non_member_is_forbidden(self, world):
        resolver = AccessResolver(world["store"])
        with pytest.raises(ForbiddenError) as exc_info:
            resolver.resolve_simple(world["viewer"], project_id=world["channel"].id)
        assert exc_info.value.message == PROJECT_FORBIDDEN_MESSAGE

    def test_simple_resolution_unknown_project_id(self, world):
        resolver = AccessResolver(world["store"])
        with pytest.raises(NotFoundError) as exc_info:
            resolver.resolve_simple(world["owner"], project_id="00000000-0000-0000-0000-000000000000")
        assert exc_info.value.message == PROJECT_NOT_FOUND_MESSAGE
