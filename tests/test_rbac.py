"""Tests for roles, permissions and their assignment to users."""

import pytest

from vibeauth.service.errors import ConflictError, NotFoundError
from vibeauth.storage.errors import ConstraintViolation


@pytest.fixture
def rbac(provider):
    return provider.permissions


@pytest.fixture
def user(provider):
    return provider.users.create("alice@example.com")


class TestDefinitions:
    async def test_duplicate_names_conflict(self, rbac):
        await rbac.create_role("editor")
        await rbac.create_permission("posts:write")

        with pytest.raises(ConflictError):
            await rbac.create_role("editor")
        with pytest.raises(ConflictError) as excinfo:
            await rbac.create_permission("posts:write")
        assert excinfo.value.status_code == 409

    async def test_list_sorted_by_name(self, rbac):
        await rbac.create_role("viewer")
        await rbac.create_role("admin", "Everything")

        roles = await rbac.list_roles()
        assert [r.name for r in roles] == ["admin", "viewer"]
        assert roles[0].description == "Everything"

    async def test_grant_requires_existing_role_and_permission(self, rbac):
        await rbac.create_role("editor")

        with pytest.raises(NotFoundError):
            await rbac.grant_permission("editor", "posts:write")
        with pytest.raises(NotFoundError):
            await rbac.grant_permission("ghost", "posts:write")

    async def test_grant_is_idempotent(self, rbac):
        await rbac.create_role("editor")
        await rbac.create_permission("posts:write")

        await rbac.grant_permission("editor", "posts:write")
        await rbac.grant_permission("editor", "posts:write")

        assert [p.name for p in await rbac.get_role_permissions("editor")] == ["posts:write"]


class TestUserChecks:
    async def test_permission_follows_role_grants(self, rbac, user):
        await rbac.create_role("editor")
        await rbac.create_permission("posts:write")
        await rbac.create_permission("posts:delete")
        await rbac.grant_permission("editor", "posts:write")

        assert await rbac.user_has_permission(user.id, "posts:write") is False
        await rbac.assign_role(user.id, "editor")
        await rbac.assign_role(user.id, "editor")

        assert await rbac.user_has_role(user.id, "editor") is True
        assert await rbac.user_has_permission(user.id, "posts:write") is True
        assert await rbac.user_has_permission(user.id, "posts:delete") is False
        assert [r.name for r in await rbac.get_user_roles(user.id)] == ["editor"]

    async def test_revoke_permission_takes_effect_immediately(self, rbac, user):
        await rbac.create_role("editor")
        await rbac.create_permission("posts:write")
        await rbac.grant_permission("editor", "posts:write")
        await rbac.assign_role(user.id, "editor")

        assert await rbac.revoke_permission("editor", "posts:write") is True
        assert await rbac.user_has_permission(user.id, "posts:write") is False

    async def test_remove_role_takes_effect_immediately(self, rbac, user):
        await rbac.create_role("editor")
        await rbac.create_permission("posts:write")
        await rbac.grant_permission("editor", "posts:write")
        await rbac.assign_role(user.id, "editor")

        assert await rbac.remove_role(user.id, "editor") is True
        assert await rbac.user_has_permission(user.id, "posts:write") is False
        assert await rbac.user_has_role(user.id, "editor") is False

    async def test_permissions_deduplicated_across_roles(self, rbac, user):
        for role in ("editor", "moderator"):
            await rbac.create_role(role)
            await rbac.assign_role(user.id, role)
        await rbac.create_permission("posts:write")
        await rbac.create_permission("posts:hide")
        await rbac.grant_permission("editor", "posts:write")
        await rbac.grant_permission("moderator", "posts:write")
        await rbac.grant_permission("moderator", "posts:hide")

        names = [p.name for p in await rbac.get_user_permissions(user.id)]
        assert names == ["posts:hide", "posts:write"]

    async def test_deleting_role_removes_junction_rows(self, rbac, user, db):
        await rbac.create_role("editor")
        await rbac.create_permission("posts:write")
        await rbac.grant_permission("editor", "posts:write")
        await rbac.assign_role(user.id, "editor")

        assert await rbac.delete_role("editor") is True
        assert await rbac.user_has_permission(user.id, "posts:write") is False
        assert db.query_one("SELECT COUNT(*) AS total FROM vibekit_user_roles")["total"] == 0
        assert db.query_one("SELECT COUNT(*) AS total FROM vibekit_role_permissions")["total"] == 0
        assert await rbac.delete_role("editor") is False

    async def test_deleting_user_removes_role_assignments(self, provider, rbac, user, db):
        await rbac.create_role("editor")
        await rbac.assign_role(user.id, "editor")

        assert await provider.delete_user(user.id) is True
        assert await rbac.user_has_role(user.id, "editor") is False
        assert db.query_one("SELECT COUNT(*) AS total FROM vibekit_user_roles")["total"] == 0

    async def test_assign_role_to_unknown_user_rejected(self, rbac):
        await rbac.create_role("editor")

        with pytest.raises(ConstraintViolation):
            await rbac.assign_role("no-such-user", "editor")

    async def test_deleting_permission_removes_grants(self, rbac, user):
        await rbac.create_role("editor")
        await rbac.create_permission("posts:write")
        await rbac.grant_permission("editor", "posts:write")

        assert await rbac.delete_permission("posts:write") is True
        assert await rbac.get_role_permissions("editor") == []
        assert await rbac.list_permissions() == []
