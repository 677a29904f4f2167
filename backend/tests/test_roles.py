# tests/test_roles.py - Role management
import pytest
from httpx import AsyncClient

from auth import BASE_PERMISSIONS
from models import User, Role
from tests.conftest import fetch, get_auth_headers


@pytest.mark.asyncio
class TestRoles:
    async def test_list_with_member_counts(self, client: AsyncClient, admin_user, dev_user, tester_user):
        res = await client.get("/api/v1/roles", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        by_name = {r["name"]: r for r in res.json()}
        assert set(by_name) == {"Admin", "Developer", "Project Manager", "Tester"}
        assert by_name["Admin"]["member_count"] == 1
        assert by_name["Project Manager"]["member_count"] == 0
        assert by_name["Admin"]["reserved"] is True
        assert by_name["Developer"]["reserved"] is True
        assert by_name["Tester"]["reserved"] is False

    async def test_requires_admin(self, client: AsyncClient, pm_user):
        res = await client.get("/api/v1/roles", headers=get_auth_headers(pm_user))
        assert res.status_code == 403

    async def test_create(self, client: AsyncClient, admin_user, notifier):
        res = await client.post(
            "/api/v1/roles",
            json={"name": " Designer ", "description": "Makes it pretty"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 201
        data = res.json()
        assert data["name"] == "Designer"
        assert data["reserved"] is False
        assert data["version"] == 1
        assert [(e.entity_type, e.action) for e in notifier.events] == [("role", "created")]

    async def test_create_duplicate_case_insensitive(self, client: AsyncClient, admin_user):
        res = await client.post("/api/v1/roles", json={"name": "tester"}, headers=get_auth_headers(admin_user))
        assert res.status_code == 409

    async def test_create_empty_name(self, client: AsyncClient, admin_user):
        res = await client.post("/api/v1/roles", json={"name": "  "}, headers=get_auth_headers(admin_user))
        assert res.status_code == 400

    async def test_rename(self, client: AsyncClient, roles, admin_user):
        role = roles["Tester"]
        res = await client.put(
            f"/api/v1/roles/{role.id}",
            json={"name": "QA", "version": role.version},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200
        assert res.json()["name"] == "QA"
        assert res.json()["version"] == role.version + 1

    async def test_rename_stale_version(self, client: AsyncClient, roles, admin_user):
        role = roles["Tester"]
        res = await client.put(
            f"/api/v1/roles/{role.id}",
            json={"name": "QA", "version": role.version + 5},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 409

    @pytest.mark.parametrize("reserved", ["Admin", "Developer"])
    async def test_reserved_roles_keep_their_names(self, client: AsyncClient, roles, admin_user, reserved):
        res = await client.put(
            f"/api/v1/roles/{roles[reserved].id}",
            json={"name": "Something else"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 400

    async def test_reserved_role_description_can_change(self, client: AsyncClient, roles, admin_user):
        res = await client.put(
            f"/api/v1/roles/{roles['Developer'].id}",
            json={"description": "Builds things"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200
        assert res.json()["description"] == "Builds things"

    @pytest.mark.parametrize("reserved", ["Admin", "Developer"])
    async def test_reserved_roles_cannot_be_deleted(self, client: AsyncClient, roles, admin_user, reserved):
        res = await client.delete(f"/api/v1/roles/{roles[reserved].id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 400

    async def test_delete_moves_members_to_developer(
        self, client: AsyncClient, db_session, roles, admin_user, tester_user, notifier
    ):
        tester_role_id, developer_id, tester_id = roles["Tester"].id, roles["Developer"].id, tester_user.id

        res = await client.delete(f"/api/v1/roles/{tester_role_id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json()["reassigned_users"] == 1

        assert (await fetch(db_session, User, tester_id)).role_id == developer_id
        assert await fetch(db_session, Role, tester_role_id) is None
        assert ("user", tester_id, "roleUpdated") in [
            (e.entity_type, e.entity_id, e.action) for e in notifier.events
        ]

    async def test_custom_role_gets_base_permissions(self, client: AsyncClient, admin_user, dev_user):
        admin_headers = get_auth_headers(admin_user)
        res = await client.post("/api/v1/roles", json={"name": "Intern"}, headers=admin_headers)
        role_id = res.json()["id"]
        res = await client.put(f"/api/v1/users/{dev_user.id}/role", json={"role_id": role_id}, headers=admin_headers)
        assert res.status_code == 200

        res = await client.get("/api/v1/account/me", headers=get_auth_headers(dev_user))
        assert res.json()["role"] == "Intern"
        assert res.json()["permissions"] == BASE_PERMISSIONS
