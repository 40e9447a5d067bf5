"""Tests for the Role-Based Access Control system.

Covers:
- Role enum ordering and hierarchy
- Permission mapping per role
- require_permission enforcement through the app
- Token handling in the authentication middleware
"""

from __future__ import annotations

import pytest
from conftest import auth_headers

from plant_api.middleware.auth import get_token_manager
from plant_api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    parse_role,
    role_has_permission,
)

# ---------------------------------------------------------------------------
# Role enum
# ---------------------------------------------------------------------------


class TestRole:
    def test_ordering(self) -> None:
        assert Role.MEMBER < Role.CHAPTER_LEADER < Role.ADMINISTRATOR

    def test_claim_strings(self) -> None:
        assert Role.MEMBER.claim == "member"
        assert Role.CHAPTER_LEADER.claim == "chapter_leader"
        assert Role.ADMINISTRATOR.claim == "administrator"

    @pytest.mark.parametrize("raw", ["administrator", " Administrator ", "ADMINISTRATOR"])
    def test_parse_role_is_lenient_on_case_and_space(self, raw: str) -> None:
        assert parse_role(raw) is Role.ADMINISTRATOR

    def test_parse_unknown_role(self) -> None:
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role("superuser")


# ---------------------------------------------------------------------------
# Permission map
# ---------------------------------------------------------------------------


class TestPermissionMap:
    def test_each_tier_includes_the_one_below(self) -> None:
        assert ROLE_PERMISSIONS[Role.MEMBER] < ROLE_PERMISSIONS[Role.CHAPTER_LEADER]
        assert ROLE_PERMISSIONS[Role.CHAPTER_LEADER] < ROLE_PERMISSIONS[Role.ADMINISTRATOR]

    def test_administrator_holds_everything(self) -> None:
        assert ROLE_PERMISSIONS[Role.ADMINISTRATOR] == frozenset(Permission)

    @pytest.mark.parametrize(
        "permission",
        [
            Permission.RECORD_METRICS,
            Permission.DECLARE_TRADES,
            Permission.INITIATE_PAYMENTS,
            Permission.EXPORT_OWN_DATA,
            Permission.READ_CHAPTERS,
        ],
    )
    def test_member_self_service(self, permission: Permission) -> None:
        assert role_has_permission(Role.MEMBER, permission)

    @pytest.mark.parametrize(
        "permission",
        [Permission.VIEW_CHAPTER_DASHBOARD, Permission.SEND_REMINDERS, Permission.MANAGE_CHAPTER_MEMBERS],
    )
    def test_leader_only(self, permission: Permission) -> None:
        assert not role_has_permission(Role.MEMBER, permission)
        assert role_has_permission(Role.CHAPTER_LEADER, permission)

    @pytest.mark.parametrize(
        "permission",
        [
            Permission.MANAGE_USERS,
            Permission.MANAGE_CHAPTERS,
            Permission.MANAGE_TRADES,
            Permission.SEND_NOTIFICATIONS,
            Permission.GENERATE_REPORTS,
            Permission.READ_AUDIT,
            Permission.VIEW_ADMIN_METRICS,
        ],
    )
    def test_administrator_only(self, permission: Permission) -> None:
        assert not role_has_permission(Role.CHAPTER_LEADER, permission)
        assert role_has_permission(Role.ADMINISTRATOR, permission)


# ---------------------------------------------------------------------------
# Enforcement through the app
# ---------------------------------------------------------------------------


class TestEnforcement:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/api/v1/admin/metrics"),
            ("get", "/api/v1/admin/users"),
            ("get", "/api/v1/admin/trades"),
            ("get", "/api/v1/audit"),
            ("get", "/api/v1/admin/reports/history"),
            ("get", "/api/v1/notifications/history"),
            ("get", "/api/v1/leader/stats"),
            ("delete", "/api/v1/chapters/some-chapter"),
        ],
    )
    async def test_member_is_forbidden(self, client, world, method: str, path: str) -> None:
        resp = await getattr(client, method)(path, headers=world.member)
        assert resp.status_code == 403
        assert "Permission denied" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_missing_header_is_401(self, client) -> None:
        resp = await client.get("/api/v1/metrics")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing Authorization header"

    @pytest.mark.asyncio
    async def test_non_bearer_scheme_is_401(self, client) -> None:
        resp = await client.get("/api/v1/metrics", headers={"Authorization": "Basic abc"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_tampered_token_is_401(self, client, world) -> None:
        token = world.member["Authorization"].removeprefix("Bearer ")
        resp = await client.get("/api/v1/metrics", headers={"Authorization": f"Bearer {token[:-4]}beef"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_token_is_403(self, client, world) -> None:
        token = get_token_manager().generate_token(world.member_id, "member", ttl_seconds=-10)
        resp = await client.get("/api/v1/metrics", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Token has expired"

    @pytest.mark.asyncio
    async def test_unknown_role_claim_is_403(self, client, world) -> None:
        resp = await client.get("/api/v1/metrics", headers=auth_headers(world.member_id, "superuser"))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_public_paths_skip_auth(self, client) -> None:
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed(self, client, world) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-123"})
        assert resp.headers["X-Correlation-ID"] == "corr-123"
