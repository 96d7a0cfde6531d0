"""
tests/test_export_routes.py -- Integration tests for task access and task share links.

Cast per test (fresh rows each time, one DB per module):
  owner     -- created the team; on the team
  teammate  -- added to the team
  outsider  -- authenticated, not on the team

Coverage:
  - task reads: 401 anonymous, 404 for outsiders exactly like a missing task
  - export create/list: 201 + token and URL, listing never shows the token
  - token consumption: public anonymous, restricted 401/403/200, revoked/expired 410, unknown 404
  - management by id: 401/404/403, PATCH rules, ACL add/remove rules
  - owner listings: personal/team/unknown type
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from auth.models import AuthUser
from tests.conftest import seed_team_task
from workspace.models import Workspace


@dataclass
class Cast:
    owner: AuthUser
    teammate: AuthUser
    outsider: AuthUser
    team_id: int
    workspace_id: int
    task_id: int


@pytest.fixture
def cast(app_env) -> Cast:
    _, services = app_env
    tag = uuid.uuid4().hex[:8]
    owner = services.new_member(f"owner-{tag}")
    teammate = services.new_member(f"mate-{tag}")
    outsider = services.new_member(f"out-{tag}")
    team_id, ws_id, task_id = seed_team_task(services, owner)
    services.workspaces.add_team_member(team_id, teammate.member_id)
    return Cast(owner, teammate, outsider, team_id, ws_id, task_id)


def _create(client, services, user, task_id, visibility="restricted", **extra):
    return client.post(
        f"/api/v1/tasks/{task_id}/export",
        json={"visibility": visibility, **extra},
        headers=services.bearer(user),
    )


def _future_iso(days: int = 1) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TestTaskAccess:
    def test_member_reads_task(self, app_env, cast: Cast) -> None:
        client, services = app_env
        resp = client.get(f"/api/v1/tasks/{cast.task_id}", headers=services.bearer(cast.teammate))
        assert resp.status_code == 200
        assert resp.json()["title"] == "Sprint review"

    def test_anonymous_is_401(self, app_env, cast: Cast) -> None:
        client, _ = app_env
        resp = client.get(f"/api/v1/tasks/{cast.task_id}")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_outsider_cannot_tell_task_exists(self, app_env, cast: Cast) -> None:
        client, services = app_env
        hidden = client.get(f"/api/v1/tasks/{cast.task_id}", headers=services.bearer(cast.outsider))
        missing = client.get("/api/v1/tasks/99999999", headers=services.bearer(cast.outsider))
        assert hidden.status_code == missing.status_code == 404
        assert hidden.json() == missing.json()

    def test_outsider_cannot_export(self, app_env, cast: Cast) -> None:
        client, services = app_env
        assert _create(client, services, cast.outsider, cast.task_id).status_code == 404


# ---------------------------------------------------------------------------
# Creating and listing
# ---------------------------------------------------------------------------


class TestCreateAndList:
    def test_create_returns_token_and_url(self, app_env, cast: Cast) -> None:
        client, services = app_env
        resp = _create(client, services, cast.owner, cast.task_id, visibility="public")
        assert resp.status_code == 201
        body = resp.json()
        assert body["path"] == f"/api/v1/exports/tasks/{body['token']}"
        assert body["url"] == f"http://testserver{body['path']}"
        assert body["visibility"] == "public"
        assert body["expires_at"] is None

    def test_create_with_expiry(self, app_env, cast: Cast) -> None:
        client, services = app_env
        resp = _create(client, services, cast.owner, cast.task_id, expires_at="2030-01-01T09:00:00+09:00")
        assert resp.json()["expires_at"] == "2030-01-01T00:00:00+00:00"

    def test_create_with_zulu_expiry(self, app_env, cast: Cast) -> None:
        client, services = app_env
        resp = _create(client, services, cast.owner, cast.task_id, expires_at="2030-01-01T00:00:00.000Z")
        assert resp.status_code == 201
        assert resp.json()["expires_at"] == "2030-01-01T00:00:00+00:00"

    @pytest.mark.parametrize(
        "body",
        [{"visibility": "everyone"}, {"visibility": "public", "expires_at": "next tuesday"}, {}],
    )
    def test_create_validation(self, app_env, cast: Cast, body: dict) -> None:
        client, services = app_env
        resp = client.post(f"/api/v1/tasks/{cast.task_id}/export", json=body, headers=services.bearer(cast.owner))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_list_hides_tokens(self, app_env, cast: Cast) -> None:
        client, services = app_env
        _create(client, services, cast.owner, cast.task_id)
        _create(client, services, cast.owner, cast.task_id, visibility="public")
        resp = client.get(f"/api/v1/tasks/{cast.task_id}/exports", headers=services.bearer(cast.teammate))
        assert resp.status_code == 200
        rows = resp.json()
        assert len(rows) == 2
        assert all("token" not in row for row in rows)
        assert all(row["state"] == "active" for row in rows)
        assert rows[0]["access_member_ids"] == [cast.owner.member_id]


# ---------------------------------------------------------------------------
# Consuming a token
# ---------------------------------------------------------------------------


class TestConsume:
    def test_public_is_anonymous(self, app_env, cast: Cast) -> None:
        client, services = app_env
        token = _create(client, services, cast.owner, cast.task_id, visibility="public").json()["token"]
        resp = client.get(f"/api/v1/exports/tasks/{token}")
        assert resp.status_code == 200
        assert resp.json()["task"]["id"] == cast.task_id
        assert resp.json()["visibility"] == "public"

    def test_restricted_anonymous_is_401(self, app_env, cast: Cast) -> None:
        client, services = app_env
        token = _create(client, services, cast.owner, cast.task_id).json()["token"]
        resp = client.get(f"/api/v1/exports/tasks/{token}")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_restricted_needs_acl_not_just_team(self, app_env, cast: Cast) -> None:
        client, services = app_env
        token = _create(client, services, cast.owner, cast.task_id).json()["token"]
        assert client.get(f"/api/v1/exports/tasks/{token}", headers=services.bearer(cast.teammate)).status_code == 403
        assert client.get(f"/api/v1/exports/tasks/{token}", headers=services.bearer(cast.owner)).status_code == 200

    def test_unknown_token_is_404(self, app_env) -> None:
        client, _ = app_env
        assert client.get("/api/v1/exports/tasks/does-not-exist").status_code == 404

    def test_revoked_is_410_even_for_owner(self, app_env, cast: Cast) -> None:
        client, services = app_env
        created = _create(client, services, cast.owner, cast.task_id, visibility="public").json()
        services.exports.revoke(created["export_id"])
        resp = client.get(f"/api/v1/exports/tasks/{created['token']}", headers=services.bearer(cast.owner))
        assert resp.status_code == 410
        assert resp.json()["error"]["code"] == "gone"

    def test_expired_is_410_before_auth(self, app_env, cast: Cast) -> None:
        client, services = app_env
        record = services.exports.create_export(
            task_id=cast.task_id,
            created_by=cast.owner.member_id,
            visibility="restricted",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        assert client.get(f"/api/v1/exports/tasks/{record.token}").status_code == 410


# ---------------------------------------------------------------------------
# Managing by id
# ---------------------------------------------------------------------------


class TestManage:
    def _export_id(self, client, services, cast: Cast, visibility: str = "restricted") -> int:
        return _create(client, services, cast.owner, cast.task_id, visibility=visibility).json()["export_id"]

    def test_patch_requires_auth(self, app_env, cast: Cast) -> None:
        client, services = app_env
        export_id = self._export_id(client, services, cast)
        assert client.patch(f"/api/v1/exports/tasks/id/{export_id}", json={"revoke": True}).status_code == 401

    def test_patch_unknown_export_is_404(self, app_env, cast: Cast) -> None:
        client, services = app_env
        resp = client.patch(
            "/api/v1/exports/tasks/id/99999999", json={"revoke": True}, headers=services.bearer(cast.owner)
        )
        assert resp.status_code == 404

    def test_outsider_is_403(self, app_env, cast: Cast) -> None:
        client, services = app_env
        export_id = self._export_id(client, services, cast)
        resp = client.patch(
            f"/api/v1/exports/tasks/id/{export_id}", json={"revoke": True}, headers=services.bearer(cast.outsider)
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_teammate_updates_visibility_and_expiry(self, app_env, cast: Cast) -> None:
        client, services = app_env
        export_id = self._export_id(client, services, cast)
        expiry = _future_iso()
        resp = client.patch(
            f"/api/v1/exports/tasks/id/{export_id}",
            json={"visibility": "public", "expires_at": expiry},
            headers=services.bearer(cast.teammate),
        )
        assert resp.status_code == 200
        record = services.exports.get_by_id(export_id)
        assert record.visibility == "public"
        assert record.expires_at is not None

    def test_null_expiry_clears_it(self, app_env, cast: Cast) -> None:
        client, services = app_env
        export_id = _create(
            client, services, cast.owner, cast.task_id, expires_at=_future_iso()
        ).json()["export_id"]
        resp = client.patch(
            f"/api/v1/exports/tasks/id/{export_id}", json={"expires_at": None}, headers=services.bearer(cast.owner)
        )
        assert resp.status_code == 200
        assert services.exports.get_by_id(export_id).expires_at is None

    def test_empty_patch_is_400(self, app_env, cast: Cast) -> None:
        client, services = app_env
        export_id = self._export_id(client, services, cast)
        resp = client.patch(f"/api/v1/exports/tasks/id/{export_id}", json={}, headers=services.bearer(cast.owner))
        assert resp.status_code == 400

    def test_revoke_then_everything_is_410(self, app_env, cast: Cast) -> None:
        client, services = app_env
        export_id = self._export_id(client, services, cast)
        url = f"/api/v1/exports/tasks/id/{export_id}"
        headers = services.bearer(cast.owner)

        resp = client.patch(url, json={"revoke": True}, headers=headers)
        assert resp.json() == {"success": True, "revoked": True}
        assert client.patch(url, json={"revoke": True}, headers=headers).status_code == 410
        assert client.patch(url, json={"visibility": "public"}, headers=headers).status_code == 410
        resp = client.post(f"{url}/access", json={"member_id": cast.teammate.member_id}, headers=headers)
        assert resp.status_code == 410

    def test_bad_expiry_does_not_half_apply(self, app_env, cast: Cast) -> None:
        client, services = app_env
        export_id = self._export_id(client, services, cast)
        resp = client.patch(
            f"/api/v1/exports/tasks/id/{export_id}",
            json={"visibility": "public", "expires_at": "soon"},
            headers=services.bearer(cast.owner),
        )
        assert resp.status_code == 422
        assert services.exports.get_by_id(export_id).visibility == "restricted"


class TestAcl:
    def test_add_teammate_grants_access(self, app_env, cast: Cast) -> None:
        client, services = app_env
        created = _create(client, services, cast.owner, cast.task_id).json()
        url = f"/api/v1/exports/tasks/id/{created['export_id']}/access"
        resp = client.post(url, json={"member_id": cast.teammate.member_id}, headers=services.bearer(cast.owner))
        assert resp.status_code == 200
        shared = client.get(f"/api/v1/exports/tasks/{created['token']}", headers=services.bearer(cast.teammate))
        assert shared.status_code == 200

    def test_add_outsider_is_400(self, app_env, cast: Cast) -> None:
        client, services = app_env
        export_id = _create(client, services, cast.owner, cast.task_id).json()["export_id"]
        resp = client.post(
            f"/api/v1/exports/tasks/id/{export_id}/access",
            json={"member_id": cast.outsider.member_id},
            headers=services.bearer(cast.owner),
        )
        assert resp.status_code == 400
        assert not services.exports.has_access(export_id, cast.outsider.member_id)

    def test_add_unknown_member_is_404(self, app_env, cast: Cast) -> None:
        client, services = app_env
        export_id = _create(client, services, cast.owner, cast.task_id).json()["export_id"]
        resp = client.post(
            f"/api/v1/exports/tasks/id/{export_id}/access",
            json={"member_id": 99999999},
            headers=services.bearer(cast.owner),
        )
        assert resp.status_code == 404

    def test_remove_member(self, app_env, cast: Cast) -> None:
        client, services = app_env
        created = _create(client, services, cast.owner, cast.task_id).json()
        services.exports.add_acl_member(created["export_id"], cast.teammate.member_id)
        resp = client.delete(
            f"/api/v1/exports/tasks/id/{created['export_id']}/access",
            params={"member_id": cast.teammate.member_id},
            headers=services.bearer(cast.owner),
        )
        assert resp.json() == {"success": True}
        shared = client.get(f"/api/v1/exports/tasks/{created['token']}", headers=services.bearer(cast.teammate))
        assert shared.status_code == 403

    def test_acl_survives_leaving_team(self, app_env, cast: Cast) -> None:
        """ACL rows are not pruned on team removal; the token holder keeps read access."""
        client, services = app_env
        created = _create(client, services, cast.owner, cast.task_id).json()
        services.exports.add_acl_member(created["export_id"], cast.teammate.member_id)
        services.workspaces.remove_team_member(cast.team_id, cast.teammate.member_id)
        shared = client.get(f"/api/v1/exports/tasks/{created['token']}", headers=services.bearer(cast.teammate))
        assert shared.status_code == 200


# ---------------------------------------------------------------------------
# Owner listings
# ---------------------------------------------------------------------------


class TestOwners:
    def test_personal_owner_only(self, app_env, cast: Cast) -> None:
        client, services = app_env
        services.workspaces.create_workspace(Workspace(name="Mine", type="personal", owner_id=cast.owner.member_id))
        url = f"/api/v1/owners/personal/{cast.owner.member_id}/workspaces"
        assert [w["name"] for w in client.get(url, headers=services.bearer(cast.owner)).json()] == ["Mine"]
        assert client.get(url, headers=services.bearer(cast.teammate)).status_code == 403

    def test_team_members_only(self, app_env, cast: Cast) -> None:
        client, services = app_env
        url = f"/api/v1/owners/team/{cast.team_id}/workspaces"
        resp = client.get(url, headers=services.bearer(cast.teammate))
        assert resp.status_code == 200
        assert [w["workspace_id"] for w in resp.json()] == [cast.workspace_id]
        assert client.get(url, headers=services.bearer(cast.outsider)).status_code == 403
        assert client.get(url).status_code == 401

    def test_unknown_owner_type(self, app_env, cast: Cast) -> None:
        client, services = app_env
        resp = client.get("/api/v1/owners/org/1/workspaces", headers=services.bearer(cast.owner))
        assert resp.status_code == 422
