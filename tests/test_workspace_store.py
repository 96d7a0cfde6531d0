"""
tests/test_workspace_store.py -- Unit tests for workspace/store.py.

Covers:
  - team creation enrols the creator as owner
  - add/remove members, duplicate add, unknown role
  - workspace access: personal owner, team member, outsider, membership removal
  - owner listings and task lookup
"""

from __future__ import annotations

import pytest

from workspace.models import Task, Team, Workspace
from workspace.store import WorkspaceStore

OWNER, MEMBER, OUTSIDER = 1, 2, 3


@pytest.fixture
def team_id(workspace_store: WorkspaceStore) -> int:
    return workspace_store.create_team(Team(name="Design", created_by=OWNER))


class TestTeams:
    def test_creator_becomes_owner(self, workspace_store: WorkspaceStore, team_id: int) -> None:
        members = workspace_store.get_team_members(team_id)
        assert [(m.member_id, m.role) for m in members] == [(OWNER, "owner")]
        assert workspace_store.is_team_member(team_id, OWNER)

    def test_add_member_once(self, workspace_store: WorkspaceStore, team_id: int) -> None:
        assert workspace_store.add_team_member(team_id, MEMBER) is True
        assert workspace_store.add_team_member(team_id, MEMBER) is False
        assert workspace_store.is_team_member(team_id, MEMBER)

    def test_unknown_role_rejected(self, workspace_store: WorkspaceStore, team_id: int) -> None:
        with pytest.raises(ValueError):
            workspace_store.add_team_member(team_id, MEMBER, role="admin")

    def test_remove_member(self, workspace_store: WorkspaceStore, team_id: int) -> None:
        workspace_store.add_team_member(team_id, MEMBER)
        assert workspace_store.remove_team_member(team_id, MEMBER) is True
        assert workspace_store.remove_team_member(team_id, MEMBER) is False
        assert not workspace_store.is_team_member(team_id, MEMBER)


class TestWorkspaceAccess:
    def test_personal_workspace_is_owner_only(self, workspace_store: WorkspaceStore) -> None:
        ws = workspace_store.create_workspace(Workspace(name="Mine", type="personal", owner_id=OWNER))
        assert workspace_store.check_workspace_access(ws, OWNER)
        assert not workspace_store.check_workspace_access(ws, MEMBER)

    def test_team_workspace_follows_membership(self, workspace_store: WorkspaceStore, team_id: int) -> None:
        ws = workspace_store.create_workspace(Workspace(name="Team", type="team", owner_id=team_id))
        workspace_store.add_team_member(team_id, MEMBER)
        assert workspace_store.check_workspace_access(ws, OWNER)
        assert workspace_store.check_workspace_access(ws, MEMBER)
        assert not workspace_store.check_workspace_access(ws, OUTSIDER)

        workspace_store.remove_team_member(team_id, MEMBER)
        assert not workspace_store.check_workspace_access(ws, MEMBER)

    def test_team_id_equal_to_member_id_does_not_leak(self, workspace_store: WorkspaceStore) -> None:
        """A team workspace owned by team N is not the personal workspace of member N."""
        team = workspace_store.create_team(Team(name="Other", created_by=OUTSIDER))
        ws = workspace_store.create_workspace(Workspace(name="Team", type="team", owner_id=team))
        assert team != OUTSIDER
        assert not workspace_store.check_workspace_access(ws, team)

    def test_missing_workspace_denied(self, workspace_store: WorkspaceStore) -> None:
        assert not workspace_store.check_workspace_access(9999, OWNER)

    def test_unknown_type_rejected(self, workspace_store: WorkspaceStore) -> None:
        with pytest.raises(ValueError):
            workspace_store.create_workspace(Workspace(name="x", type="org", owner_id=1))

    def test_list_for_owner(self, workspace_store: WorkspaceStore, team_id: int) -> None:
        workspace_store.create_workspace(Workspace(name="A", type="team", owner_id=team_id))
        workspace_store.create_workspace(Workspace(name="B", type="team", owner_id=team_id))
        workspace_store.create_workspace(Workspace(name="C", type="personal", owner_id=team_id))
        names = [ws.name for ws in workspace_store.list_workspaces_for_owner("team", team_id)]
        assert names == ["A", "B"]


class TestTasks:
    def test_create_and_get(self, workspace_store: WorkspaceStore) -> None:
        ws = workspace_store.create_workspace(Workspace(name="Mine", type="personal", owner_id=OWNER))
        task_id = workspace_store.create_task(
            Task(workspace_id=ws, title="Plan launch", created_by=OWNER, start_time="2026-03-01T09:00:00+00:00")
        )
        task = workspace_store.get_task(task_id)
        assert task is not None
        assert task.title == "Plan launch"
        assert task.workspace_id == ws
        assert task.status == "TODO"
        assert task.created_at

    def test_missing_task(self, workspace_store: WorkspaceStore) -> None:
        assert workspace_store.get_task(12345) is None
