"""
workspace/models.py -- Domain dataclasses for teams, workspaces and tasks.

These are pure data containers with zero logic. Membership rules live in
workspace/store.py; authorization decisions live in api/access.py.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class Team:
    name: str
    created_by: int  # member_id of the creator, who becomes the owner
    team_id: Optional[int] = None
    description: Optional[str] = None
    created_at: str = ""


@dataclass
class TeamMember:
    team_id: int
    member_id: int
    role: str = "member"  # "owner" | "member"
    joined_at: str = ""


@dataclass
class Workspace:
    """A calendar workspace owned by a member (personal) or a team.

    owner_id is a member_id when type == "personal", a team_id when type == "team".
    """

    name: str
    type: str  # "personal" | "team"
    owner_id: int
    workspace_id: Optional[int] = None
    created_at: str = ""


@dataclass
class Task:
    workspace_id: int
    title: str
    created_by: int
    id: Optional[int] = None
    content: Optional[str] = None
    start_time: Optional[str] = None  # ISO 8601
    end_time: Optional[str] = None  # ISO 8601
    status: str = "TODO"  # "TODO" | "IN_PROGRESS" | "DONE"
    created_at: str = ""
