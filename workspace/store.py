"""
workspace/store.py -- SQLAlchemy-backed persistence for teams, workspaces and tasks.

The calendar CRUD itself is not part of this service; this store holds just
enough of it for authorization decisions: who belongs to which team, who owns
which workspace, and which workspace a task lives in.

Pattern: Repository + Data Mapper, same as auth/store.py.

Layer rule: no imports from api/, auth/, sharing/, or billing/.

Access rule (check_workspace_access):
  personal workspace -> the owner member only
  team workspace     -> any member of the owning team

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = WorkspaceStore("sqlite:///:memory:")
    team_id = store.create_team(Team(name="Design", created_by=1))
    ws_id = store.create_workspace(Workspace(name="Design", type="team", owner_id=team_id))
    store.check_workspace_access(ws_id, member_id=1)  # True
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, UniqueConstraint, and_, exists, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.config import get_settings
from core.db import make_engine
from workspace.models import Task, Team, TeamMember, Workspace

WORKSPACE_TYPES = ("personal", "team")
TEAM_ROLES = ("owner", "member")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_teams = Table(
    "teams",
    metadata,
    Column("team_id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("created_by", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_team_members = Table(
    "team_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("team_id", Integer, nullable=False),
    Column("member_id", Integer, nullable=False),
    Column("role", String(20), nullable=False, server_default="member"),
    Column("joined_at", String(32), nullable=False),
    UniqueConstraint("team_id", "member_id", name="uq_team_member"),
)

_workspaces = Table(
    "workspaces",
    metadata,
    Column("workspace_id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("type", String(20), nullable=False),  # "personal" | "team"
    Column("owner_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_tasks = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, nullable=False),
    Column("title", String(200), nullable=False),
    Column("content", Text),
    Column("start_time", String(32)),
    Column("end_time", String(32)),
    Column("status", String(20), nullable=False, server_default="TODO"),
    Column("created_by", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class WorkspaceStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    def create_team(self, team: Team) -> int:
        """Create a team and enrol its creator as owner. Returns the team id."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _teams.insert().values(
                    name=team.name,
                    description=team.description,
                    created_by=team.created_by,
                    created_at=_now_iso(),
                )
            )
            team_id = result.inserted_primary_key[0]
            conn.execute(
                _team_members.insert().values(
                    team_id=team_id,
                    member_id=team.created_by,
                    role="owner",
                    joined_at=_now_iso(),
                )
            )
        return team_id

    def add_team_member(self, team_id: int, member_id: int, role: str = "member") -> bool:
        """Add a member to a team. Returns False if already a member."""
        if role not in TEAM_ROLES:
            raise ValueError(f"Unknown team role: {role!r}")
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _team_members.insert().values(
                        team_id=team_id, member_id=member_id, role=role, joined_at=_now_iso()
                    )
                )
        except IntegrityError:
            return False
        return True

    def remove_team_member(self, team_id: int, member_id: int) -> bool:
        """Remove a member from a team.

        Export ACL rows naming this member are intentionally left alone; see
        sharing/store.py.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _team_members.delete().where(
                    (_team_members.c.team_id == team_id) & (_team_members.c.member_id == member_id)
                )
            )
        return result.rowcount > 0

    def is_team_member(self, team_id: int, member_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_team_members.c.id).where(
                    (_team_members.c.team_id == team_id) & (_team_members.c.member_id == member_id)
                )
            ).first()
        return row is not None

    def get_team_members(self, team_id: int) -> list[TeamMember]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _team_members.select().where(_team_members.c.team_id == team_id).order_by(_team_members.c.id)
            ).fetchall()
        return [
            TeamMember(team_id=r.team_id, member_id=r.member_id, role=r.role, joined_at=r.joined_at) for r in rows
        ]

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def create_workspace(self, workspace: Workspace) -> int:
        if workspace.type not in WORKSPACE_TYPES:
            raise ValueError(f"Unknown workspace type: {workspace.type!r}")
        with self.engine.begin() as conn:
            result = conn.execute(
                _workspaces.insert().values(
                    name=workspace.name,
                    type=workspace.type,
                    owner_id=workspace.owner_id,
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_workspaces_for_owner(self, owner_type: str, owner_id: int) -> list[Workspace]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _workspaces.select()
                .where((_workspaces.c.type == owner_type) & (_workspaces.c.owner_id == owner_id))
                .order_by(_workspaces.c.workspace_id)
            ).fetchall()
        return [_row_to_workspace(r) for r in rows]

    def check_workspace_access(self, workspace_id: int, member_id: int) -> bool:
        """True if the member owns the personal workspace or belongs to the owning team.

        One query, so the answer reflects a single consistent snapshot.
        """
        team_membership = exists().where(
            (_team_members.c.team_id == _workspaces.c.owner_id) & (_team_members.c.member_id == member_id)
        )
        stmt = select(_workspaces.c.workspace_id).where(
            and_(
                _workspaces.c.workspace_id == workspace_id,
                or_(
                    and_(_workspaces.c.type == "personal", _workspaces.c.owner_id == member_id),
                    and_(_workspaces.c.type == "team", team_membership),
                ),
            )
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return row is not None

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(self, task: Task) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _tasks.insert().values(
                    workspace_id=task.workspace_id,
                    title=task.title,
                    content=task.content,
                    start_time=task.start_time,
                    end_time=task.end_time,
                    status=task.status,
                    created_by=task.created_by,
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def get_task(self, task_id: int) -> Optional[Task]:
        with self.engine.connect() as conn:
            row = conn.execute(_tasks.select().where(_tasks.c.id == task_id)).fetchone()
        return _row_to_task(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_workspace(row) -> Workspace:
    return Workspace(
        workspace_id=row.workspace_id,
        name=row.name,
        type=row.type,
        owner_id=row.owner_id,
        created_at=row.created_at,
    )


def _row_to_task(row) -> Task:
    return Task(
        id=row.id,
        workspace_id=row.workspace_id,
        title=row.title,
        content=row.content,
        start_time=row.start_time,
        end_time=row.end_time,
        status=row.status,
        created_by=row.created_by,
        created_at=row.created_at,
    )
