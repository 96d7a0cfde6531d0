"""
sharing/models.py -- Task export grants (capability tokens) and their lifecycle state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

VISIBILITIES: tuple[str, ...] = ("public", "restricted")


class ExportState(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass
class TaskExport:
    """A shareable grant on one task.

    public     -- anyone holding the token may read the task
    restricted -- the bearer must also be authenticated and on the ACL
    """

    task_id: int
    token: str
    visibility: str
    created_by: int
    export_id: int | None = None
    created_at: str = ""
    expires_at: str | None = None  # ISO 8601 UTC; None = never expires
    revoked_at: str | None = None  # set once, never cleared
    access_member_ids: list[int] = field(default_factory=list)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse ISO 8601, including a trailing "Z"; naive values are taken as UTC.

    Raises ValueError for anything else.
    """
    if value is None:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def export_state(record: TaskExport, now: datetime | None = None) -> ExportState:
    """Derive the lifecycle state at read time.

    Revocation wins over expiry. A grant expiring exactly at `now` is expired.
    """
    if record.revoked_at:
        return ExportState.REVOKED
    expires_at = parse_timestamp(record.expires_at)
    if expires_at is not None and expires_at <= (now or datetime.now(timezone.utc)):
        return ExportState.EXPIRED
    return ExportState.ACTIVE
