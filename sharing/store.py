"""
sharing/store.py -- Persistence for task export grants and their access lists.

A grant is a capability: whoever holds the token can exercise it, subject to
the grant's visibility. The token is 32 random bytes from `secrets`, URL-safe
encoded, and is the only thing a public viewer ever presents.

Lifecycle:
  create  -> ACTIVE; the creator is put on the ACL
  revoke  -> sets revoked_at once; the row is never deleted
  expiry  -> computed at read time from expires_at (see sharing.models.export_state)

Mutations are conditional UPDATEs that only match an ACTIVE row, so a grant
that is revoked or expired cannot be edited back to life. They return False
when nothing matched; the route layer turns that into 410.

ACL rows are keyed (export_id, member_id). They are not removed when the
member later leaves the owning team.

Timestamps are ISO 8601 UTC strings. All of them go through _to_iso() so
string comparison in SQL orders them correctly.

Layer rule: no imports from api/, auth/, workspace/, or billing/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, UniqueConstraint, and_, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.config import get_settings
from core.db import make_engine
from sharing.models import VISIBILITIES, TaskExport, parse_timestamp

logger = logging.getLogger("pecal.sharing")

# 32 random bytes -> 43 URL-safe characters
_TOKEN_BYTES = 32

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_exports = Table(
    "task_exports",
    _metadata,
    Column("export_id", Integer, primary_key=True, autoincrement=True),
    Column("task_id", Integer, nullable=False, index=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("visibility", String(20), nullable=False),
    Column("created_by", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32)),
    Column("revoked_at", String(32)),
)

_export_access = Table(
    "task_export_access",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("export_id", Integer, nullable=False),
    Column("member_id", Integer, nullable=False),
    UniqueConstraint("export_id", "member_id", name="uq_export_access_member"),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | str | None) -> str | None:
    """Normalize a timestamp to an ISO 8601 UTC string.

    Raises ValueError for strings that are not ISO 8601.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = parse_timestamp(value)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _check_visibility(visibility: str) -> None:
    if visibility not in VISIBILITIES:
        raise ValueError(f"Invalid visibility: {visibility!r} (expected one of {', '.join(VISIBILITIES)})")


def _active_clause(now_iso: str):
    return and_(
        _exports.c.revoked_at.is_(None),
        or_(_exports.c.expires_at.is_(None), _exports.c.expires_at > now_iso),
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ExportStore:
    """Repository for TaskExport grants.

    Usage:
        store = ExportStore()
        grant = store.create_export(task_id=7, created_by=1, visibility="restricted")
        store.has_access(grant.export_id, member_id=1)  # True -- creator is on the ACL
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def create_export(
        self,
        task_id: int,
        created_by: int,
        visibility: str,
        expires_at: datetime | str | None = None,
    ) -> TaskExport:
        _check_visibility(visibility)
        record = TaskExport(
            task_id=task_id,
            token=secrets.token_urlsafe(_TOKEN_BYTES),
            visibility=visibility,
            created_by=created_by,
            created_at=_now_iso(),
            expires_at=_to_iso(expires_at),
            access_member_ids=[created_by],
        )
        with self.engine.begin() as conn:
            result = conn.execute(
                _exports.insert().values(
                    task_id=record.task_id,
                    token=record.token,
                    visibility=record.visibility,
                    created_by=record.created_by,
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                )
            )
            record.export_id = result.inserted_primary_key[0]
            conn.execute(_export_access.insert().values(export_id=record.export_id, member_id=created_by))
        logger.info("Task %d exported (export_id=%d, %s)", task_id, record.export_id, visibility)
        return record

    def get_by_token(self, token: str) -> TaskExport | None:
        if not token:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_exports.select().where(_exports.c.token == token)).fetchone()
        return _row_to_export(row) if row is not None else None

    def get_by_id(self, export_id: int) -> TaskExport | None:
        with self.engine.connect() as conn:
            row = conn.execute(_exports.select().where(_exports.c.export_id == export_id)).fetchone()
        return _row_to_export(row) if row is not None else None

    def list_for_task(self, task_id: int) -> list[TaskExport]:
        """All grants for a task (any state), newest first, each with its ACL member ids."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _exports.select()
                .where(_exports.c.task_id == task_id)
                .order_by(_exports.c.created_at.desc(), _exports.c.export_id.desc())
            ).fetchall()
            records = [_row_to_export(r) for r in rows]
            if not records:
                return []
            acl_rows = conn.execute(
                select(_export_access.c.export_id, _export_access.c.member_id)
                .where(_export_access.c.export_id.in_([r.export_id for r in records]))
                .order_by(_export_access.c.id)
            ).fetchall()
        by_id = {r.export_id: r for r in records}
        for export_id, member_id in acl_rows:
            by_id[export_id].access_member_ids.append(member_id)
        return records

    # ------------------------------------------------------------------
    # Mutations (ACTIVE grants only)
    # ------------------------------------------------------------------

    def revoke(self, export_id: int) -> bool:
        """Stamp revoked_at. Returns False if the grant is missing or already revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _exports.update()
                .where((_exports.c.export_id == export_id) & _exports.c.revoked_at.is_(None))
                .values(revoked_at=_now_iso())
            )
        if result.rowcount > 0:
            logger.info("Export %d revoked", export_id)
        return result.rowcount > 0

    def set_visibility(self, export_id: int, visibility: str) -> bool:
        _check_visibility(visibility)
        with self.engine.begin() as conn:
            result = conn.execute(
                _exports.update()
                .where((_exports.c.export_id == export_id) & _active_clause(_now_iso()))
                .values(visibility=visibility)
            )
        return result.rowcount > 0

    def set_expiry(self, export_id: int, expires_at: datetime | str | None) -> bool:
        """Change (or clear, with None) the expiry of an active grant."""
        new_value = _to_iso(expires_at)
        with self.engine.begin() as conn:
            result = conn.execute(
                _exports.update()
                .where((_exports.c.export_id == export_id) & _active_clause(_now_iso()))
                .values(expires_at=new_value)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Access list
    # ------------------------------------------------------------------

    def add_acl_member(self, export_id: int, member_id: int) -> bool:
        """Put a member on the ACL. Idempotent: returns False if already present."""
        try:
            with self.engine.begin() as conn:
                conn.execute(_export_access.insert().values(export_id=export_id, member_id=member_id))
        except IntegrityError:
            return False
        return True

    def remove_acl_member(self, export_id: int, member_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _export_access.delete().where(
                    (_export_access.c.export_id == export_id) & (_export_access.c.member_id == member_id)
                )
            )
        return result.rowcount > 0

    def has_access(self, export_id: int, member_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_export_access.c.id).where(
                    (_export_access.c.export_id == export_id) & (_export_access.c.member_id == member_id)
                )
            ).first()
        return row is not None

    def close(self) -> None:
        self.engine.dispose()


def _row_to_export(row) -> TaskExport:
    return TaskExport(
        export_id=row.export_id,
        task_id=row.task_id,
        token=row.token,
        visibility=row.visibility,
        created_by=row.created_by,
        created_at=row.created_at,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
    )
