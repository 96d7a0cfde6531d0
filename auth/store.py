"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
AuthStore is the repository; _row_to_member / _row_to_admin / _row_to_attempt
are the mappers. Route and service code never touches SQL directly.

Tables:
  members          -- federated end users, UNIQUE(provider, provider_id)
  admin_accounts   -- back-office operators with bcrypt passwords
  login_attempts   -- brute-force counters, UNIQUE(username, ip_address)

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are stored as ISO 8601 UTC strings, matching the rest of the
code base.

Layer rule: no imports from api/, workspace/, sharing/, or billing/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, UniqueConstraint, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import AdminAccount, LoginAttempt, Member
from core.config import get_settings
from core.db import make_engine

logger = logging.getLogger("pecal.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_members = Table(
    "members",
    _metadata,
    Column("member_id", Integer, primary_key=True, autoincrement=True),
    Column("provider", String(30), nullable=False),  # "google", "kakao"
    Column("provider_id", String(255), nullable=False),
    Column("nickname", String(100)),
    Column("email", String(255)),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_id", name="uq_members_provider_subject"),
)

_admins = Table(
    "admin_accounts",
    _metadata,
    Column("admin_id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("name", String(100)),
    Column("email", String(255)),
    Column("role", String(30), nullable=False, server_default="admin"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("attempt_id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("fail_count", Integer, nullable=False, server_default="0"),
    Column("first_failed_at", String(32)),
    Column("last_failed_at", String(32)),
    Column("locked_until", String(32)),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("username", "ip_address", name="uq_login_attempts_user_ip"),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for Member, AdminAccount and LoginAttempt entities.

    Usage:
        store = AuthStore()
        member = store.find_or_create_member("kakao", "123456", "kim@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def get_member_by_id(self, member_id: int) -> Member | None:
        with self.engine.connect() as conn:
            row = conn.execute(_members.select().where(_members.c.member_id == member_id)).fetchone()
        return _row_to_member(row) if row is not None else None

    def get_member_by_provider(self, provider: str, provider_id: str) -> Member | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _members.select().where((_members.c.provider == provider) & (_members.c.provider_id == provider_id))
            ).fetchone()
        return _row_to_member(row) if row is not None else None

    def find_or_create_member(
        self,
        provider: str,
        provider_id: str,
        email: str | None = None,
        nickname: str | None = None,
    ) -> Member:
        """Return the member linked to (provider, provider_id), creating it on first login.

        Two concurrent first logins race on the UNIQUE constraint; the loser
        catches IntegrityError and reads the winner's row.
        """
        existing = self.get_member_by_provider(provider, provider_id)
        if existing is not None:
            return existing
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _members.insert().values(
                        provider=provider,
                        provider_id=provider_id,
                        email=email,
                        nickname=nickname,
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
        except IntegrityError:
            pass
        member = self.get_member_by_provider(provider, provider_id)
        if member is None:
            raise RuntimeError(f"Member {provider}:{provider_id} missing after insert")
        return member

    # ------------------------------------------------------------------
    # Admin accounts
    # ------------------------------------------------------------------

    def create_admin(self, admin: AdminAccount) -> int:
        """Insert a new admin and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _admins.insert().values(
                    username=admin.username,
                    hashed_password=admin.hashed_password,
                    name=admin.name,
                    email=admin.email,
                    role=admin.role,
                    is_active=1 if admin.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_admin_by_username(self, username: str) -> AdminAccount | None:
        """Exact match on the stored (already normalized) username."""
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.username == username)).fetchone()
        return _row_to_admin(row) if row is not None else None

    def get_admin_by_id(self, admin_id: int) -> AdminAccount | None:
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.admin_id == admin_id)).fetchone()
        return _row_to_admin(row) if row is not None else None

    def update_admin_last_login(self, admin_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_admins.update().where(_admins.c.admin_id == admin_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Login attempts (used only by auth.guard.LoginGuard)
    # ------------------------------------------------------------------

    def get_login_attempt(self, username: str, ip_address: str) -> LoginAttempt | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _login_attempts.select().where(
                    (_login_attempts.c.username == username) & (_login_attempts.c.ip_address == ip_address)
                )
            ).fetchone()
        return _row_to_attempt(row) if row is not None else None

    def insert_login_attempt(self, attempt: LoginAttempt) -> bool:
        """Insert the first failure row. Returns False if another request inserted it first."""
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _login_attempts.insert().values(
                        username=attempt.username,
                        ip_address=attempt.ip_address,
                        fail_count=attempt.fail_count,
                        first_failed_at=attempt.first_failed_at,
                        last_failed_at=attempt.last_failed_at,
                        locked_until=attempt.locked_until,
                        updated_at=_now_iso(),
                    )
                )
                conn.commit()
        except IntegrityError:
            return False
        return True

    def update_login_attempt(self, attempt: LoginAttempt) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _login_attempts.update()
                .where(
                    (_login_attempts.c.username == attempt.username)
                    & (_login_attempts.c.ip_address == attempt.ip_address)
                )
                .values(
                    fail_count=attempt.fail_count,
                    first_failed_at=attempt.first_failed_at,
                    last_failed_at=attempt.last_failed_at,
                    locked_until=attempt.locked_until,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()

    def delete_login_attempt(self, username: str, ip_address: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _login_attempts.delete().where(
                    (_login_attempts.c.username == username) & (_login_attempts.c.ip_address == ip_address)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_member(row) -> Member:
    return Member(
        member_id=row.member_id,
        provider=row.provider,
        provider_id=row.provider_id,
        nickname=row.nickname,
        email=row.email,
        created_at=row.created_at,
    )


def _row_to_admin(row) -> AdminAccount:
    return AdminAccount(
        admin_id=row.admin_id,
        username=row.username,
        hashed_password=row.hashed_password,
        name=row.name,
        email=row.email,
        role=row.role,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        attempt_id=row.attempt_id,
        username=row.username,
        ip_address=row.ip_address,
        fail_count=row.fail_count,
        first_failed_at=row.first_failed_at,
        last_failed_at=row.last_failed_at,
        locked_until=row.locked_until,
    )
