"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the shape.

Layer rule: no imports from api/, workspace/, sharing/, or billing/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TokenKind(str, Enum):
    access = "access"
    refresh = "refresh"


@dataclass(frozen=True)
class AuthUser:
    """The identity carried by a member session credential."""

    member_id: int
    nickname: str
    provider: str  # "google", "kakao"
    email: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    """A verified claim set. Only produced by TokenService.verify()."""

    member_id: int
    nickname: str
    provider: str
    kind: TokenKind
    issued_at: int
    expires_at: int
    email: str | None = None

    def to_user(self) -> AuthUser:
        return AuthUser(
            member_id=self.member_id,
            nickname=self.nickname,
            provider=self.provider,
            email=self.email,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


@dataclass
class Member:
    """A federated end user. (provider, provider_id) is unique."""

    provider: str
    provider_id: str  # provider's stable subject id
    member_id: int | None = None
    nickname: str | None = None
    email: str | None = None
    created_at: str | None = None


@dataclass
class AdminAccount:
    """An operator of the back office. Logs in with a password, never via OAuth.

    username is stored normalized (trimmed, lower-cased) so the brute-force
    guard and the account lookup agree on one key.
    """

    username: str
    hashed_password: str
    admin_id: int | None = None
    name: str | None = None
    email: str | None = None
    role: str = "admin"  # "super_admin", "admin"
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class LoginAttempt:
    """Failure counter for one (username, ip_address) pair."""

    username: str
    ip_address: str
    fail_count: int
    first_failed_at: str | None = None
    last_failed_at: str | None = None
    locked_until: str | None = None
    attempt_id: int | None = None
