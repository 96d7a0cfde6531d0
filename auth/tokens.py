"""
auth/tokens.py -- Session credentials, admin credentials, and password hashing.

Security design decisions:
  JWT: python-jose with HS256 over a single server-held secret. Member
       credentials come in two kinds, "access" (1 hour) and "refresh" (7 days),
       recorded in the "type" claim. verify() takes the expected kind as a
       required argument -- a verifier that ignores the kind would let a
       week-long refresh token stand in for an access token.

  Fail closed: verify() returns None on any failure (bad signature, malformed
       token, missing claim, wrong kind, expired). Expired and forged are
       indistinguishable to the caller so the API cannot be used
       as an oracle. Route layer turns None into 401.

  Admin credentials: a separate claim set (type="admin") in a separate cookie.
       Neither verifier accepts the other's tokens.

  Passwords: bcrypt for admin accounts. The _DUMMY_HASH constant enables
       timing equalization in authenticate_admin() so response time does not
       reveal whether an admin username exists [C1].

  Secret: injected via Settings. TokenService never reads the environment.

Layer rule: no imports from api/, workspace/, sharing/, or billing/. Import
from core/ is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import AdminAccount, AuthUser, TokenClaims, TokenKind, TokenPair

if TYPE_CHECKING:
    from auth.store import AuthStore
    from core.config import Settings

logger = logging.getLogger("pecal.auth")

ALGORITHM = "HS256"
ADMIN_TOKEN_TYPE = "admin"

ACCESS_COOKIE = "access_token"
ADMIN_COOKIE = "admin_token"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes; the API layer caps passwords at 128
    characters, and admin passwords are operator-chosen.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB, or a password bcrypt refuses outright.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("pecal_timing_dummy")


def authenticate_admin(store: AuthStore, username: str, password: str) -> AdminAccount | None:
    """Check an admin username/password with timing equalization.

    Always runs bcrypt whether or not the account exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the AdminAccount on success, None on any failure. The caller is
    responsible for the brute-force guard around this call.
    """
    admin = store.get_admin_by_username(username)
    if admin is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, admin.hashed_password):
        return None
    if not admin.is_active:
        return None
    return admin


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies signed, expiring credentials.

    Usage:
        tokens = TokenService.from_settings(get_settings())
        pair = tokens.issue_pair(AuthUser(member_id=1, nickname="kim", provider="kakao"))
        claims = tokens.verify(pair.access_token, TokenKind.access)
    """

    def __init__(
        self,
        secret_key: str,
        access_ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        admin_ttl_seconds: int = 24 * 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenService requires a signing secret.")
        self._secret = secret_key
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.admin_ttl_seconds = admin_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenService:
        return cls(
            secret_key=settings.secret_key,
            access_ttl_seconds=settings.access_token_expire_seconds,
            refresh_ttl_seconds=settings.refresh_token_expire_seconds,
            admin_ttl_seconds=settings.admin_token_expire_seconds,
        )

    # ------------------------------------------------------------------
    # Member credentials
    # ------------------------------------------------------------------

    def issue_access(self, user: AuthUser) -> str:
        return self._issue(user, TokenKind.access, self.access_ttl_seconds)

    def issue_refresh(self, user: AuthUser) -> str:
        return self._issue(user, TokenKind.refresh, self.refresh_ttl_seconds)

    def issue_pair(self, user: AuthUser) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access(user),
            refresh_token=self.issue_refresh(user),
            expires_in=self.access_ttl_seconds,
        )

    def verify(self, token: str | None, kind: TokenKind) -> TokenClaims | None:
        """Decode and verify a member credential of the given kind.

        Returns None on any failure. Never raises.
        """
        payload = self._decode(token)
        if payload is None or payload.get("type") != kind.value:
            return None

        member_id = payload.get("member_id")
        nickname = payload.get("nickname")
        provider = payload.get("provider")
        email = payload.get("email")
        if not isinstance(member_id, int) or isinstance(member_id, bool):
            return None
        if not isinstance(nickname, str) or not isinstance(provider, str):
            return None
        if email is not None and not isinstance(email, str):
            return None

        return TokenClaims(
            member_id=member_id,
            nickname=nickname,
            provider=provider,
            email=email,
            kind=kind,
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )

    # ------------------------------------------------------------------
    # Admin credentials
    # ------------------------------------------------------------------

    def issue_admin(self, admin: AdminAccount) -> str:
        now = self._clock()
        payload = {
            "sub": admin.username,
            "admin_id": admin.admin_id,
            "role": admin.role,
            "type": ADMIN_TOKEN_TYPE,
            "iat": now,
            "exp": now + timedelta(seconds=self.admin_ttl_seconds),
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify_admin(self, token: str | None) -> dict | None:
        """Return the admin payload dict, or None for anything that is not a valid admin token."""
        payload = self._decode(token)
        if payload is None or payload.get("type") != ADMIN_TOKEN_TYPE:
            return None
        if not isinstance(payload.get("admin_id"), int) or "role" not in payload:
            return None
        return payload

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue(self, user: AuthUser, kind: TokenKind, ttl_seconds: int) -> str:
        now = self._clock()
        payload = {
            "sub": str(user.member_id),
            "member_id": user.member_id,
            "nickname": user.nickname,
            "provider": user.provider,
            "email": user.email,
            "type": kind.value,
            "iat": now,
            "exp": now + timedelta(seconds=ttl_seconds),
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def _decode(self, token: str | None) -> dict | None:
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except JWTError:
            return None
        if "exp" not in payload:
            return None
        return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, settings: Settings) -> None:
    """Write the member access token as an httpOnly cookie (browser fallback credential).

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the access token lifetime so both expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.access_token_expire_seconds,
    )


def set_admin_cookie(response, token: str, settings: Settings) -> None:
    response.set_cookie(
        ADMIN_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.admin_token_expire_seconds,
        path="/",
    )
