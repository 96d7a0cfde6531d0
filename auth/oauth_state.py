"""
auth/oauth_state.py -- CSRF-resistant OAuth state for browser, desktop and mobile clients.

The desktop and mobile apps cannot receive the provider redirect themselves:
providers only accept the registered HTTPS callback. So the app opens
/auth/<provider>/start?callback=<deep link> in a browser, the server runs the
code exchange, and finally hands tokens back to the deep link. The deep link
has to survive the round trip through the provider, and nobody else may be
able to choose it.

Two separate proofs:
  1. The state token. A short-lived HS256 JWT {type, provider, callback,
     nonce_hash}. It proves the server itself chose (and allow-listed) the
     callback, and it binds the flow to one provider. Stateless -- no
     server-side session store.
  2. The state cookie. httpOnly, scoped to the provider's callback path,
     holding the raw nonce whose SHA-256 is inside the token. It proves the
     redemption happens in the same browser that started the flow
     (double-submit defense). The callback clears it on every terminal
     outcome, so a captured state parameter alone cannot be replayed.

The allow-list check runs BEFORE a callback is ever signed. Signing an
unvalidated callback would turn the OAuth flow into an open redirect that
delivers fresh tokens to an attacker-chosen URL.

Cookie binding and signature checks live in separate functions so the
binding step can be swapped (e.g. an Origin check) without touching the
signature logic.

Layer rule: no imports from api/, workspace/, sharing/, or billing/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from jose import JWTError, jwt

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("pecal.auth.oauth_state")

ALGORITHM = "HS256"
STATE_TYPE = "oauth_state"
STATE_COOKIE_PREFIX = "oauth_state_"
SUPPORTED_PROVIDERS: frozenset[str] = frozenset({"google", "kakao"})

# 24 random bytes -> 32 URL-safe characters
_NONCE_BYTES = 24


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidCallbackError(ValueError):
    """Raised when a caller asks to sign a callback outside the allow-list."""


@dataclass(frozen=True)
class OAuthState:
    state: str  # signed token, travels through the provider as ?state=
    nonce: str  # raw cookie value, never leaves the browser that started the flow


# ---------------------------------------------------------------------------
# Callback allow-list
# ---------------------------------------------------------------------------


def normalize_callback(raw: str | None) -> str | None:
    """Normalize a client deep link to scheme://host/path, or None if unacceptable.

    Rejected:
      - http:// and https:// (those are web origins, not client deep links)
      - anything with embedded credentials (user:pass@host)
      - anything without a scheme or host, or that fails to parse
    Query string and fragment are dropped.
    """
    if not raw or not isinstance(raw, str):
        return None
    try:
        parts = urlsplit(raw.strip())
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if not scheme or scheme in ("http", "https"):
        return None
    if "@" in parts.netloc:
        return None
    if not parts.netloc:
        return None
    return f"{scheme}://{parts.netloc}{parts.path}"


class CallbackAllowList:
    """Static set of normalized deep links. Comparison is exact string match."""

    def __init__(self, callbacks: Iterable[str]) -> None:
        allowed: set[str] = set()
        for raw in callbacks:
            normalized = normalize_callback(raw)
            if normalized:
                allowed.add(normalized)
            else:
                logger.warning("Ignoring unusable deep link in allow-list: %r", raw)
        self._allowed = frozenset(allowed)

    @classmethod
    def from_settings(cls, settings: Settings) -> CallbackAllowList:
        return cls(settings.deeplink_callbacks)

    def is_allowed(self, raw: str | None) -> bool:
        normalized = normalize_callback(raw)
        return normalized is not None and normalized in self._allowed

    is_allowed_callback = is_allowed

    def __contains__(self, raw: object) -> bool:
        return isinstance(raw, str) and self.is_allowed(raw)

    def __len__(self) -> int:
        return len(self._allowed)


# ---------------------------------------------------------------------------
# Cookie binding
# ---------------------------------------------------------------------------


def hash_nonce(nonce: str) -> str:
    return hashlib.sha256(nonce.encode("utf-8")).hexdigest()


def nonce_matches(nonce_hash: str, cookie_nonce: str | None) -> bool:
    """Return True if the cookie nonce hashes to the value signed into the state."""
    if not cookie_nonce:
        return False
    return hmac.compare_digest(hash_nonce(cookie_nonce), nonce_hash)


def state_cookie_name(provider: str) -> str:
    return f"{STATE_COOKIE_PREFIX}{provider}"


def state_cookie_path(provider: str) -> str:
    """Cookie is only sent to the provider's own callback route."""
    return f"/api/v1/auth/{provider}/callback"


def set_state_cookie(response, provider: str, nonce: str, settings: Settings) -> None:
    response.set_cookie(
        state_cookie_name(provider),
        value=nonce,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        path=state_cookie_path(provider),
        max_age=settings.oauth_state_ttl_seconds,
    )


def clear_state_cookie(response, provider: str, settings: Settings) -> None:
    response.set_cookie(
        state_cookie_name(provider),
        value="",
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        path=state_cookie_path(provider),
        max_age=0,
    )


# ---------------------------------------------------------------------------
# State service
# ---------------------------------------------------------------------------


class OAuthStateService:
    """Creates and verifies provider-scoped, cookie-bound OAuth state tokens.

    Usage:
        states = OAuthStateService.from_settings(settings)
        issued = states.create_state("kakao", "deskcal://auth/callback")
        # set issued.nonce as the state cookie, pass issued.state to the provider
        callback = states.verify_state("kakao", state_param, cookie_value)
    """

    def __init__(
        self,
        secret_key: str,
        allow_list: CallbackAllowList,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("OAuthStateService requires a signing secret.")
        self._secret = secret_key
        self.allow_list = allow_list
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> OAuthStateService:
        return cls(
            secret_key=settings.secret_key,
            allow_list=CallbackAllowList.from_settings(settings),
            ttl_seconds=settings.oauth_state_ttl_seconds,
        )

    def create_state(self, provider: str, callback: str) -> OAuthState:
        """Sign a state for an allow-listed callback.

        Raises:
            InvalidCallbackError: unknown provider, or callback not allow-listed.
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise InvalidCallbackError(f"Unsupported OAuth provider: {provider!r}")
        normalized = normalize_callback(callback)
        if normalized is None or not self.allow_list.is_allowed(normalized):
            raise InvalidCallbackError("OAuth callback is not in the allow-list.")

        nonce = secrets.token_urlsafe(_NONCE_BYTES)
        now = self._clock()
        token = jwt.encode(
            {
                "type": STATE_TYPE,
                "provider": provider,
                "callback": normalized,
                "nonce_hash": hash_nonce(nonce),
                "iat": now,
                "exp": now + timedelta(seconds=self.ttl_seconds),
            },
            self._secret,
            algorithm=ALGORITHM,
        )
        return OAuthState(state=token, nonce=nonce)

    def verify_state(self, provider: str, state: str | None, cookie_nonce: str | None) -> str | None:
        """Return the trusted callback for a valid, cookie-bound state, else None.

        Every state minted by create_state() is cookie-bound, so a missing
        cookie (already cleared, different browser) always fails.
        """
        payload = self.decode_state(provider, state)
        if payload is None:
            return None
        if not nonce_matches(payload["nonce_hash"], cookie_nonce):
            logger.warning("OAuth state cookie missing or mismatched for provider %r", provider)
            return None
        return payload["callback"]

    def decode_state(self, provider: str, state: str | None) -> dict | None:
        """Signature, expiry, type, provider and allow-list checks -- no cookie involved."""
        if not state or not isinstance(state, str):
            return None
        try:
            payload = jwt.decode(state, self._secret, algorithms=[ALGORITHM])
        except JWTError:
            return None
        if payload.get("type") != STATE_TYPE:
            return None
        if payload.get("provider") != provider:
            return None
        callback = payload.get("callback")
        if not isinstance(callback, str) or not self.allow_list.is_allowed(callback):
            return None
        if not isinstance(payload.get("nonce_hash"), str):
            return None
        return payload
