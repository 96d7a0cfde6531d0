"""
auth/oauth.py -- Authlib OAuth provider registry and profile extraction.

Providers are registered only when both client ID and secret are configured.
The registry is built once in the lifespan from the injected Settings and
stored on app.state.oauth, so tests can swap it for a mock.

Authlib's built-in state handling (SessionMiddleware) is not
used: the flow must survive a hand-off between a desktop/mobile app and a
system browser, so state is the signed, cookie-bound token produced by
auth.oauth_state. This module only talks to the providers:
  - build the authorize URL around our own state,
  - exchange the authorization code for a provider token,
  - turn a provider token into a ProviderProfile.

Security notes:
  [H1] Google: the email is only accepted when email_verified is True.
       Kakao: the email is optional (users may decline the scope); identity
       is the numeric Kakao user id, never the email.

Supported providers:
  google -- Authorization code flow; OIDC discovery.
  kakao  -- Authorization code flow; static endpoints; client_secret_post.

Layer rule: no imports from api/, workspace/, sharing/, or billing/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.starlette_client import OAuth

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("pecal.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
KAKAO_AUTHORIZE_URL = "https://kauth.kakao.com/oauth/authorize"
KAKAO_TOKEN_URL = "https://kauth.kakao.com/oauth/token"  # noqa: S105 -- URL, not a password
KAKAO_API_BASE_URL = "https://kapi.kakao.com/"

_LABELS = {"google": "Google", "kakao": "Kakao"}


@dataclass(frozen=True)
class ProviderProfile:
    subject: str  # provider's stable user id
    email: str | None
    nickname: str | None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    oauth = OAuth()

    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if settings.kakao_client_id and settings.kakao_client_secret:
        oauth.register(
            name="kakao",
            client_id=settings.kakao_client_id,
            client_secret=settings.kakao_client_secret,
            authorize_url=KAKAO_AUTHORIZE_URL,
            access_token_url=KAKAO_TOKEN_URL,
            api_base_url=KAKAO_API_BASE_URL,
            client_kwargs={"token_endpoint_auth_method": "client_secret_post"},
        )
        logger.info("Kakao OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    providers: list[dict] = []
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": _LABELS["google"]})
    if settings.kakao_client_id and settings.kakao_client_secret:
        providers.append({"name": "kakao", "label": _LABELS["kakao"]})
    return providers


# ---------------------------------------------------------------------------
# Provider calls
# ---------------------------------------------------------------------------


async def build_authorize_url(client, redirect_uri: str, state: str) -> str:
    """Return the provider authorize URL carrying our signed state."""
    rv = await client.create_authorization_url(redirect_uri, state=state)
    return rv["url"]


async def exchange_code(client, code: str, redirect_uri: str) -> dict:
    """Exchange an authorization code for a provider token.

    redirect_uri must be byte-identical to the one sent to the authorize
    endpoint. Raises ValueError on any provider or transport failure.
    """
    try:
        return await client.fetch_access_token(redirect_uri=redirect_uri, code=code)
    except (AuthlibBaseError, httpx.HTTPError) as exc:
        raise ValueError(f"Token exchange failed: {exc}") from exc


async def fetch_provider_profile(client, provider: str, token: dict) -> ProviderProfile:
    """Normalize a provider token into a ProviderProfile.

    Raises:
        ValueError: unknown provider, provider rejected the token, or the
            response lacks a stable subject (or, for Google, a verified email).
    """
    try:
        if provider == "kakao":
            return await _get_kakao_profile(client, token)
        if provider == "google":
            return await _get_google_profile(client, token)
    except (AuthlibBaseError, httpx.HTTPError) as exc:
        raise ValueError(f"{provider} profile request failed: {exc}") from exc
    raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_kakao_profile(client, token: dict) -> ProviderProfile:
    resp = await client.get("v2/user/me", token=token)
    resp.raise_for_status()
    data = resp.json()
    if not data.get("id"):
        raise ValueError("kakao OAuth: user id missing from profile response")
    account = data.get("kakao_account") or {}
    profile = account.get("profile") or {}
    return ProviderProfile(
        subject=str(data["id"]),
        email=account.get("email"),
        nickname=profile.get("nickname"),
    )


async def _get_google_profile(client, token: dict) -> ProviderProfile:
    userinfo = await client.userinfo(token=token)
    if not userinfo.get("email_verified", False):
        raise ValueError(
            "google OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )
    subject = userinfo.get("sub")
    email = userinfo.get("email")
    if not subject or not email:
        raise ValueError("google OAuth: missing email or sub claim in userinfo")
    return ProviderProfile(subject=str(subject), email=email, nickname=userinfo.get("name"))


def bearer_token(access_token: str) -> dict:
    """Wrap a raw provider access token (from a native SDK login) in Authlib's token shape."""
    return {"access_token": access_token, "token_type": "Bearer"}
