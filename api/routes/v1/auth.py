"""
api/routes/v1/auth.py -- Member authentication endpoints (OAuth federation + session tokens).

Routes:
  GET  /api/v1/auth/providers               -- list enabled OAuth providers (public)
  GET  /api/v1/auth/{provider}/start        -- begin the browser hand-off; 302 to the provider
  GET  /api/v1/auth/{provider}/callback     -- provider redirect target; 307 to the client deep link
  POST /api/v1/auth/external/{provider}     -- exchange a native-SDK provider token for a token pair
  POST /api/v1/auth/refresh                 -- refresh token -> new token pair
  GET  /api/v1/auth/me                      -- identity behind the access token (requires auth)
  POST /api/v1/auth/logout                  -- clears the browser session cookie

Security:
  [O1] /start validates ?callback= against the deep-link allow-list BEFORE it
       is signed into the state (auth/oauth_state.py). Nothing unvalidated is
       ever redirected to.
  [O2] The state is bound to an httpOnly cookie scoped to the provider's
       callback path. /callback clears that cookie on EVERY outcome.
  [O3] Callback failures go to the trusted deep link as ?error=... when one
       could be recovered from a valid state; otherwise a plain 400. The
       browser tab running the exchange never becomes an error page for an
       attacker-chosen URL.
  [O4] /start is rate-limited per IP.
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.access import enforce, require_auth
from api.limiter import limiter
from api.models import (
    ExternalLoginRequest,
    MeResponse,
    MemberInfo,
    OAuthProviderInfo,
    RefreshRequest,
    TokenPairResponse,
)
from auth.models import AuthUser, TokenKind, TokenPair
from auth.oauth import (
    ProviderProfile,
    bearer_token,
    build_authorize_url,
    exchange_code,
    fetch_provider_profile,
    get_enabled_providers,
)
from auth.oauth_state import (
    SUPPORTED_PROVIDERS,
    InvalidCallbackError,
    clear_state_cookie,
    set_state_cookie,
    state_cookie_name,
)
from auth.tokens import ACCESS_COOKIE
from core.config import Settings, get_settings

logger = logging.getLogger("pecal.api.auth")

# Auth policy:
# - GET  /api/v1/auth/providers:           public
# - GET  /api/v1/auth/{provider}/start:    public, rate-limited [O4]
# - GET  /api/v1/auth/{provider}/callback: public, state + cookie verified [O2]
# - POST /api/v1/auth/external/{provider}: public, provider token verified by the provider
# - POST /api/v1/auth/refresh:             refresh token only
# - GET  /api/v1/auth/me:                  requires access token (require_auth)
# - POST /api/v1/auth/logout:              public -- clearing a cookie needs no prior auth
router = APIRouter()


def _start_rate_limit() -> str:
    return get_settings().oauth_start_rate_limit


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _provider_client(request: Request, provider: str):
    """Registered Authlib client for provider, or HTTP 404."""
    client = None
    if provider in SUPPORTED_PROVIDERS:
        client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": f"OAuth provider '{provider}' is not configured."},
        )
    return client


def oauth_redirect_uri(settings: Settings, request: Request, provider: str) -> str:
    """The provider-registered redirect URI for this deployment.

    PUBLIC_BASE_URL wins, because behind a proxy request.base_url is the
    internal origin and providers compare redirect URIs byte for byte.
    """
    path = f"/api/v1/auth/{provider}/callback"
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/") + path
    return str(request.base_url).rstrip("/") + path


def _with_query(callback: str, params: dict) -> str:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return f"{callback}?{query}"


def _display_name(profile: ProviderProfile, provider: str) -> str:
    if profile.nickname:
        return profile.nickname
    if profile.email:
        return profile.email.split("@", 1)[0]
    return f"{provider}_user"


def _login_member(request: Request, provider: str, profile: ProviderProfile) -> tuple[AuthUser, TokenPair]:
    """Link the provider identity to a member (created on first login) and issue a pair."""
    member = request.app.state.auth_store.find_or_create_member(
        provider,
        profile.subject,
        email=profile.email,
        nickname=_display_name(profile, provider),
    )
    user = AuthUser(
        member_id=member.member_id,
        nickname=member.nickname or _display_name(profile, provider),
        provider=provider,
        email=member.email,
    )
    return user, request.app.state.tokens.issue_pair(user)


def _pair_response(pair: TokenPair, user: AuthUser) -> JSONResponse:
    resp = JSONResponse(
        content=TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            member=MemberInfo(
                member_id=user.member_id,
                nickname=user.nickname,
                provider=user.provider,
                email=user.email,
            ),
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Provider discovery
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none are configured."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(_settings(request))]


# ---------------------------------------------------------------------------
# Browser hand-off
# ---------------------------------------------------------------------------


@limiter.limit(_start_rate_limit)  # [O4] must be ABOVE @router to preserve FastAPI introspection
@router.get("/auth/{provider}/start")
async def oauth_start(request: Request, provider: str, callback: str = "") -> RedirectResponse:
    """Sign a state for the client's deep link, set the state cookie, redirect to the provider."""
    client = _provider_client(request, provider)
    settings = _settings(request)
    try:
        issued = request.app.state.oauth_states.create_state(provider, callback)  # [O1]
    except InvalidCallbackError as exc:
        logger.warning("Rejected OAuth start for %s: callback not allow-listed", provider)
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_callback", "message": str(exc)},
        ) from exc

    authorize_url = await build_authorize_url(client, oauth_redirect_uri(settings, request, provider), issued.state)
    resp = RedirectResponse(authorize_url, status_code=302)
    set_state_cookie(resp, provider, issued.nonce, settings)  # [O2]
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/{provider}/callback")
async def oauth_callback(
    request: Request,
    provider: str,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
):
    """Finish the code exchange and deliver tokens to the trusted deep link."""
    settings = _settings(request)
    client = _provider_client(request, provider)
    cookie_nonce = request.cookies.get(state_cookie_name(provider))
    callback = request.app.state.oauth_states.verify_state(provider, state, cookie_nonce)

    if callback is None:
        resp = JSONResponse(
            status_code=400,
            content={
                "error": {"code": "invalid_oauth_state", "message": "OAuth state is invalid, expired or not bound to this browser."}
            },
        )
        clear_state_cookie(resp, provider, settings)  # [O2]
        return resp

    def _fail(reason: str) -> RedirectResponse:
        resp = RedirectResponse(_with_query(callback, {"error": reason}), status_code=302)  # [O3]
        clear_state_cookie(resp, provider, settings)
        return resp

    if error:
        logger.info("Provider %s returned OAuth error: %s", provider, error)
        return _fail(error)
    if not code:
        return _fail("missing_code")

    try:
        token = await exchange_code(client, code, oauth_redirect_uri(settings, request, provider))
        profile = await fetch_provider_profile(client, provider, token)
    except ValueError as exc:
        logger.warning("OAuth callback failed for %s: %s", provider, exc)
        return _fail("oauth_failed")

    user, pair = _login_member(request, provider, profile)
    logger.info("Member %d logged in via %s (browser hand-off)", user.member_id, provider)
    resp = RedirectResponse(
        _with_query(
            callback,
            {
                "access_token": pair.access_token,
                "refresh_token": pair.refresh_token,
                "member_id": user.member_id,
                "nickname": user.nickname,
                "provider": provider,
                "email": user.email,
            },
        ),
        status_code=307,
    )
    clear_state_cookie(resp, provider, settings)  # [O2]
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Native SDK token exchange and refresh
# ---------------------------------------------------------------------------


@router.post("/auth/external/{provider}", response_model=TokenPairResponse)
async def external_login(request: Request, provider: str, body: ExternalLoginRequest) -> JSONResponse:
    """Trade an access token obtained by a native provider SDK for a Pecal token pair.

    The provider token is only ever sent back to the provider's own profile
    endpoint; it is the provider, not this server, that vouches for it.
    """
    client = _provider_client(request, provider)
    try:
        profile = await fetch_provider_profile(client, provider, bearer_token(body.access_token))
    except ValueError as exc:
        logger.info("External %s login rejected: %s", provider, exc)
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_provider_token", "message": "The provider did not accept this token."},
        ) from exc

    user, pair = _login_member(request, provider, profile)
    logger.info("Member %d logged in via %s (native SDK)", user.member_id, provider)
    return _pair_response(pair, user)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Issue a fresh pair. Only a refresh token is accepted; an access token is 401."""
    claims = request.app.state.tokens.verify(body.refresh_token, TokenKind.refresh)
    member = request.app.state.auth_store.get_member_by_id(claims.member_id) if claims else None
    if member is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_refresh_token", "message": "Refresh token is invalid or expired."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = AuthUser(
        member_id=member.member_id,
        nickname=member.nickname or claims.nickname,
        provider=member.provider,
        email=member.email,
    )
    return _pair_response(request.app.state.tokens.issue_pair(user), user)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request) -> MeResponse:
    """Return identity information for the presented access credential."""
    ctx = enforce(require_auth(request))
    return MeResponse(
        member_id=ctx.user.member_id,
        nickname=ctx.user.nickname,
        provider=ctx.user.provider,
        email=ctx.user.email,
    )


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the browser session cookie. Bearer tokens simply expire."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(ACCESS_COOKIE)
    return resp
