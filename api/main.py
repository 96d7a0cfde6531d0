"""
api/main.py -- FastAPI application entry point for the Pecal identity and sharing service.

Serves the web, desktop and mobile clients: OAuth login hand-off, session
tokens, task share links, the back-office login, and the PayPal webhook.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  0. ProxyHeadersMiddleware -- trusts X-Forwarded-For only from FORWARDED_ALLOW_IPS
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

There is no SessionMiddleware: OAuth state is a signed token plus a
path-scoped cookie (auth/oauth_state.py), so no server-side session exists.

Lifespan reads Settings once and builds every service from it, so no
component reads the environment on a request path.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.billing import router as billing_router
from api.routes.v1.exports import router as exports_router
from api.routes.v1.owners import router as owners_router
from auth.guard import LoginGuard
from auth.oauth import build_oauth_registry
from auth.oauth_state import OAuthStateService
from auth.store import AuthStore
from auth.tokens import TokenService
from billing.paypal import PayPalClient
from billing.webhooks import WebhookEventStore
from core.config import get_settings
from sharing.store import ExportStore
from workspace.store import WorkspaceStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pecal.api")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build every service from one Settings instance; dispose the stores on shutdown.

    Startup order matters:
      1. Settings first -- a missing SECRET_KEY in production fails here,
         before the server accepts a single request.
      2. Stores second -- each creates its tables on first use of the database.
      3. Services last -- LoginGuard wraps the AuthStore.
    """
    settings = get_settings()
    logger.info("Pecal API starting up (debug=%s)", settings.debug)
    app.state.settings = settings

    app.state.tokens = TokenService.from_settings(settings)
    app.state.oauth_states = OAuthStateService.from_settings(settings)
    logger.info("OAuth callback allow-list loaded (%d entries)", len(app.state.oauth_states.allow_list))
    app.state.oauth = build_oauth_registry(settings)

    app.state.auth_store = AuthStore(settings.database_url)
    app.state.workspaces = WorkspaceStore(settings.database_url)
    app.state.exports = ExportStore(settings.database_url)
    app.state.webhook_events = WebhookEventStore(settings.database_url)
    logger.info("Stores initialized")

    app.state.login_guard = LoginGuard.from_settings(app.state.auth_store, settings)
    app.state.paypal = PayPalClient(settings)

    yield

    # Shutdown
    app.state.auth_store.close()
    app.state.workspaces.close()
    app.state.exports.close()
    app.state.webhook_events.close()
    logger.info("Pecal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Pecal API",
    description="Identity, session and task-sharing access control for the Pecal workspace calendar.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver", "pecal.site", "*.pecal.site"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1", "https://pecal.site"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logs method, path, status and latency. Never logs the query string: the
# OAuth callback and deep-link redirects carry codes and tokens there.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# Outermost: rewrite the client address from X-Forwarded-For only for
# connections from FORWARDED_ALLOW_IPS, before logging, rate limits and the
# admin login guard read it.
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=get_settings().forwarded_allow_ips)


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(exports_router, prefix="/api/v1", tags=["Tasks & Exports"])
app.include_router(owners_router, prefix="/api/v1", tags=["Owners"])
app.include_router(billing_router, prefix="/api/v1", tags=["Billing"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a per-IP rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers and api.access.enforce() raise HTTPException with a dict
    detail {"code", "message"}; that dict becomes the error field as-is.
    Headers (WWW-Authenticate, Retry-After) are carried through.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, current version and database reachability.

    Always 200 while the process is up; a broken database shows as
    components.database == "error" so load balancers can still tell
    "process alive" from "process gone".
    """
    database = "ok" if request.app.state.auth_store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
