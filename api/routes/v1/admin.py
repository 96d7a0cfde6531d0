"""
api/routes/v1/admin.py -- Back-office login, protected by the brute-force guard.

Routes:
  POST /api/v1/admin/login    -- password login; sets the admin_token cookie
  POST /api/v1/admin/logout   -- clears the cookie
  GET  /api/v1/admin/me       -- current admin (requires admin cookie)
  POST /api/v1/admin/unlock   -- clear a lockout (super_admin only)

Security:
  [B1] LoginGuard (auth/guard.py) is consulted BEFORE the password is checked.
       A locked (username, address) pair gets 429 + Retry-After without bcrypt
       ever running, so a lockout also caps hashing cost.
  [B2] Every failure is recorded; success deletes the counter.
  [C1] authenticate_admin() provides timing equalization -- use it, never inline.
  [H2] Per-IP slowapi limit on top of the per-account guard.
  [M5] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api.access import client_address
from api.limiter import limiter
from api.models import AdminLoginRequest, AdminLoginResponse, AdminResponse
from auth.dependencies import get_current_admin, require_super_admin
from auth.guard import LoginGuard, normalize_account
from auth.models import AdminAccount
from auth.tokens import ADMIN_COOKIE, authenticate_admin, set_admin_cookie
from core.config import get_settings

logger = logging.getLogger("pecal.api.admin")

router = APIRouter()


class AdminUnlockRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    ip_address: str = Field(min_length=1, max_length=64)


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _admin_response(admin: AdminAccount) -> AdminResponse:
    return AdminResponse(
        admin_id=admin.admin_id,
        username=admin.username,
        name=admin.name,
        email=admin.email,
        role=admin.role,
    )


@limiter.limit(_login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/admin/login", response_model=AdminLoginResponse)
def admin_login(request: Request, body: AdminLoginRequest) -> JSONResponse:
    """Authenticate an operator; set the admin_token cookie.

    Wrong username and wrong password share one error ("bad_credentials").
    """
    guard: LoginGuard = request.app.state.login_guard
    origin = client_address(request)
    username = normalize_account(body.username)

    check = guard.check_allowed(username, origin)  # [B1]
    if not check.allowed:
        resp = JSONResponse(
            status_code=429,
            content={
                "error": {
                    "code": "rate_limited",
                    "message": "Too many failed login attempts. Try again later.",
                }
            },
        )
        resp.headers["Retry-After"] = str(check.retry_after_seconds)
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    auth_store = request.app.state.auth_store
    admin = authenticate_admin(auth_store, username, body.password)  # [C1]
    if admin is None:
        guard.record_failure(username, origin)  # [B2]
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    guard.clear_failures(username, origin)  # [B2]
    auth_store.update_admin_last_login(admin.admin_id)
    settings = request.app.state.settings
    token = request.app.state.tokens.issue_admin(admin)
    logger.info("Admin %r logged in from %s", admin.username, origin)

    resp = JSONResponse(
        content=AdminLoginResponse(
            expires_in=settings.admin_token_expire_seconds,
            admin=_admin_response(admin),
        ).model_dump()
    )
    set_admin_cookie(resp, token, settings)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/admin/logout")
async def admin_logout() -> JSONResponse:
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(ADMIN_COOKIE, path="/")
    return resp


@router.get("/admin/me", response_model=AdminResponse)
def admin_me(admin: AdminAccount = Depends(get_current_admin)) -> AdminResponse:
    return _admin_response(admin)


@router.post("/admin/unlock")
def admin_unlock(
    request: Request,
    body: AdminUnlockRequest,
    admin: AdminAccount = Depends(require_super_admin),
) -> JSONResponse:
    """Lift a lockout before it expires. Same effect as `python main.py unlock`."""
    request.app.state.login_guard.clear_failures(body.username, body.ip_address)
    logger.info("Admin %r cleared the lockout for %r from %s", admin.username, body.username, body.ip_address)
    return JSONResponse(content={"success": True})
