"""
auth/dependencies.py -- FastAPI Depends() helpers for back-office (admin) authentication.

Admin sessions are carried only in the "admin_token" httpOnly cookie. A member
access token is never accepted here, and an admin token is never accepted by
the member resolver in api/access.py.

try_get_current_admin() is the soft variant (returns None on failure).
get_current_admin() wraps it and raises HTTP 401 if unauthenticated.
require_super_admin() wraps get_current_admin() and raises HTTP 403 otherwise.

Layer rule: no imports from api/, workspace/, sharing/, or billing/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AdminAccount
from auth.tokens import ADMIN_COOKIE


def try_get_current_admin(request: Request) -> AdminAccount | None:
    """Resolve the admin behind the admin_token cookie. Never raises."""
    token = request.cookies.get(ADMIN_COOKIE)
    if not token:
        return None
    payload = request.app.state.tokens.verify_admin(token)
    if payload is None:
        return None
    admin = request.app.state.auth_store.get_admin_by_id(payload["admin_id"])
    if admin is None or not admin.is_active:
        return None
    return admin


def get_current_admin(request: Request) -> AdminAccount:
    """Require an admin session. Raises HTTP 401 if there is none.

    Use as a FastAPI dependency:
        @router.get("/admin/me")
        async def route(admin: AdminAccount = Depends(get_current_admin)): ...
    """
    admin = try_get_current_admin(request)
    if admin is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Admin authentication required."},
        )
    return admin


def require_super_admin(request: Request) -> AdminAccount:
    admin = get_current_admin(request)
    if admin.role != "super_admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Super admin access required."},
        )
    return admin
