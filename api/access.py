"""
api/access.py -- Authorization resolver for member-facing routes.

Every protected route calls exactly ONE require_* check and hands its result
to enforce(). Each check returns either a context object or a core.errors.Denial;
none of them raise, so the order of checks for a resource is decided here and
only here:

  existence -> revocation/expiry -> visibility -> membership

Two different disclosure policies:
  require_task_access         a non-member gets NotFound, exactly like a
                              missing task, so task ids cannot be probed.
  require_export_access_by_id a non-member gets Forbidden, distinct from
                              NotFound; an export's lifecycle is not sensitive.

Usage:
    @router.get("/tasks/{task_id}")
    def get_task(request: Request, task_id: int):
        ctx = enforce(require_task_access(request, task_id))
        return ctx.task
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TypeVar, Union

from fastapi import HTTPException, Request

from auth.models import AuthUser, TokenKind
from auth.tokens import ACCESS_COOKIE
from core import errors
from core.errors import Denial
from sharing.models import ExportState, TaskExport, export_state
from workspace.models import Task

logger = logging.getLogger("pecal.api.access")

T = TypeVar("T")

OWNER_TYPES = ("personal", "team")


# ---------------------------------------------------------------------------
# Resolved contexts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthContext:
    user: AuthUser


@dataclass(frozen=True)
class TaskContext:
    user: AuthUser
    task: Task


@dataclass(frozen=True)
class ExportTokenContext:
    user: AuthUser | None  # None for a public grant consumed anonymously
    export: TaskExport


@dataclass(frozen=True)
class ExportManageContext:
    user: AuthUser
    export: TaskExport
    task_id: int
    workspace_id: int


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        return auth_header[7:].strip() or None
    return None


def authenticate(request: Request) -> AuthUser | None:
    """Resolve the member behind a request, or None.

    Bearer access token first (desktop and mobile clients), then the
    access_token cookie (browsers). A refresh token is never accepted here.
    """
    tokens = request.app.state.tokens
    for candidate in (_bearer_token(request), request.cookies.get(ACCESS_COOKIE)):
        if not candidate:
            continue
        claims = tokens.verify(candidate, TokenKind.access)
        if claims is not None:
            return claims.to_user()
    return None


def client_address(request: Request) -> str:
    """Socket peer address, or "unknown".

    Forwarding headers are never read here. Behind a reverse proxy, uvicorn's
    ProxyHeadersMiddleware rewrites the peer from X-Forwarded-For, but only
    when the connection comes from FORWARDED_ALLOW_IPS.
    """
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def require_auth(request: Request) -> AuthContext | Denial:
    user = authenticate(request)
    if user is None:
        return errors.unauthorized()
    return AuthContext(user=user)


def require_team_membership(request: Request, team_id: int) -> AuthContext | Denial:
    auth = require_auth(request)
    if isinstance(auth, Denial):
        return auth
    if not request.app.state.workspaces.is_team_member(team_id, auth.user.member_id):
        return errors.forbidden()
    return auth


def require_workspace_access(request: Request, workspace_id: int) -> AuthContext | Denial:
    auth = require_auth(request)
    if isinstance(auth, Denial):
        return auth
    if not request.app.state.workspaces.check_workspace_access(workspace_id, auth.user.member_id):
        return errors.forbidden()
    return auth


def require_owner_access(request: Request, owner_type: str, owner_id: int) -> AuthContext | Denial:
    """personal -> identity must be the owner; team -> identity must be a team member."""
    if owner_type == "personal":
        auth = require_auth(request)
        if isinstance(auth, Denial):
            return auth
        if auth.user.member_id != owner_id:
            return errors.forbidden()
        return auth
    if owner_type == "team":
        return require_team_membership(request, owner_id)
    return errors.invalid(f"Unknown owner type: {owner_type!r}")


def require_task_access(request: Request, task_id: int) -> TaskContext | Denial:
    auth = require_auth(request)
    if isinstance(auth, Denial):
        return auth
    workspaces = request.app.state.workspaces
    task = workspaces.get_task(task_id)
    if task is None:
        return errors.not_found("Task not found.")
    if not workspaces.check_workspace_access(task.workspace_id, auth.user.member_id):
        # Same answer as a missing task: existence is not disclosed to non-members.
        return errors.not_found("Task not found.")
    return TaskContext(user=auth.user, task=task)


def require_export_access_by_token(request: Request, token: str) -> ExportTokenContext | Denial:
    exports = request.app.state.exports
    record = exports.get_by_token(token)
    if record is None:
        return errors.not_found("Export not found.")

    state = export_state(record, datetime.now(timezone.utc))
    if state is ExportState.REVOKED:
        return errors.gone("Export revoked.")
    if state is ExportState.EXPIRED:
        return errors.gone("Export expired.")

    if record.visibility == "restricted":
        auth = require_auth(request)
        if isinstance(auth, Denial):
            return auth
        if not exports.has_access(record.export_id, auth.user.member_id):
            return errors.forbidden()
        return ExportTokenContext(user=auth.user, export=record)

    return ExportTokenContext(user=None, export=record)


def require_export_access_by_id(request: Request, export_id: int) -> ExportManageContext | Denial:
    auth = require_auth(request)
    if isinstance(auth, Denial):
        return auth
    record = request.app.state.exports.get_by_id(export_id)
    if record is None:
        return errors.not_found("Export not found.")
    workspaces = request.app.state.workspaces
    task = workspaces.get_task(record.task_id)
    if task is None:
        return errors.not_found("Export not found.")
    if not workspaces.check_workspace_access(task.workspace_id, auth.user.member_id):
        return errors.forbidden()
    return ExportManageContext(user=auth.user, export=record, task_id=task.id, workspace_id=task.workspace_id)


# ---------------------------------------------------------------------------
# Enforcement
# ---------------------------------------------------------------------------


def enforce(outcome: Union[T, Denial]) -> T:
    """Return the resolved context, or raise the Denial as an HTTPException.

    The detail dict is rendered as {"error": {...}} by the HTTPException
    handler in api/main.py.
    """
    if isinstance(outcome, Denial):
        headers = {"WWW-Authenticate": "Bearer"} if outcome.code is errors.ErrorCode.unauthorized else None
        raise HTTPException(status_code=outcome.status_code, detail=outcome.as_detail(), headers=headers)
    return outcome
