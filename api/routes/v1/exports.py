"""
api/routes/v1/exports.py -- Task read access and task export (share link) management.

Routes:
  GET    /api/v1/tasks/{task_id}                           -- read a task (workspace access)
  POST   /api/v1/tasks/{task_id}/export                    -- create a share grant
  GET    /api/v1/tasks/{task_id}/exports                   -- list grants for a task
  GET    /api/v1/exports/tasks/{token}                     -- consume a grant (token is the credential)
  PATCH  /api/v1/exports/tasks/id/{export_id}              -- visibility / expiry / revoke
  POST   /api/v1/exports/tasks/id/{export_id}/access       -- add a member to the ACL
  DELETE /api/v1/exports/tasks/id/{export_id}/access       -- remove a member from the ACL

Each handler makes exactly one api.access check; see that module for the
order of checks and for why tasks answer 404 where exports answer 403.

A revoked or expired grant is read-only history: every mutation on it is 410.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from api.access import (
    enforce,
    require_export_access_by_id,
    require_export_access_by_token,
    require_task_access,
)
from api.models import (
    ExportAccessRequest,
    ExportCreate,
    ExportCreatedResponse,
    ExportPatch,
    ExportResponse,
    SharedTaskResponse,
    SuccessResponse,
    TaskResponse,
)
from sharing.models import ExportState, export_state

logger = logging.getLogger("pecal.api.exports")

router = APIRouter()


def _gone(message: str = "Export is revoked or expired.") -> HTTPException:
    return HTTPException(status_code=410, detail={"code": "gone", "message": message})


def _invalid(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "invalid", "message": message})


def _share_path(token: str) -> str:
    return f"/api/v1/exports/tasks/{token}"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}", response_model=TaskResponse)
def get_task(request: Request, task_id: int) -> TaskResponse:
    ctx = enforce(require_task_access(request, task_id))
    return TaskResponse.from_task(ctx.task)


@router.post("/tasks/{task_id}/export", response_model=ExportCreatedResponse, status_code=201)
def create_export(request: Request, task_id: int, body: ExportCreate) -> ExportCreatedResponse:
    """Create a share grant. The raw token is returned here and never listed again."""
    ctx = enforce(require_task_access(request, task_id))
    try:
        record = request.app.state.exports.create_export(
            task_id=ctx.task.id,
            created_by=ctx.user.member_id,
            visibility=body.visibility.value,
            expires_at=body.expires_at,
        )
    except ValueError as exc:
        raise _invalid(str(exc)) from exc

    settings = request.app.state.settings
    base = settings.public_base_url.rstrip("/") if settings.public_base_url else str(request.base_url).rstrip("/")
    path = _share_path(record.token)
    return ExportCreatedResponse(
        export_id=record.export_id,
        token=record.token,
        path=path,
        url=base + path,
        visibility=record.visibility,
        expires_at=record.expires_at,
    )


@router.get("/tasks/{task_id}/exports", response_model=list[ExportResponse])
def list_exports(request: Request, task_id: int) -> list[ExportResponse]:
    ctx = enforce(require_task_access(request, task_id))
    return [ExportResponse.from_export(r) for r in request.app.state.exports.list_for_task(ctx.task.id)]


# ---------------------------------------------------------------------------
# Consumption
# ---------------------------------------------------------------------------


@router.get("/exports/tasks/{token}", response_model=SharedTaskResponse)
def read_shared_task(request: Request, token: str) -> SharedTaskResponse:
    """The token is the credential. Restricted grants also need a session on the ACL."""
    ctx = enforce(require_export_access_by_token(request, token))
    task = request.app.state.workspaces.get_task(ctx.export.task_id)
    if task is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Task not found."})
    return SharedTaskResponse(
        visibility=ctx.export.visibility,
        expires_at=ctx.export.expires_at,
        task=TaskResponse.from_task(task),
    )


# ---------------------------------------------------------------------------
# Management
# ---------------------------------------------------------------------------


@router.patch("/exports/tasks/id/{export_id}")
def update_export(request: Request, export_id: int, body: ExportPatch) -> JSONResponse:
    ctx = enforce(require_export_access_by_id(request, export_id))
    exports = request.app.state.exports

    if body.revoke:
        if not exports.revoke(export_id):
            raise _gone("Export is already revoked.")
        logger.info("Member %d revoked export %d", ctx.user.member_id, export_id)
        return JSONResponse(content={"success": True, "revoked": True})

    expiry_given = "expires_at" in body.model_fields_set
    if body.visibility is None and not expiry_given:
        raise _invalid("No fields to update.")
    if export_state(ctx.export) is not ExportState.ACTIVE:
        raise _gone()

    if body.visibility is not None and not exports.set_visibility(export_id, body.visibility.value):
        raise _gone()
    if expiry_given:
        if not exports.set_expiry(export_id, body.expires_at):
            raise _gone()
    return JSONResponse(content={"success": True})


@router.post("/exports/tasks/id/{export_id}/access", response_model=SuccessResponse)
def add_export_access(request: Request, export_id: int, body: ExportAccessRequest) -> SuccessResponse:
    """Share a restricted grant with another member of the same workspace."""
    ctx = enforce(require_export_access_by_id(request, export_id))
    if export_state(ctx.export) is not ExportState.ACTIVE:
        raise _gone()
    if request.app.state.auth_store.get_member_by_id(body.member_id) is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Member not found."})
    if not request.app.state.workspaces.check_workspace_access(ctx.workspace_id, body.member_id):
        raise _invalid("Member is not part of this workspace.")
    request.app.state.exports.add_acl_member(export_id, body.member_id)
    return SuccessResponse()


@router.delete("/exports/tasks/id/{export_id}/access", response_model=SuccessResponse)
def remove_export_access(request: Request, export_id: int, member_id: int) -> SuccessResponse:
    enforce(require_export_access_by_id(request, export_id))
    if member_id <= 0:
        raise _invalid("member_id is required.")
    return SuccessResponse(success=request.app.state.exports.remove_acl_member(export_id, member_id))
