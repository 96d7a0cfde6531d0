"""
api/routes/v1/owners.py -- Owner-scoped listings.

Routes:
  GET /api/v1/owners/{owner_type}/{owner_id}/workspaces -- personal owner or team member only
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from api.access import enforce, require_owner_access
from api.models import OwnerTypeEnum, WorkspaceResponse

router = APIRouter()


@router.get("/owners/{owner_type}/{owner_id}/workspaces", response_model=list[WorkspaceResponse])
def list_owner_workspaces(request: Request, owner_type: OwnerTypeEnum, owner_id: int) -> list[WorkspaceResponse]:
    enforce(require_owner_access(request, owner_type.value, owner_id))
    workspaces = request.app.state.workspaces.list_workspaces_for_owner(owner_type.value, owner_id)
    return [WorkspaceResponse.from_workspace(ws) for ws in workspaces]
