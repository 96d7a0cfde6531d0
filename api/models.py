"""
API request and response models for Pecal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py,
workspace/models.py and sharing/models.py, which own the internal domain
representation. Route handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sharing.models import ExportState, TaskExport, export_state, parse_timestamp
from workspace.models import Task, Workspace

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class VisibilityEnum(str, Enum):
    public = "public"
    restricted = "restricted"


class OwnerTypeEnum(str, Enum):
    personal = "personal"
    team = "team"


# ---------------------------------------------------------------------------
# Common
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class SuccessResponse(BaseModel):
    success: bool = True


# ---------------------------------------------------------------------------
# Member auth
# ---------------------------------------------------------------------------


class OAuthProviderInfo(BaseModel):
    """A configured OAuth provider, as listed on the login screen."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ExternalLoginRequest(BaseModel):
    """Body for POST /api/v1/auth/external/{provider}: a token from the provider's native SDK."""

    model_config = ConfigDict(str_strip_whitespace=True)

    access_token: str = Field(min_length=1, max_length=4096)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=4096)


class MemberInfo(BaseModel):
    member_id: int
    nickname: str
    provider: str
    email: Optional[str] = None


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    member: MemberInfo


class MeResponse(MemberInfo):
    """Identity behind the presented access credential."""


# ---------------------------------------------------------------------------
# Admin auth
# ---------------------------------------------------------------------------


class AdminLoginRequest(BaseModel):
    """Username is normalized by the login guard, not here; the password is taken verbatim."""

    username: str = Field(min_length=1, max_length=100)
    # bcrypt truncates at 72 bytes; the cap only bounds hashing cost.
    password: str = Field(min_length=1, max_length=128)


class AdminResponse(BaseModel):
    admin_id: int
    username: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: str


class AdminLoginResponse(BaseModel):
    token_type: str = "bearer"
    expires_in: int
    admin: AdminResponse


# ---------------------------------------------------------------------------
# Workspaces and tasks
# ---------------------------------------------------------------------------


class WorkspaceResponse(BaseModel):
    workspace_id: int
    name: str
    type: str
    owner_id: int
    created_at: str

    @classmethod
    def from_workspace(cls, ws: Workspace) -> "WorkspaceResponse":
        return cls(
            workspace_id=ws.workspace_id,
            name=ws.name,
            type=ws.type,
            owner_id=ws.owner_id,
            created_at=ws.created_at,
        )


class TaskResponse(BaseModel):
    id: int
    workspace_id: int
    title: str
    content: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    status: str
    created_by: int
    created_at: str

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            workspace_id=task.workspace_id,
            title=task.title,
            content=task.content,
            start_time=task.start_time,
            end_time=task.end_time,
            status=task.status,
            created_by=task.created_by,
            created_at=task.created_at,
        )


# ---------------------------------------------------------------------------
# Task exports
# ---------------------------------------------------------------------------


def _iso_or_none(value: Optional[str]) -> Optional[str]:
    """Reject expiry strings the store could not parse, so PATCH never half-applies."""
    if value is None:
        return None
    parse_timestamp(value)  # ValueError -> 422
    return value


class ExportCreate(BaseModel):
    """Body for POST /api/v1/tasks/{task_id}/export."""

    visibility: VisibilityEnum
    expires_at: Optional[str] = Field(default=None, description="ISO 8601; omitted means never expires.")

    @field_validator("expires_at")
    @classmethod
    def check_expires_at(cls, value: Optional[str]) -> Optional[str]:
        return _iso_or_none(value)


class ExportCreatedResponse(BaseModel):
    export_id: int
    token: str
    path: str
    url: str
    visibility: VisibilityEnum
    expires_at: Optional[str] = None


class ExportPatch(BaseModel):
    """Body for PATCH /api/v1/exports/tasks/id/{export_id}.

    revoke=true wins over the other fields. expires_at=null clears the expiry;
    leaving the field out leaves it unchanged.
    """

    visibility: Optional[VisibilityEnum] = None
    expires_at: Optional[str] = None
    revoke: bool = False

    @field_validator("expires_at")
    @classmethod
    def check_expires_at(cls, value: Optional[str]) -> Optional[str]:
        return _iso_or_none(value)


class ExportAccessRequest(BaseModel):
    member_id: int = Field(gt=0)


class ExportResponse(BaseModel):
    export_id: int
    task_id: int
    visibility: str
    state: ExportState
    created_by: int
    created_at: str
    expires_at: Optional[str] = None
    revoked_at: Optional[str] = None
    access_member_ids: list[int] = Field(default_factory=list)

    @classmethod
    def from_export(cls, record: TaskExport) -> "ExportResponse":
        """Management view. The token is left out of listings."""
        return cls(
            export_id=record.export_id,
            task_id=record.task_id,
            visibility=record.visibility,
            state=export_state(record),
            created_by=record.created_by,
            created_at=record.created_at,
            expires_at=record.expires_at,
            revoked_at=record.revoked_at,
            access_member_ids=list(record.access_member_ids),
        )


class SharedTaskResponse(BaseModel):
    """What a token holder sees."""

    visibility: str
    expires_at: Optional[str] = None
    task: TaskResponse


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
