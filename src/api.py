"""
api.py

REST API layer for the Work Item Lifecycle Engine.

Framework : FastAPI
Identity  : the caller's id is read from the `X-Actor-Id` header and passed
            to every mutating operation, where it ends up in the audit log.
            Requests without the header act as the configured system actor.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /users                              — user directory (register, deactivate)
  ├── /campaigns                          — campaign CRUD
  │   └── /{campaign_id}/projects         — create / list child projects
  ├── /projects/{project_id}              — project read & update
  │   └── /tasks                          — create / list child tasks
  ├── /tasks/{task_id}                    — task read & update
  ├── /{kind}/{id}/transition             — state changes (cascade + aggregation)
  ├── /{kind}/{id}/unarchive              — restore an archived record
  ├── /{kind}/{id}/audit                  — per-record audit trail
  └── /audit                              — audit log tail for consumers

Error handling
--------------
  Failed operation envelopes are mapped by error_type:
    not_found                         → 404
    state_constraint, post_commit_*   → 409
    field_validation, invalid_ref...  → 422
  NotFoundError      → 404
  ApplicationError   → 422
  ValueError         → 422
  Unhandled          → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload>, "warnings": [...] }
  Error    : { "detail": "<message>", "errors": [...], "warnings": [...],
               "error_type": "...", "parent_validation": {...} }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, EmailStr, Field

from application import (
    # Exceptions
    ApplicationError,
    NotFoundError,
    # Envelope
    OperationResult,
    # Coordinator & use cases
    LifecycleCoordinator,
    RegisterUserCommand,
    RegisterUserUseCase,
    GetUserUseCase,
    DeactivateUserUseCase,
)
from config import get_settings
from infrastructure import InMemoryDatabase
from model import EntityKind

settings = get_settings()


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "REST API for the Campaign → Project → Task hierarchy: validated "
        "creation, state transitions with top-down cascade and bottom-up "
        "completion, budget roll-up, and an append-only audit log."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_coordinator: Optional[LifecycleCoordinator] = None


def get_coordinator() -> LifecycleCoordinator:
    """
    Returns a process-wide coordinator over the in-memory database.
    main.py overrides this with the coordinator it wires up.
    """
    global _coordinator
    if _coordinator is None:
        db = InMemoryDatabase()
        _coordinator = LifecycleCoordinator(
            db.store,
            db.audit_log,
            db.users,
            variance_threshold=settings.BUDGET_VARIANCE_THRESHOLD,
            cascade_workers=settings.CASCADE_WORKERS,
            system_actor_id=settings.SYSTEM_ACTOR_ID,
        )
    return _coordinator


def get_actor_id(x_actor_id: Optional[str] = Header(default=None)) -> str:
    return x_actor_id or settings.SYSTEM_ACTOR_ID


# ---------------------------------------------------------------------------
# Envelope helpers
# ---------------------------------------------------------------------------

_ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "state_constraint": status.HTTP_409_CONFLICT,
    "post_commit_integrity": status.HTTP_409_CONFLICT,
    "field_validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_reference": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


def _failure(result: OperationResult) -> JSONResponse:
    body = dataclasses.asdict(result)
    body["detail"] = "; ".join(result.errors)
    return JSONResponse(
        status_code=_ERROR_STATUS.get(result.error_type, status.HTTP_422_UNPROCESSABLE_ENTITY),
        content=body,
    )


def _respond(result: OperationResult, fetch) -> Any:
    """
    Turn an OperationResult into an HTTP response.  On success the committed
    record is re-read through `fetch` and returned alongside the warnings.
    """
    if not result.success:
        return _failure(result)
    body = _ok(fetch(result.id))
    body["warnings"] = result.warnings
    if result.parent_validation is not None:
        body["parent_validation"] = dataclasses.asdict(result.parent_validation)
    return body


class KindSegment(str, Enum):
    CAMPAIGNS = "campaigns"
    PROJECTS = "projects"
    TASKS = "tasks"

    @property
    def entity_kind(self) -> EntityKind:
        return EntityKind(self.value[:-1])


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
#
# Lengths, ranges and enum membership are checked by the lifecycle
# validator so that every violation is reported together; the schemas only
# pin down types.
# ===========================================================================

# ---------------------------------------------------------------------------
# User schemas
# ---------------------------------------------------------------------------

class RegisterUserRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    segments: List[str] = Field(default_factory=list)
    is_active: bool = True


# ---------------------------------------------------------------------------
# Campaign schemas
# ---------------------------------------------------------------------------

class CreateCampaignRequest(BaseModel):
    name: str
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    state: Optional[str] = Field(default=None, description="Defaults to draft.")
    owner_id: Optional[str] = None
    budget: Optional[float] = None
    estimated_budget: Optional[float] = None
    priority: Optional[int] = None
    segment: Optional[str] = None


class UpdateCampaignRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    owner_id: Optional[str] = None
    budget: Optional[float] = None
    estimated_budget: Optional[float] = None
    priority: Optional[int] = None
    segment: Optional[str] = None


# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------

class CreateProjectRequest(BaseModel):
    name: str
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    state: Optional[str] = Field(default=None, description="Defaults to draft.")
    priority: Optional[int] = None
    budget: Optional[float] = None
    manager_id: Optional[str] = None


class UpdateProjectRequest(BaseModel):
    campaign_id: Optional[uuid.UUID] = Field(
        default=None, description="Move the project under another campaign."
    )
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    priority: Optional[int] = None
    budget: Optional[float] = None
    manager_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Task schemas
# ---------------------------------------------------------------------------

class CreateTaskRequest(BaseModel):
    name: str
    assignee_id: str
    description: Optional[str] = None
    due_date: Optional[date] = None
    estimated_effort: Optional[float] = None
    priority: Optional[int] = None
    work_notes: Optional[str] = None
    state: Optional[str] = Field(default=None, description="Defaults to new.")


class UpdateTaskRequest(BaseModel):
    name: Optional[str] = None
    assignee_id: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    estimated_effort: Optional[float] = None
    priority: Optional[int] = None
    work_notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Lifecycle schemas
# ---------------------------------------------------------------------------

class TransitionRequest(BaseModel):
    state: str = Field(..., description="Target state from the record kind's label set.")


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix=settings.API_V1_PREFIX)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

user_router = APIRouter(prefix="/users", tags=["Users"])


@user_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
    response_description="The created user.",
)
def register_user(
    body: RegisterUserRequest,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    """
    Register a person who can own campaigns, manage projects or be assigned
    tasks.  `segments` control which campaigns the user sees in listings.
    """
    cmd = RegisterUserCommand(
        full_name=body.full_name,
        email=str(body.email),
        segments=body.segments,
        is_active=body.is_active,
    )
    return _ok(RegisterUserUseCase().execute(cmd, coordinator.users))


@user_router.get("/{user_id}", summary="Get a user by ID")
def get_user(
    user_id: str = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    return _ok(GetUserUseCase().execute(user_id, coordinator.users))


@user_router.post("/{user_id}/deactivate", summary="Deactivate a user")
def deactivate_user(
    user_id: str = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    """Inactive users can no longer be assigned new tasks."""
    return _ok(DeactivateUserUseCase().execute(user_id, coordinator.users))


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------

campaign_router = APIRouter(prefix="/campaigns", tags=["Campaigns"])


@campaign_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a new campaign",
)
def create_campaign(
    body: CreateCampaignRequest,
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
    actor_id: str = Depends(get_actor_id),
):
    """
    Budget variance and duplicate names are reported as warnings; the
    campaign is still created.
    """
    result = coordinator.create_campaign(body.model_dump(exclude_none=True), actor_id=actor_id)
    return _respond(result, coordinator.get_campaign)


@campaign_router.get("", summary="List campaigns")
def list_campaigns(
    viewer_id: Optional[str] = Query(
        default=None, description="Only return campaigns visible to this user's segments."
    ),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    return _ok(coordinator.list_campaigns(viewer_id=viewer_id))


@campaign_router.get("/{campaign_id}", summary="Get a campaign by ID")
def get_campaign(
    campaign_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    return _ok(coordinator.get_campaign(campaign_id))


@campaign_router.patch("/{campaign_id}", summary="Update campaign fields")
def update_campaign(
    body: UpdateCampaignRequest,
    campaign_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
    actor_id: str = Depends(get_actor_id),
):
    result = coordinator.update_fields(
        EntityKind.CAMPAIGN, campaign_id, body.model_dump(exclude_unset=True), actor_id=actor_id
    )
    return _respond(result, coordinator.get_campaign)


@campaign_router.post(
    "/{campaign_id}/projects",
    status_code=status.HTTP_201_CREATED,
    summary="Create a project under a campaign",
)
def create_project(
    body: CreateProjectRequest,
    campaign_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
    actor_id: str = Depends(get_actor_id),
):
    """
    Rejected when the campaign does not exist or is cancelled / archived.
    A project budget is rolled up into the campaign budget.
    """
    result = coordinator.create_project(
        campaign_id, body.model_dump(exclude_none=True), actor_id=actor_id
    )
    return _respond(result, coordinator.get_project)


@campaign_router.get("/{campaign_id}/projects", summary="List a campaign's projects")
def list_projects(
    campaign_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    return _ok(coordinator.list_children(EntityKind.CAMPAIGN, campaign_id))


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.get("/{project_id}", summary="Get a project by ID")
def get_project(
    project_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    return _ok(coordinator.get_project(project_id))


@project_router.patch("/{project_id}", summary="Update project fields")
def update_project(
    body: UpdateProjectRequest,
    project_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
    actor_id: str = Depends(get_actor_id),
):
    """
    Setting `campaign_id` re-parents the project; the budgets of both the
    old and the new campaign are recomputed.
    """
    result = coordinator.update_fields(
        EntityKind.PROJECT, project_id, body.model_dump(exclude_unset=True), actor_id=actor_id
    )
    return _respond(result, coordinator.get_project)


@project_router.post(
    "/{project_id}/tasks",
    status_code=status.HTTP_201_CREATED,
    summary="Create a task under a project",
)
def create_task(
    body: CreateTaskRequest,
    project_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
    actor_id: str = Depends(get_actor_id),
):
    """Rejected when the project is cancelled, completed or archived, or the assignee is unusable."""
    result = coordinator.create_task(
        project_id, body.model_dump(exclude_none=True), actor_id=actor_id
    )
    return _respond(result, coordinator.get_task)


@project_router.get("/{project_id}/tasks", summary="List a project's tasks")
def list_tasks(
    project_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    return _ok(coordinator.list_children(EntityKind.PROJECT, project_id))


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

task_router = APIRouter(prefix="/tasks", tags=["Tasks"])


@task_router.get("/{task_id}", summary="Get a task by ID")
def get_task(
    task_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    return _ok(coordinator.get_task(task_id))


@task_router.patch("/{task_id}", summary="Update task fields")
def update_task(
    body: UpdateTaskRequest,
    task_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
    actor_id: str = Depends(get_actor_id),
):
    result = coordinator.update_fields(
        EntityKind.TASK, task_id, body.model_dump(exclude_unset=True), actor_id=actor_id
    )
    return _respond(result, coordinator.get_task)


# ---------------------------------------------------------------------------
# Lifecycle (shared by all three kinds)
# ---------------------------------------------------------------------------

lifecycle_router = APIRouter(tags=["Lifecycle"])


def _fetcher(coordinator: LifecycleCoordinator, kind: EntityKind):
    return {
        EntityKind.CAMPAIGN: coordinator.get_campaign,
        EntityKind.PROJECT: coordinator.get_project,
        EntityKind.TASK: coordinator.get_task,
    }[kind]


@lifecycle_router.post("/{kind}/{record_id}/transition", summary="Change a record's state")
def transition_state(
    kind: KindSegment = Path(...),
    record_id: uuid.UUID = Path(...),
    body: TransitionRequest = Body(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
    actor_id: str = Depends(get_actor_id),
):
    """
    Archiving or cancelling a campaign or project cascades down to every
    descendant.  When the last open child of a parent closes, the parent is
    completed automatically.
    """
    entity_kind = kind.entity_kind
    result = coordinator.transition_state(entity_kind, record_id, body.state, actor_id=actor_id)
    return _respond(result, _fetcher(coordinator, entity_kind))


@lifecycle_router.post("/{kind}/{record_id}/unarchive", summary="Restore an archived record")
def unarchive(
    kind: KindSegment = Path(...),
    record_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
    actor_id: str = Depends(get_actor_id),
):
    entity_kind = kind.entity_kind
    result = coordinator.unarchive(entity_kind, record_id, actor_id=actor_id)
    return _respond(result, _fetcher(coordinator, entity_kind))


@lifecycle_router.get("/{kind}/{record_id}/audit", summary="View a record's audit trail")
def get_audit_trail(
    kind: KindSegment = Path(...),
    record_id: uuid.UUID = Path(...),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    return _ok(coordinator.get_audit_trail(kind.entity_kind, record_id))


# ---------------------------------------------------------------------------
# Audit log tail
# ---------------------------------------------------------------------------

audit_router = APIRouter(prefix="/audit", tags=["Audit Log"])


@audit_router.get("", summary="Read the audit log after a sequence number")
def tail_audit(
    after: int = Query(default=0, ge=0, description="Return entries with a higher sequence number."),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    coordinator: LifecycleCoordinator = Depends(get_coordinator),
):
    """
    Entries are returned in sequence order.  Pass the last sequence number
    seen as `after` to resume.
    """
    return _ok(coordinator.tail_audit(after_sequence=after, limit=limit))


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(user_router)
api_v1.include_router(campaign_router)
api_v1.include_router(project_router)
api_v1.include_router(task_router)
api_v1.include_router(audit_router)
api_v1.include_router(lifecycle_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server — exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount_http()


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION — tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Users",
        "description": (
            "User directory backing owner, manager and assignee references.  "
            "Only active users can be assigned tasks."
        ),
    },
    {
        "name": "Campaigns",
        "description": (
            "Root of the work hierarchy.  A campaign's budget is the sum of its "
            "projects' budgets once any project carries one."
        ),
    },
    {
        "name": "Projects",
        "description": (
            "Work packages within a campaign.  Creation is refused under a "
            "cancelled or archived campaign."
        ),
    },
    {
        "name": "Tasks",
        "description": (
            "Assignable units of work within a project.  Creation is refused under "
            "a cancelled, completed or archived project."
        ),
    },
    {
        "name": "Lifecycle",
        "description": (
            "State transitions.  Archival and cancellation cascade down the "
            "hierarchy; completion aggregates up.  Terminal records can only be "
            "reopened through unarchive."
        ),
    },
    {
        "name": "Audit Log",
        "description": (
            "Append-only log of creations, updates, state changes and rejected "
            "writes, readable in sequence order."
        ),
    },
]

app.openapi_tags = tags_metadata
