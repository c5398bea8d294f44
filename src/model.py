"""
model.py

Domain models for the Work Item Lifecycle Engine.

Entities
--------
- Campaign
- Project
- Task
- User
- ValidationResult   (transient, never persisted)
- AuditEntry         (immutable, append-only)

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC.

Hierarchy
---------
Campaign 1 ── * Project 1 ── * Task

The Project → Campaign and Task → Project edges are authoritative.
Task.campaign_id is a denormalised back-reference written once at creation
for query convenience; it goes stale when a project is re-parented and must
never drive cascade or validation decisions.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Type


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class EntityKind(str, Enum):
    """The three levels of the work-breakdown hierarchy."""
    CAMPAIGN = "campaign"
    PROJECT = "project"
    TASK = "task"


class CampaignState(str, Enum):
    DRAFT = "draft"
    PLANNED = "planned"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class ProjectState(str, Enum):
    DRAFT = "draft"
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class TaskState(str, Enum):
    """Tasks have no archived state; archival of an ancestor cancels them."""
    NEW = "new"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    STATE_CHANGED = "state_changed"
    VALIDATION_FAILED = "validation_failed"


# State values shared by all three kinds that end a record's ordinary lifecycle.
COMPLETED = "completed"
CANCELLED = "cancelled"
ARCHIVED = "archived"
TERMINAL_STATES: FrozenSet[str] = frozenset({COMPLETED, CANCELLED, ARCHIVED})

STATE_ENUMS: Dict[EntityKind, Type[Enum]] = {
    EntityKind.CAMPAIGN: CampaignState,
    EntityKind.PROJECT: ProjectState,
    EntityKind.TASK: TaskState,
}

INITIAL_STATES: Dict[EntityKind, str] = {
    EntityKind.CAMPAIGN: CampaignState.DRAFT.value,
    EntityKind.PROJECT: ProjectState.DRAFT.value,
    EntityKind.TASK: TaskState.NEW.value,
}

PARENT_KIND: Dict[EntityKind, Optional[EntityKind]] = {
    EntityKind.CAMPAIGN: None,
    EntityKind.PROJECT: EntityKind.CAMPAIGN,
    EntityKind.TASK: EntityKind.PROJECT,
}

CHILD_KIND: Dict[EntityKind, Optional[EntityKind]] = {
    EntityKind.CAMPAIGN: EntityKind.PROJECT,
    EntityKind.PROJECT: EntityKind.TASK,
    EntityKind.TASK: None,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


@dataclass
class Campaign:
    """
    Root of the hierarchy.  Owns zero or more projects.

    Never auto-deleted: cancellation and archival are state changes.
    `budget` is overwritten by the sum of project budgets whenever a child
    project's budget or parent changes.
    """
    id: Optional[uuid.UUID] = None
    name: str = ""
    description: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    state: CampaignState = CampaignState.DRAFT
    owner_id: Optional[str] = None
    budget: float = 0.0
    estimated_budget: Optional[float] = None
    priority: int = 3
    segment: Optional[str] = None

    # State held before archival; restored by unarchive
    previous_state: Optional[str] = None

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    version: int = 0


@dataclass
class Project:
    """Child of exactly one campaign (campaign_id is the authoritative edge)."""
    id: Optional[uuid.UUID] = None
    campaign_id: Optional[uuid.UUID] = None     # FK → Campaign.id
    name: str = ""
    description: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    state: ProjectState = ProjectState.DRAFT
    priority: int = 3
    budget: Optional[float] = None
    manager_id: Optional[str] = None
    previous_state: Optional[str] = None

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    version: int = 0


@dataclass
class Task:
    """
    Child of exactly one project.

    `campaign_id` is copied from the project at creation time only.
    """
    id: Optional[uuid.UUID] = None
    project_id: Optional[uuid.UUID] = None      # FK → Project.id
    campaign_id: Optional[uuid.UUID] = None     # denormalised, not authoritative
    name: str = ""
    description: str = ""
    assignee_id: Optional[str] = None
    due_date: Optional[date] = None
    estimated_effort: Optional[float] = None
    priority: int = 3
    work_notes: str = ""
    state: TaskState = TaskState.NEW

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    version: int = 0


ENTITY_TYPES: Dict[EntityKind, type] = {
    EntityKind.CAMPAIGN: Campaign,
    EntityKind.PROJECT: Project,
    EntityKind.TASK: Task,
}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@dataclass
class User:
    """
    A person who can own campaigns, manage projects, or be assigned tasks.

    `segments` drive which campaigns the user can see in listings.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    full_name: str = ""
    email: str = ""
    is_active: bool = True
    segments: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Validation & audit
# ---------------------------------------------------------------------------


@dataclass
class ValidationResult:
    """
    Outcome of a single validation call.

    Errors block the operation; warnings are informational only.
    `data` carries auxiliary values such as child counts.
    """
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    def add_error(self, message: str) -> None:
        self.valid = False
        self.errors.append(message)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Fold another result into this one, keeping message order."""
        if not other.valid:
            self.valid = False
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.data.update(other.data)
        return self


@dataclass(frozen=True)
class AuditEntry:
    """
    Immutable record of a creation, field update, state change, or
    rejected write.  Entries are never edited or deleted.

    `sequence_number` is assigned by the audit log on append.
    """
    action: AuditAction
    entity_kind: EntityKind
    entity_id: Optional[uuid.UUID]
    actor_id: str
    changes: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=_utcnow)
    sequence_number: int = 0
    id: uuid.UUID = field(default_factory=uuid.uuid4)


def state_value(record: Any) -> str:
    """Plain string value of a record's state, whichever enum it uses."""
    state = record.state
    return state.value if isinstance(state, Enum) else str(state)


def is_terminal(record: Any) -> bool:
    return state_value(record) in TERMINAL_STATES
