"""
service.py

Service layer for the Work Item Lifecycle Engine.

Responsibilities
----------------
Each service class encapsulates the business rules for one concern.
Services receive plain mappings or domain model instances and return
ValidationResults, changes, or new model instances.  Nothing here writes to
storage; the only reads are the reference-level lookups the validator makes
through the read-only `find` interface it is handed.

Services
--------
- WorkItemValidator   – field-level and reference-level validation
- LifecycleService    – state coercion, terminal checks, cascade/aggregation rules
- BudgetService       – budget roll-up arithmetic
- AuditService        – audit entry construction and change snapshots

Design notes
------------
- Field-level checks never touch the store, so they can run before any I/O
  and be unit-tested without a store fixture.
- Every check appends to the same ValidationResult; a caller always sees the
  complete list of violated constraints, not just the first one.
- Messages follow the "<Kind> <field> ..." shape so they read well when
  concatenated into an API error list.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import fields as dataclass_fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Type

from model import (
    ARCHIVED,
    CANCELLED,
    COMPLETED,
    STATE_ENUMS,
    AuditAction,
    AuditEntry,
    CampaignState,
    EntityKind,
    Project,
    ProjectState,
    TaskState,
    ValidationResult,
    is_terminal,
    state_value,
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utctoday() -> date:
    return _utcnow().date()


def parse_date(value: Any) -> Optional[date]:
    """Coerce a date, datetime or ISO-8601 string to a date.  Raises ValueError."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        value = value.strip()
        if len(value) > 10:
            return datetime.fromisoformat(value).date()
        return date.fromisoformat(value)
    raise ValueError(f"unsupported date value {value!r}")


def parse_number(value: Any) -> Optional[float]:
    """Coerce an int, float, Decimal or numeric string to float.  Raises ValueError."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        number = float(value.strip())
    else:
        raise ValueError(f"unsupported numeric value {value!r}")
    if math.isnan(number) or math.isinf(number):
        raise ValueError("number must be finite")
    return number


def parse_priority(value: Any) -> Optional[int]:
    number = parse_number(value)
    if number is None:
        return None
    if number != int(number):
        raise ValueError("priority must be a whole number")
    return int(number)


def as_uuid(value: Any) -> Optional[uuid.UUID]:
    """Coerce a UUID or its string form; None for anything unparseable."""
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str) and value:
        try:
            return uuid.UUID(value)
        except ValueError:
            return None
    return None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def to_plain(value: Any) -> Any:
    """JSON-friendly rendering of a field value for audit snapshots."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return value


# ---------------------------------------------------------------------------
# WorkItemValidator
# ---------------------------------------------------------------------------

class WorkItemValidator:
    """
    Side-effect-free validation of campaigns, projects and tasks.

    `store` must offer `find(kind, id) -> Optional[record]` and
    `children(kind, id) -> list`; `users` must offer `get(user_id)`.
    Both are only consulted by the reference-level checks.
    """

    NAME_LIMITS = {
        EntityKind.CAMPAIGN: 100,
        EntityKind.PROJECT: 100,
        EntityKind.TASK: 80,
    }
    DESCRIPTION_LIMITS = {
        EntityKind.CAMPAIGN: 1000,
        EntityKind.PROJECT: 1000,
        EntityKind.TASK: 500,
    }
    WORK_NOTES_RECOMMENDED_MAX = 4000
    PRIORITY_RANGE = (1, 5)

    # Parent states that block creation of a new child
    BLOCKING_CAMPAIGN_STATES = frozenset({CANCELLED, ARCHIVED})
    BLOCKING_PROJECT_STATES = frozenset({CANCELLED, COMPLETED, ARCHIVED})

    def __init__(self, store: Any = None, users: Any = None, variance_threshold: float = 1.2):
        self._store = store
        self._users = users
        self.variance_threshold = variance_threshold

    # --- Field-level --------------------------------------------------------

    def validate_campaign_fields(self, data: Mapping[str, Any]) -> ValidationResult:
        """
        Check a campaign's own fields.

        Budget variance above the threshold is a warning, never an error.
        """
        result = ValidationResult()
        self._check_common(EntityKind.CAMPAIGN, data, result, CampaignState)
        self._check_date_range("Campaign", data, result)
        self._check_priority("Campaign", data, result)

        budget = self._check_amount("Campaign", "budget", data, result)
        estimated = self._check_amount("Campaign", "estimated_budget", data, result)
        if budget is not None and estimated is not None:
            self._check_variance(budget, estimated, result)
        return result

    def validate_project_fields(self, data: Mapping[str, Any]) -> ValidationResult:
        result = ValidationResult()
        self._check_common(EntityKind.PROJECT, data, result, ProjectState)
        self._check_date_range("Project", data, result)
        self._check_priority("Project", data, result)
        self._check_amount("Project", "budget", data, result)
        return result

    def validate_task_fields(self, data: Mapping[str, Any]) -> ValidationResult:
        result = ValidationResult()
        self._check_common(EntityKind.TASK, data, result, TaskState)
        self._check_priority("Task", data, result)
        self._check_amount("Task", "estimated_effort", data, result)

        if not data.get("assignee_id"):
            result.add_error("Task assignee is required")

        try:
            due = parse_date(data.get("due_date"))
        except ValueError:
            result.add_error(f"Task due_date is not a valid date: {data.get('due_date')!r}")
        else:
            if due is not None and due < _utctoday():
                result.add_warning("Task due date is in the past")

        notes = data.get("work_notes") or ""
        if len(notes) > self.WORK_NOTES_RECOMMENDED_MAX:
            result.add_warning("Work notes exceed recommended length")
        return result

    # --- Reference-level ----------------------------------------------------

    def validate_parent_campaign(
        self,
        campaign_id: Any,
        project_data: Optional[Mapping[str, Any]] = None,
    ) -> ValidationResult:
        """
        Blocking if the campaign is missing or in a blocking state.
        Project dates outside the campaign's range only produce a warning.
        """
        result = ValidationResult()
        campaign = self._find(EntityKind.CAMPAIGN, campaign_id)
        if campaign is None:
            result.data["found"] = False
            result.add_error(f"Invalid campaign reference: campaign {campaign_id} not found")
            return result

        state = state_value(campaign)
        result.data.update(
            found=True,
            campaign_state=state,
            project_count=len(self._store.children(EntityKind.CAMPAIGN, campaign.id)),
        )
        if state in self.BLOCKING_CAMPAIGN_STATES:
            result.add_error(
                f"Campaign {campaign.id} is {state}; projects cannot be created under it"
            )

        if project_data is not None:
            self._check_within_parent_dates("Project", "campaign", campaign, project_data, result)
        return result

    def validate_parent_project(
        self,
        project_id: Any,
        task_data: Optional[Mapping[str, Any]] = None,
    ) -> ValidationResult:
        result = ValidationResult()
        project = self._find(EntityKind.PROJECT, project_id)
        if project is None:
            result.data["found"] = False
            result.add_error(f"Invalid project reference: project {project_id} not found")
            return result

        state = state_value(project)
        result.data.update(
            found=True,
            project_state=state,
            task_count=len(self._store.children(EntityKind.PROJECT, project.id)),
        )
        if state in self.BLOCKING_PROJECT_STATES:
            result.add_error(f"Project {project.id} is {state}; tasks cannot be created under it")

        if task_data is not None:
            try:
                due = parse_date(task_data.get("due_date"))
            except ValueError:
                due = None
            if due is not None and project.end_date is not None and due > project.end_date:
                result.add_warning(
                    f"Task due date {due.isoformat()} falls after project end date "
                    f"{project.end_date.isoformat()}"
                )
        return result

    def validate_assignee(self, user_id: Any) -> ValidationResult:
        """Assignees must exist and be active."""
        result = ValidationResult()
        if user_id and self._users.user_exists_and_active(str(user_id)):
            result.data["found"] = True
            return result
        user = self._users.get(str(user_id)) if user_id else None
        if user is None:
            result.data["found"] = False
            result.add_error(f"Invalid assignee: user {user_id} not found")
        else:
            result.data["found"] = True
            result.add_error(f"Invalid assignee: user {user_id} is inactive")
        return result

    def validate_user_reference(self, user_id: Any, label: str) -> ValidationResult:
        """
        Optional user references (campaign owner, project manager).
        Missing users block; inactive users only warn.
        """
        result = ValidationResult()
        if not user_id:
            return result
        user = self._users.get(str(user_id))
        if user is None:
            result.data["found"] = False
            result.add_error(f"Invalid {label} reference: user {user_id} not found")
        elif not user.is_active:
            result.add_warning(f"Referenced {label} is inactive: user {user_id}")
        return result

    def check_duplicate_campaign_name(
        self, name: Any, exclude_id: Optional[uuid.UUID] = None
    ) -> ValidationResult:
        result = ValidationResult()
        if not name:
            return result
        for campaign in self._store.list_all(EntityKind.CAMPAIGN):
            if campaign.name == name and campaign.id != exclude_id:
                result.add_warning("Another campaign with the same name exists")
                break
        return result

    # --- Helpers ------------------------------------------------------------

    def _find(self, kind: EntityKind, record_id: Any):
        key = as_uuid(record_id)
        if key is None:
            return None
        return self._store.find(kind, key)

    def _check_common(
        self,
        kind: EntityKind,
        data: Mapping[str, Any],
        result: ValidationResult,
        state_enum: Type[Enum],
    ) -> None:
        label = kind.value.capitalize()
        name = data.get("name")
        if name is None or (isinstance(name, str) and not name.strip()):
            result.add_error(f"{label} name is required")
        elif not isinstance(name, str):
            result.add_error(f"{label} name must be a string")
        elif len(name) > self.NAME_LIMITS[kind]:
            result.add_error(
                f"{label} name must be at most {self.NAME_LIMITS[kind]} characters"
            )

        description = data.get("description")
        if description is not None:
            if not isinstance(description, str):
                result.add_error(f"{label} description must be a string")
            elif len(description) > self.DESCRIPTION_LIMITS[kind]:
                result.add_error(
                    f"{label} description must be at most "
                    f"{self.DESCRIPTION_LIMITS[kind]} characters"
                )

        state = data.get("state")
        if state is not None:
            valid = [s.value for s in state_enum]
            raw = state.value if isinstance(state, Enum) else state
            if raw not in valid:
                result.add_error(
                    f"Invalid {kind.value} state {raw!r}; expected one of: {', '.join(valid)}"
                )

    def _check_date_range(self, label: str, data: Mapping[str, Any], result: ValidationResult) -> None:
        parsed: Dict[str, Optional[date]] = {}
        for key in ("start_date", "end_date"):
            try:
                parsed[key] = parse_date(data.get(key))
            except ValueError:
                parsed[key] = None
                result.add_error(f"{label} {key} is not a valid date: {data.get(key)!r}")
        start, end = parsed["start_date"], parsed["end_date"]
        if start is not None and end is not None and not start < end:
            result.add_error(f"{label} start date must be before end date")

    def _check_priority(self, label: str, data: Mapping[str, Any], result: ValidationResult) -> None:
        low, high = self.PRIORITY_RANGE
        try:
            priority = parse_priority(data.get("priority"))
        except ValueError:
            result.add_error(f"{label} priority must be between {low} and {high}")
            return
        if priority is not None and not low <= priority <= high:
            result.add_error(f"{label} priority must be between {low} and {high}")

    def _check_amount(
        self, label: str, key: str, data: Mapping[str, Any], result: ValidationResult
    ) -> Optional[float]:
        try:
            amount = parse_number(data.get(key))
        except ValueError:
            result.add_error(f"{label} {key} must be a number")
            return None
        if amount is not None and amount < 0:
            result.add_error(f"{label} {key} cannot be negative")
            return None
        return amount

    def _check_variance(self, budget: float, estimated: float, result: ValidationResult) -> None:
        if estimated <= budget * self.variance_threshold:
            return
        allowed = _round_half_up((self.variance_threshold - 1) * 100)
        if budget == 0:
            result.add_warning(
                f"Estimated budget {estimated:g} is set while budget is 0 "
                f"(more than {allowed}% over budget)"
            )
            return
        variance = _round_half_up((estimated - budget) / budget * 100)
        result.add_warning(
            f"Estimated budget exceeds budget by {variance}% "
            f"(more than {allowed}% over budget)"
        )

    def _check_within_parent_dates(
        self,
        label: str,
        parent_label: str,
        parent: Any,
        data: Mapping[str, Any],
        result: ValidationResult,
    ) -> None:
        try:
            start = parse_date(data.get("start_date"))
            end = parse_date(data.get("end_date"))
        except ValueError:
            return  # reported by the field-level check
        outside = (
            (start is not None and parent.start_date is not None and start < parent.start_date)
            or (end is not None and parent.end_date is not None and end > parent.end_date)
        )
        if outside:
            window = (
                f"{parent.start_date.isoformat() if parent.start_date else '...'} to "
                f"{parent.end_date.isoformat() if parent.end_date else '...'}"
            )
            result.add_warning(f"{label} dates fall outside {parent_label} date range ({window})")


# ---------------------------------------------------------------------------
# LifecycleService
# ---------------------------------------------------------------------------

class LifecycleService:
    """
    Pure state-machine rules shared by the coordinator.

    Transitions between non-terminal states are deliberately not checked
    against a transition table: draft may jump straight to completed.
    """

    def coerce_state(self, kind: EntityKind, value: Any) -> Enum:
        """Return the enum member for `value`; ValueError if not in the kind's label set."""
        enum_type = STATE_ENUMS[kind]
        raw = value.value if isinstance(value, Enum) else value
        try:
            return enum_type(raw)
        except ValueError:
            valid = ", ".join(s.value for s in enum_type)
            raise ValueError(f"Invalid {kind.value} state {raw!r}; expected one of: {valid}")

    def cascade_state_for(self, child_kind: EntityKind, new_state: str) -> str:
        """Tasks have no archived state, so archival cancels them."""
        if child_kind == EntityKind.TASK:
            return CANCELLED
        return new_state

    def needs_cascade(self, child: Any, target: str) -> bool:
        """
        Archival overrides any state except archived; cancellation only
        reaches children that are still open.
        """
        current = state_value(child)
        if current == target:
            return False
        if target == ARCHIVED:
            return True
        return not is_terminal(child)

    def all_terminal(self, records: Iterable[Any]) -> bool:
        records = list(records)
        return bool(records) and all(is_terminal(r) for r in records)

    def completion_changes(self, kind: EntityKind) -> Dict[str, Any]:
        """Field changes applied to a parent auto-closed by aggregation."""
        return {"state": STATE_ENUMS[kind](COMPLETED), "end_date": _utctoday()}

    def transition_changes(self, record: Any, new_state: Enum) -> Dict[str, Any]:
        changes: Dict[str, Any] = {"state": new_state}
        if new_state.value == ARCHIVED and hasattr(record, "previous_state"):
            changes["previous_state"] = state_value(record)
        return changes


# ---------------------------------------------------------------------------
# BudgetService
# ---------------------------------------------------------------------------

class BudgetService:
    """Budget roll-up arithmetic."""

    def total_for(self, projects: Iterable[Project]) -> float:
        return float(sum(p.budget or 0.0 for p in projects))


# ---------------------------------------------------------------------------
# AuditService
# ---------------------------------------------------------------------------

class AuditService:
    """Builds audit entries; the audit log assigns sequence numbers."""

    def snapshot(self, record: Any) -> Dict[str, Any]:
        return {f.name: to_plain(getattr(record, f.name)) for f in dataclass_fields(record)}

    def diff(self, before: Any, after: Any, keys: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Changed fields only, as {field: {"from": old, "to": new}}."""
        changes: Dict[str, Dict[str, Any]] = {}
        for key in keys:
            old, new = to_plain(getattr(before, key)), to_plain(getattr(after, key))
            if old != new:
                changes[key] = {"from": old, "to": new}
        return changes

    def entry(
        self,
        action: AuditAction,
        kind: EntityKind,
        entity_id: Optional[uuid.UUID],
        actor_id: str,
        changes: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        return AuditEntry(
            action=action,
            entity_kind=kind,
            entity_id=entity_id,
            actor_id=actor_id,
            changes=dict(changes or {}),
            occurred_at=_utcnow(),
        )
