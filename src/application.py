"""
application.py

Application layer for the Work Item Lifecycle Engine.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining the error taxonomy and the uniform operation envelope
     (OperationResult) every mutating operation returns.
  2. Defining output DTOs that carry only what the presentation layer needs.
  3. Declaring the abstract Entity Store, Audit Log and User Directory
     interfaces so the coordinator stays persistence-agnostic
     (implementations live in infrastructure.py).
  4. Implementing the LifecycleCoordinator, which runs the create / update /
     transition flows in a fixed order:

         field checks → reference checks → commit → post-commit re-validation
         → audit → cascade / aggregation / budget roll-up

Structure
---------
Exceptions
    ApplicationError, NotFoundError
    WorkItemError → FieldValidationError, InvalidReferenceError,
                    StateConstraintError, PostCommitIntegrityError

DTOs
    OperationResult, CampaignDTO, ProjectDTO, TaskDTO, UserDTO, AuditEntryDTO

Interfaces
    AbstractEntityStore, AbstractAuditLog, AbstractUserDirectory

Coordinator
    LifecycleCoordinator

Use Cases (user directory administration)
    RegisterUserUseCase, GetUserUseCase, DeactivateUserUseCase

Design notes
------------
- WorkItemErrors never cross an operation boundary: each operation converts
  them into a failed OperationResult carrying every violated constraint.
  Only unexpected failures (store unavailable, programming errors) propagate.
- Read operations raise NotFoundError, as the store does.
- Task.campaign_id is never consulted for cascade or aggregation; the
  coordinator always walks Task → Project → Campaign.
"""

from __future__ import annotations

import abc
import concurrent.futures
import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Mapping, Optional, Set

from model import (
    ARCHIVED,
    CANCELLED,
    CHILD_KIND,
    ENTITY_TYPES,
    INITIAL_STATES,
    PARENT_KIND,
    STATE_ENUMS,
    TERMINAL_STATES,
    AuditAction,
    AuditEntry,
    Campaign,
    CampaignState,
    EntityKind,
    Project,
    ProjectState,
    Task,
    TaskState,
    User,
    ValidationResult,
    is_terminal,
    state_value,
)
from service import (
    AuditService,
    BudgetService,
    LifecycleService,
    WorkItemValidator,
    as_uuid,
    parse_date,
    parse_number,
    parse_priority,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when an operation cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist or was rolled back."""


class WorkItemError(ApplicationError):
    """
    Recoverable failure of a work-item operation.  Carries the complete list
    of violated constraints so the caller can fix everything in one round trip.
    """
    error_type = "work_item_error"

    def __init__(
        self,
        errors: Iterable[str],
        warnings: Iterable[str] = (),
        parent_validation: Optional[ValidationResult] = None,
        entity_id: Optional[uuid.UUID] = None,
    ):
        self.errors = list(errors)
        self.warnings = list(warnings)
        self.parent_validation = parent_validation
        self.entity_id = entity_id
        super().__init__("; ".join(self.errors))

    @classmethod
    def from_result(cls, result: ValidationResult, **kwargs) -> "WorkItemError":
        return cls(result.errors, result.warnings, **kwargs)


class FieldValidationError(WorkItemError):
    """A self-contained field constraint failed (length, enum, number, dates)."""
    error_type = "field_validation"


class InvalidReferenceError(WorkItemError):
    """A parent, assignee, owner or manager reference is missing or unusable."""
    error_type = "invalid_reference"


class StateConstraintError(WorkItemError):
    """The parent (or the record itself) is in a state that blocks the write."""
    error_type = "state_constraint"


class PostCommitIntegrityError(WorkItemError):
    """Re-validation of a just-committed record failed; the insert was rolled back."""
    error_type = "post_commit_integrity"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value else None


def _dedupe(messages: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(messages))


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class OperationResult:
    """
    Uniform envelope returned by create / update / transition operations.

    `parent_validation` is only set by create_project / create_task.
    """
    success: bool
    id: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error_type: Optional[str] = None
    parent_validation: Optional[ValidationResult] = None

    @classmethod
    def ok(
        cls,
        record_id: uuid.UUID,
        warnings: Iterable[str] = (),
        parent_validation: Optional[ValidationResult] = None,
    ) -> "OperationResult":
        return cls(
            success=True,
            id=str(record_id),
            warnings=_dedupe(warnings),
            parent_validation=parent_validation,
        )

    @classmethod
    def failed(cls, exc: ApplicationError) -> "OperationResult":
        if isinstance(exc, WorkItemError):
            return cls(
                success=False,
                errors=list(exc.errors),
                warnings=_dedupe(exc.warnings),
                error_type=exc.error_type,
                parent_validation=exc.parent_validation,
            )
        return cls(success=False, errors=[str(exc)], error_type="not_found")


@dataclass
class CampaignDTO:
    id: str
    name: str
    description: str
    start_date: Optional[str]
    end_date: Optional[str]
    state: str
    owner_id: Optional[str]
    budget: float
    estimated_budget: Optional[float]
    priority: int
    segment: Optional[str]
    created_at: str
    updated_at: str
    version: int


@dataclass
class ProjectDTO:
    id: str
    campaign_id: str
    name: str
    description: str
    start_date: Optional[str]
    end_date: Optional[str]
    state: str
    priority: int
    budget: Optional[float]
    manager_id: Optional[str]
    created_at: str
    updated_at: str
    version: int


@dataclass
class TaskDTO:
    id: str
    project_id: str
    campaign_id: Optional[str]
    name: str
    description: str
    assignee_id: Optional[str]
    due_date: Optional[str]
    estimated_effort: Optional[float]
    priority: int
    work_notes: str
    state: str
    created_at: str
    updated_at: str
    version: int


@dataclass
class UserDTO:
    id: str
    full_name: str
    email: str
    is_active: bool
    segments: List[str]


@dataclass
class AuditEntryDTO:
    id: str
    sequence_number: int
    action: str
    entity_kind: str
    entity_id: Optional[str]
    actor_id: str
    changes: Dict[str, Any]
    occurred_at: str


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def campaign(c: Campaign) -> CampaignDTO:
        return CampaignDTO(
            id=str(c.id),
            name=c.name,
            description=c.description,
            start_date=_fmt_date(c.start_date),
            end_date=_fmt_date(c.end_date),
            state=state_value(c),
            owner_id=c.owner_id,
            budget=c.budget,
            estimated_budget=c.estimated_budget,
            priority=c.priority,
            segment=c.segment,
            created_at=_fmt(c.created_at),
            updated_at=_fmt(c.updated_at),
            version=c.version,
        )

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=str(p.id),
            campaign_id=str(p.campaign_id),
            name=p.name,
            description=p.description,
            start_date=_fmt_date(p.start_date),
            end_date=_fmt_date(p.end_date),
            state=state_value(p),
            priority=p.priority,
            budget=p.budget,
            manager_id=p.manager_id,
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
            version=p.version,
        )

    @staticmethod
    def task(t: Task) -> TaskDTO:
        return TaskDTO(
            id=str(t.id),
            project_id=str(t.project_id),
            campaign_id=_str_or_none(t.campaign_id),
            name=t.name,
            description=t.description,
            assignee_id=t.assignee_id,
            due_date=_fmt_date(t.due_date),
            estimated_effort=t.estimated_effort,
            priority=t.priority,
            work_notes=t.work_notes,
            state=state_value(t),
            created_at=_fmt(t.created_at),
            updated_at=_fmt(t.updated_at),
            version=t.version,
        )

    @staticmethod
    def record(kind: EntityKind, record: Any):
        return {
            EntityKind.CAMPAIGN: _Assembler.campaign,
            EntityKind.PROJECT: _Assembler.project,
            EntityKind.TASK: _Assembler.task,
        }[kind](record)

    @staticmethod
    def user(u: User) -> UserDTO:
        return UserDTO(
            id=u.id,
            full_name=u.full_name,
            email=u.email,
            is_active=u.is_active,
            segments=sorted(u.segments),
        )

    @staticmethod
    def audit_entry(e: AuditEntry) -> AuditEntryDTO:
        return AuditEntryDTO(
            id=str(e.id),
            sequence_number=e.sequence_number,
            action=e.action.value,
            entity_kind=e.entity_kind.value,
            entity_id=_str_or_none(e.entity_id),
            actor_id=e.actor_id,
            changes=dict(e.changes),
            occurred_at=_fmt(e.occurred_at),
        )


# ===========================================================================
# INTERFACES
# ===========================================================================

class AbstractEntityStore(abc.ABC):
    """
    Keyed storage for campaigns, projects and tasks.  Performs no validation.
    There is deliberately no public delete.
    """

    @abc.abstractmethod
    def get(self, kind: EntityKind, record_id: uuid.UUID) -> Any:
        """Return the record or raise NotFoundError."""

    @abc.abstractmethod
    def find(self, kind: EntityKind, record_id: uuid.UUID) -> Optional[Any]: ...

    @abc.abstractmethod
    def put(self, kind: EntityKind, record: Any) -> Any: ...

    @abc.abstractmethod
    def children(self, parent_kind: EntityKind, parent_id: uuid.UUID) -> List[Any]:
        """Direct children in stable creation order."""

    @abc.abstractmethod
    def list_all(self, kind: EntityKind) -> List[Any]: ...

    @abc.abstractmethod
    def update_fields(self, kind: EntityKind, record_id: uuid.UUID, partial: Dict[str, Any]) -> Any: ...

    @abc.abstractmethod
    def tombstone(self, kind: EntityKind, record_id: uuid.UUID) -> None:
        """Compensating rollback hook for post-commit integrity failures."""

    @abc.abstractmethod
    def locked(self, kind: EntityKind, record_id: uuid.UUID) -> ContextManager[None]:
        """Serialise read-modify-write sequences on one record."""


class AbstractAuditLog(abc.ABC):
    @abc.abstractmethod
    def append(self, entry: AuditEntry) -> AuditEntry: ...

    @abc.abstractmethod
    def list_all(self) -> List[AuditEntry]: ...

    @abc.abstractmethod
    def list_for_entity(self, kind: EntityKind, entity_id: uuid.UUID) -> List[AuditEntry]: ...

    @abc.abstractmethod
    def tail(self, after_sequence: int = 0, limit: Optional[int] = None) -> List[AuditEntry]: ...


class AbstractUserDirectory(abc.ABC):
    @abc.abstractmethod
    def get(self, user_id: str) -> Optional[User]: ...

    @abc.abstractmethod
    def get_by_email(self, email: str) -> Optional[User]: ...

    @abc.abstractmethod
    def list_all(self) -> List[User]: ...

    @abc.abstractmethod
    def save(self, user: User) -> None: ...

    def user_exists_and_active(self, user_id: str) -> bool:
        user = self.get(user_id)
        return user is not None and user.is_active

    def user_segments(self, user_id: str) -> Set[str]:
        user = self.get(user_id)
        return set(user.segments) if user is not None else set()


# ===========================================================================
# SERVICE SINGLETONS (shared across coordinators)
# ===========================================================================

_lifecycle_svc = LifecycleService()
_budget_svc = BudgetService()
_audit_svc = AuditService()


# ===========================================================================
# LIFECYCLE COORDINATOR
# ===========================================================================

_IMMUTABLE_FIELDS = {"id", "created_at", "updated_at", "version", "previous_state"}
_IMMUTABLE_TASK_FIELDS = _IMMUTABLE_FIELDS | {"project_id", "campaign_id"}
_DATE_FIELDS = {"start_date", "end_date", "due_date"}
_NUMBER_FIELDS = {"budget", "estimated_budget", "estimated_effort"}
_USER_FIELDS = {"owner_id", "manager_id", "assignee_id"}


class LifecycleCoordinator:
    """
    Orchestrates create / update / transition flows and runs the cascade,
    aggregation and budget roll-up logic.

    With `cascade_workers > 1` the projects of a cascading campaign are
    processed on a thread pool; each branch recurses into its tasks
    synchronously, and cascade_down only returns once every branch is done.
    """

    def __init__(
        self,
        store: AbstractEntityStore,
        audit_log: AbstractAuditLog,
        users: AbstractUserDirectory,
        variance_threshold: float = 1.2,
        cascade_workers: int = 1,
        system_actor_id: str = SYSTEM_ACTOR_ID,
    ):
        self.store = store
        self.audit_log = audit_log
        self.users = users
        self.validator = WorkItemValidator(store, users, variance_threshold)
        self.system_actor_id = system_actor_id
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        if cascade_workers > 1:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=cascade_workers, thread_name_prefix="cascade"
            )

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # --- Create operations --------------------------------------------------

    def create_campaign(self, data: Mapping[str, Any], actor_id: Optional[str] = None) -> OperationResult:
        actor = actor_id or self.system_actor_id
        try:
            fields = self.validator.validate_campaign_fields(data)
            refs = self.validator.validate_user_reference(data.get("owner_id"), "owner")
            checks = ValidationResult().merge(fields).merge(refs)
            checks.merge(self.validator.check_duplicate_campaign_name(data.get("name")))
            if not checks.valid:
                error_cls = FieldValidationError if not fields.valid else InvalidReferenceError
                raise error_cls.from_result(checks)

            committed = self.store.put(EntityKind.CAMPAIGN, self._build_campaign(data))
            committed, post = self._verify_committed(
                EntityKind.CAMPAIGN,
                committed.id,
                lambda rec: self.validator.validate_campaign_fields(self._record_data(rec)),
            )
        except WorkItemError as exc:
            return self._rejected(EntityKind.CAMPAIGN, actor, exc)

        self._audit(AuditAction.CREATED, EntityKind.CAMPAIGN, committed.id, actor,
                    _audit_svc.snapshot(committed))
        warnings = checks.warnings + post.warnings
        if warnings:
            logger.warning("Campaign %s created with warnings: %s", committed.id, "; ".join(warnings))
        logger.info("Created campaign %s (%s)", committed.id, committed.name)
        return OperationResult.ok(committed.id, warnings)

    def create_project(
        self,
        campaign_id: Any,
        data: Mapping[str, Any],
        actor_id: Optional[str] = None,
    ) -> OperationResult:
        """
        The parent campaign is checked first; if it fails, nothing else runs
        and the parent validation detail is attached to the failure.
        """
        actor = actor_id or self.system_actor_id
        try:
            parent = self.validator.validate_parent_campaign(campaign_id, data)
            if not parent.valid:
                raise self._parent_error(parent).from_result(parent, parent_validation=parent)

            fields = self.validator.validate_project_fields(data)
            refs = self.validator.validate_user_reference(data.get("manager_id"), "manager")
            checks = ValidationResult(warnings=list(parent.warnings)).merge(fields).merge(refs)
            if not checks.valid:
                error_cls = FieldValidationError if not fields.valid else InvalidReferenceError
                raise error_cls.from_result(checks, parent_validation=parent)

            project = self._build_project(as_uuid(campaign_id), data)
            committed = self.store.put(EntityKind.PROJECT, project)
            committed, post = self._verify_committed(
                EntityKind.PROJECT,
                committed.id,
                self._project_integrity,
                parent_validation=parent,
            )
        except WorkItemError as exc:
            return self._rejected(EntityKind.PROJECT, actor, exc)

        self._audit(AuditAction.CREATED, EntityKind.PROJECT, committed.id, actor,
                    _audit_svc.snapshot(committed))
        if committed.budget is not None:
            self.roll_up_budget(committed.id, actor_id=actor)
        logger.info("Created project %s under campaign %s", committed.id, committed.campaign_id)
        return OperationResult.ok(committed.id, checks.warnings + post.warnings, parent)

    def create_task(
        self,
        project_id: Any,
        data: Mapping[str, Any],
        actor_id: Optional[str] = None,
    ) -> OperationResult:
        actor = actor_id or self.system_actor_id
        try:
            parent = self.validator.validate_parent_project(project_id, data)
            if not parent.valid:
                raise self._parent_error(parent).from_result(parent, parent_validation=parent)

            fields = self.validator.validate_task_fields(data)
            checks = ValidationResult(warnings=list(parent.warnings)).merge(fields)
            if data.get("assignee_id"):
                checks.merge(self.validator.validate_assignee(data.get("assignee_id")))
            if not checks.valid:
                error_cls = FieldValidationError if not fields.valid else InvalidReferenceError
                raise error_cls.from_result(checks, parent_validation=parent)

            project = self.store.get(EntityKind.PROJECT, as_uuid(project_id))
            committed = self.store.put(EntityKind.TASK, self._build_task(project, data))
            committed, post = self._verify_committed(
                EntityKind.TASK,
                committed.id,
                self._task_integrity,
                parent_validation=parent,
            )
        except WorkItemError as exc:
            return self._rejected(EntityKind.TASK, actor, exc)

        self._audit(AuditAction.CREATED, EntityKind.TASK, committed.id, actor,
                    _audit_svc.snapshot(committed))
        logger.info("Created task %s under project %s", committed.id, committed.project_id)
        return OperationResult.ok(committed.id, checks.warnings + post.warnings, parent)

    # --- Read operations ----------------------------------------------------

    def get_campaign(self, campaign_id: Any) -> CampaignDTO:
        return _Assembler.campaign(self._get(EntityKind.CAMPAIGN, campaign_id))

    def get_project(self, project_id: Any) -> ProjectDTO:
        return _Assembler.project(self._get(EntityKind.PROJECT, project_id))

    def get_task(self, task_id: Any) -> TaskDTO:
        return _Assembler.task(self._get(EntityKind.TASK, task_id))

    def list_children(self, parent_kind: Any, parent_id: Any) -> list:
        parent_kind = EntityKind(parent_kind)
        parent = self._get(parent_kind, parent_id)
        child_kind = CHILD_KIND[parent_kind]
        if child_kind is None:
            return []
        return [_Assembler.record(child_kind, c) for c in self.store.children(parent_kind, parent.id)]

    def list_campaigns(self, viewer_id: Optional[str] = None) -> List[CampaignDTO]:
        """
        All campaigns, or only those visible to `viewer_id`: campaigns without
        a segment plus those in one of the viewer's segments.
        """
        campaigns = self.store.list_all(EntityKind.CAMPAIGN)
        if viewer_id is not None:
            segments = self.users.user_segments(viewer_id)
            campaigns = [c for c in campaigns if c.segment is None or c.segment in segments]
        return [_Assembler.campaign(c) for c in campaigns]

    def get_audit_trail(self, kind: Any, record_id: Any) -> List[AuditEntryDTO]:
        kind = EntityKind(kind)
        key = as_uuid(record_id)
        if key is None:
            return []
        return [_Assembler.audit_entry(e) for e in self.audit_log.list_for_entity(kind, key)]

    def tail_audit(self, after_sequence: int = 0, limit: Optional[int] = None) -> List[AuditEntryDTO]:
        return [_Assembler.audit_entry(e) for e in self.audit_log.tail(after_sequence, limit)]

    # --- Mutation operations ------------------------------------------------

    def update_fields(
        self,
        kind: Any,
        record_id: Any,
        partial: Mapping[str, Any],
        actor_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Apply a partial update after validating the merged record.

        State changes must go through transition_state.  A project whose
        campaign_id changes is re-parented; both campaigns' budgets roll up.
        """
        kind = EntityKind(kind)
        actor = actor_id or self.system_actor_id
        partial = dict(partial)
        try:
            key = self._key(kind, record_id)
            with self.store.locked(kind, key):
                current = self.store.get(kind, key)
                checks = self._validate_update(kind, current, partial)
                changes = self._coerce_changes(kind, partial)
                updated = self.store.update_fields(kind, key, changes)
                if kind == EntityKind.PROJECT and updated.campaign_id != current.campaign_id:
                    self._verify_reparented(current, updated, changes)
        except WorkItemError as exc:
            return self._rejected(kind, actor, exc, entity_id=as_uuid(record_id))
        except NotFoundError as exc:
            return OperationResult.failed(exc)

        diff = _audit_svc.diff(current, updated, changes.keys())
        if diff:
            self._audit(AuditAction.UPDATED, kind, key, actor, diff)
        if kind == EntityKind.PROJECT and ("budget" in diff or "campaign_id" in diff):
            previous = current.campaign_id if "campaign_id" in diff else None
            self.roll_up_budget(key, previous_campaign_id=previous, actor_id=actor)
        logger.info("Updated %s %s: %s", kind.value, key, ", ".join(sorted(diff)) or "no changes")
        return OperationResult.ok(key, checks.warnings)

    def transition_state(
        self,
        kind: Any,
        record_id: Any,
        new_state: Any,
        actor_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Move a record to `new_state`.

        Any non-terminal state may move to any state of the kind's label set.
        Terminal states can only be left through unarchive.  Re-applying the
        current state is a no-op.
        """
        kind = EntityKind(kind)
        actor = actor_id or self.system_actor_id
        try:
            key = self._key(kind, record_id)
            try:
                target = _lifecycle_svc.coerce_state(kind, new_state)
            except ValueError as exc:
                raise FieldValidationError([str(exc)])

            with self.store.locked(kind, key):
                current = self.store.get(kind, key)
                before = state_value(current)
                if before == target.value:
                    return OperationResult.ok(key)
                if before in TERMINAL_STATES:
                    hint = "; use unarchive" if before == ARCHIVED else ""
                    raise StateConstraintError(
                        [f"{kind.value.capitalize()} {key} is {before} and cannot "
                         f"transition to {target.value}{hint}"]
                    )
                self.store.update_fields(kind, key, _lifecycle_svc.transition_changes(current, target))
        except WorkItemError as exc:
            return self._rejected(kind, actor, exc, entity_id=as_uuid(record_id))
        except NotFoundError as exc:
            return OperationResult.failed(exc)

        self._audit_state_change(kind, key, actor, before, target.value)
        logger.info("%s %s: %s -> %s", kind.value.capitalize(), key, before, target.value)

        if kind != EntityKind.TASK and target.value in (ARCHIVED, CANCELLED):
            self.cascade_down(kind, key, target.value, actor_id=actor)
        if kind != EntityKind.CAMPAIGN and target.value in TERMINAL_STATES:
            self.on_child_terminal(kind, key, actor_id=actor)
        return OperationResult.ok(key)

    def unarchive(self, kind: Any, record_id: Any, actor_id: Optional[str] = None) -> OperationResult:
        """Restore an archived campaign or project to the state it held before archival."""
        kind = EntityKind(kind)
        actor = actor_id or self.system_actor_id
        try:
            key = self._key(kind, record_id)
            if kind == EntityKind.TASK:
                raise StateConstraintError(["Tasks cannot be archived or unarchived"])
            with self.store.locked(kind, key):
                current = self.store.get(kind, key)
                if state_value(current) != ARCHIVED:
                    raise StateConstraintError(
                        [f"{kind.value.capitalize()} {key} is {state_value(current)}, not archived"]
                    )
                restored = STATE_ENUMS[kind](current.previous_state or INITIAL_STATES[kind])
                self.store.update_fields(kind, key, {"state": restored, "previous_state": None})
        except WorkItemError as exc:
            return self._rejected(kind, actor, exc, entity_id=as_uuid(record_id))
        except NotFoundError as exc:
            return OperationResult.failed(exc)

        self._audit_state_change(kind, key, actor, ARCHIVED, restored.value, unarchived=True)
        logger.info("Unarchived %s %s to %s", kind.value, key, restored.value)
        return OperationResult.ok(key)

    # --- Cascade & aggregation ---------------------------------------------

    def cascade_down(
        self,
        parent_kind: Any,
        parent_id: Any,
        new_state: Any,
        actor_id: Optional[str] = None,
    ) -> int:
        """
        Push an archival or cancellation down to every descendant.

        Children already in the target state are left alone (and not audited),
        so repeating a cascade is a no-op.  Returns the number of records changed.
        """
        parent_kind = EntityKind(parent_kind)
        actor = actor_id or self.system_actor_id
        target = new_state.value if hasattr(new_state, "value") else str(new_state)
        child_kind = CHILD_KIND[parent_kind]
        if child_kind is None:
            return 0
        key = self._key(parent_kind, parent_id)
        children = self.store.children(parent_kind, key)

        if self._executor is not None and parent_kind == EntityKind.CAMPAIGN and len(children) > 1:
            futures = [
                self._executor.submit(self._cascade_child, child_kind, c.id, target, actor)
                for c in children
            ]
            concurrent.futures.wait(futures)
            return sum(f.result() for f in futures)
        return sum(self._cascade_child(child_kind, c.id, target, actor) for c in children)

    def on_child_terminal(self, child_kind: Any, child_id: Any, actor_id: Optional[str] = None) -> bool:
        """
        Bottom-up aggregation: when every child of the parent is terminal,
        the parent is completed with today's end date, then the grandparent
        is re-evaluated.  Returns True if the parent was closed.
        """
        child_kind = EntityKind(child_kind)
        actor = actor_id or self.system_actor_id
        parent_kind = PARENT_KIND[child_kind]
        if parent_kind is None:
            return False
        child = self.store.find(child_kind, as_uuid(child_id))
        if child is None:
            return False
        # Authoritative edge only; Task.campaign_id is never used here
        parent_id = child.campaign_id if child_kind == EntityKind.PROJECT else child.project_id

        with self.store.locked(parent_kind, parent_id):
            parent = self.store.find(parent_kind, parent_id)
            if parent is None or is_terminal(parent):
                return False
            siblings = self.store.children(parent_kind, parent_id)
            if not _lifecycle_svc.all_terminal(siblings):
                return False
            before = state_value(parent)
            closed = self.store.update_fields(
                parent_kind, parent_id, _lifecycle_svc.completion_changes(parent_kind)
            )

        self._audit_state_change(
            parent_kind, parent_id, actor, before, state_value(closed),
            aggregated_from=child_kind.value, end_date=_fmt_date(closed.end_date),
        )
        logger.info(
            "Auto-completed %s %s: all %d %ss are terminal",
            parent_kind.value, parent_id, len(siblings), child_kind.value,
        )
        self.on_child_terminal(parent_kind, parent_id, actor_id=actor)
        return True

    def roll_up_budget(
        self,
        project_id: Any,
        previous_campaign_id: Optional[uuid.UUID] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, float]:
        """
        Recompute campaign budgets as the sum of their projects' budgets.
        Both the current and the previous campaign are updated after a re-parent.
        """
        actor = actor_id or self.system_actor_id
        project = self._get(EntityKind.PROJECT, project_id)
        totals: Dict[str, float] = {}
        for campaign_id in dict.fromkeys([project.campaign_id, previous_campaign_id]):
            if campaign_id is None:
                continue
            total = self._roll_up_campaign(campaign_id, actor)
            if total is not None:
                totals[str(campaign_id)] = total
        return totals

    # --- Internals: building records ---------------------------------------

    def _build_campaign(self, data: Mapping[str, Any]) -> Campaign:
        return Campaign(
            name=data["name"],
            description=data.get("description") or "",
            start_date=parse_date(data.get("start_date")),
            end_date=parse_date(data.get("end_date")),
            state=CampaignState(data.get("state") or INITIAL_STATES[EntityKind.CAMPAIGN]),
            owner_id=_str_or_none(data.get("owner_id")),
            budget=parse_number(data.get("budget")) or 0.0,
            estimated_budget=parse_number(data.get("estimated_budget")),
            priority=parse_priority(data.get("priority")) or 3,
            segment=data.get("segment"),
        )

    def _build_project(self, campaign_id: uuid.UUID, data: Mapping[str, Any]) -> Project:
        return Project(
            campaign_id=campaign_id,
            name=data["name"],
            description=data.get("description") or "",
            start_date=parse_date(data.get("start_date")),
            end_date=parse_date(data.get("end_date")),
            state=ProjectState(data.get("state") or INITIAL_STATES[EntityKind.PROJECT]),
            priority=parse_priority(data.get("priority")) or 3,
            budget=parse_number(data.get("budget")),
            manager_id=_str_or_none(data.get("manager_id")),
        )

    def _build_task(self, project: Project, data: Mapping[str, Any]) -> Task:
        return Task(
            project_id=project.id,
            campaign_id=project.campaign_id,
            name=data["name"],
            description=data.get("description") or "",
            assignee_id=_str_or_none(data.get("assignee_id")),
            due_date=parse_date(data.get("due_date")),
            estimated_effort=parse_number(data.get("estimated_effort")),
            priority=parse_priority(data.get("priority")) or 3,
            work_notes=data.get("work_notes") or "",
            state=TaskState(data.get("state") or INITIAL_STATES[EntityKind.TASK]),
        )

    @staticmethod
    def _record_data(record: Any) -> Dict[str, Any]:
        data = dataclasses.asdict(record)
        data["state"] = state_value(record)
        return data

    # --- Internals: validation ----------------------------------------------

    @staticmethod
    def _parent_error(parent: ValidationResult) -> type:
        return InvalidReferenceError if not parent.data.get("found") else StateConstraintError

    def _project_integrity(self, record: Project) -> ValidationResult:
        data = self._record_data(record)
        return (
            self.validator.validate_parent_campaign(record.campaign_id, data)
            .merge(self.validator.validate_project_fields(data))
        )

    def _task_integrity(self, record: Task) -> ValidationResult:
        data = self._record_data(record)
        return (
            self.validator.validate_parent_project(record.project_id, data)
            .merge(self.validator.validate_task_fields(data))
            .merge(self.validator.validate_assignee(record.assignee_id))
        )

    def _verify_committed(
        self,
        kind: EntityKind,
        record_id: uuid.UUID,
        check: Callable[[Any], ValidationResult],
        parent_validation: Optional[ValidationResult] = None,
    ):
        """
        Re-run the checks against the committed record.  On failure the insert
        is tombstoned and a single PostCommitIntegrityError is raised.
        """
        committed = self.store.get(kind, record_id)
        result = check(committed)
        if not result.valid:
            self.store.tombstone(kind, record_id)
            logger.error(
                "Post-commit validation failed for %s %s, rolled back: %s",
                kind.value, record_id, "; ".join(result.errors),
            )
            raise PostCommitIntegrityError.from_result(
                result, parent_validation=parent_validation, entity_id=record_id
            )
        return committed, result

    def _verify_reparented(self, previous: Project, committed: Project, changes: Mapping[str, Any]) -> None:
        """
        Re-check the new campaign of a moved project.  A campaign closed
        between the first check and the write would never cascade to the
        project, so the previous field values are restored instead.
        """
        parent = self.validator.validate_parent_campaign(
            committed.campaign_id, self._record_data(committed)
        )
        if parent.valid:
            return
        self.store.update_fields(
            EntityKind.PROJECT, committed.id, {name: getattr(previous, name) for name in changes}
        )
        logger.error(
            "Post-commit validation failed for project %s, move to campaign %s reverted: %s",
            committed.id, committed.campaign_id, "; ".join(parent.errors),
        )
        raise PostCommitIntegrityError.from_result(
            parent, parent_validation=parent, entity_id=committed.id
        )

    def _validate_update(self, kind: EntityKind, current: Any, partial: Dict[str, Any]) -> ValidationResult:
        label = kind.value.capitalize()
        known = {f.name for f in dataclasses.fields(ENTITY_TYPES[kind])}
        immutable = _IMMUTABLE_TASK_FIELDS if kind == EntityKind.TASK else _IMMUTABLE_FIELDS

        shape = ValidationResult()
        for name in partial:
            if name == "state":
                shape.add_error(f"{label} state must be changed through transition_state")
            elif name not in known:
                shape.add_error(f"Unknown {kind.value} field {name!r}")
            elif name in immutable:
                shape.add_error(f"{label} field {name!r} cannot be updated")
        if not shape.valid:
            raise FieldValidationError.from_result(shape)

        merged = {**self._record_data(current), **partial}
        if kind == EntityKind.CAMPAIGN:
            fields = self.validator.validate_campaign_fields(merged)
        elif kind == EntityKind.PROJECT:
            fields = self.validator.validate_project_fields(merged)
        else:
            fields = self.validator.validate_task_fields(merged)

        refs = ValidationResult()
        if "owner_id" in partial:
            refs.merge(self.validator.validate_user_reference(partial["owner_id"], "owner"))
        if "manager_id" in partial:
            refs.merge(self.validator.validate_user_reference(partial["manager_id"], "manager"))
        if partial.get("assignee_id"):
            refs.merge(self.validator.validate_assignee(partial["assignee_id"]))
        if kind == EntityKind.CAMPAIGN and "name" in partial:
            refs.merge(self.validator.check_duplicate_campaign_name(partial["name"], exclude_id=current.id))

        parent = None
        if kind == EntityKind.PROJECT and "campaign_id" in partial:
            if as_uuid(partial["campaign_id"]) != current.campaign_id:
                parent = self.validator.validate_parent_campaign(partial["campaign_id"], merged)

        checks = ValidationResult().merge(fields).merge(refs)
        if parent is not None:
            checks.merge(parent)
        if not checks.valid:
            if not fields.valid:
                error_cls = FieldValidationError
            elif parent is not None and not parent.valid and parent.data.get("found"):
                error_cls = StateConstraintError
            else:
                error_cls = InvalidReferenceError
            raise error_cls.from_result(checks, parent_validation=parent)
        return checks

    @staticmethod
    def _coerce_changes(kind: EntityKind, partial: Dict[str, Any]) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        for name, value in partial.items():
            if name in _DATE_FIELDS:
                value = parse_date(value)
            elif name in _NUMBER_FIELDS:
                value = parse_number(value)
                if value is None and kind == EntityKind.CAMPAIGN and name == "budget":
                    value = 0.0
            elif name == "priority":
                value = parse_priority(value) or 3
            elif name in _USER_FIELDS:
                value = _str_or_none(value)
            elif name == "campaign_id":
                value = as_uuid(value)
            elif name in ("description", "work_notes") and value is None:
                value = ""
            changes[name] = value
        return changes

    # --- Internals: cascade & roll-up ---------------------------------------

    def _cascade_child(self, kind: EntityKind, child_id: uuid.UUID, new_state: str, actor: str) -> int:
        target = _lifecycle_svc.cascade_state_for(kind, new_state)
        changed = 0
        with self.store.locked(kind, child_id):
            child = self.store.find(kind, child_id)
            if child is None:
                return 0
            before = state_value(child)
            if _lifecycle_svc.needs_cascade(child, target):
                enum_target = _lifecycle_svc.coerce_state(kind, target)
                self.store.update_fields(kind, child_id, _lifecycle_svc.transition_changes(child, enum_target))
                changed = 1
        if changed:
            self._audit_state_change(kind, child_id, actor, before, target, cascaded=True)
            logger.debug("Cascaded %s %s: %s -> %s", kind.value, child_id, before, target)
        return changed + self.cascade_down(kind, child_id, new_state, actor_id=actor)

    def _roll_up_campaign(self, campaign_id: uuid.UUID, actor: str) -> Optional[float]:
        with self.store.locked(EntityKind.CAMPAIGN, campaign_id):
            campaign = self.store.find(EntityKind.CAMPAIGN, campaign_id)
            if campaign is None:
                return None
            total = _budget_svc.total_for(self.store.children(EntityKind.CAMPAIGN, campaign_id))
            if campaign.budget == total:
                return total
            self.store.update_fields(EntityKind.CAMPAIGN, campaign_id, {"budget": total})
        self._audit(
            AuditAction.UPDATED, EntityKind.CAMPAIGN, campaign_id, actor,
            {"budget": {"from": campaign.budget, "to": total}, "rolled_up": True},
        )
        logger.info("Rolled up campaign %s budget: %s -> %s", campaign_id, campaign.budget, total)
        return total

    # --- Internals: misc ----------------------------------------------------

    @staticmethod
    def _key(kind: EntityKind, record_id: Any) -> uuid.UUID:
        key = as_uuid(record_id)
        if key is None:
            raise NotFoundError(f"{kind.value.capitalize()} {record_id} not found.")
        return key

    def _get(self, kind: EntityKind, record_id: Any) -> Any:
        return self.store.get(kind, self._key(kind, record_id))

    def _audit(self, action: AuditAction, kind: EntityKind, entity_id: Optional[uuid.UUID],
               actor: str, changes: Dict[str, Any]) -> AuditEntry:
        return self.audit_log.append(_audit_svc.entry(action, kind, entity_id, actor, changes))

    def _audit_state_change(self, kind: EntityKind, entity_id: uuid.UUID, actor: str,
                            before: str, after: str, **extra: Any) -> None:
        changes: Dict[str, Any] = {"state": {"from": before, "to": after}}
        changes.update(extra)
        self._audit(AuditAction.STATE_CHANGED, kind, entity_id, actor, changes)

    def _rejected(
        self,
        kind: EntityKind,
        actor: str,
        exc: WorkItemError,
        entity_id: Optional[uuid.UUID] = None,
    ) -> OperationResult:
        self._audit(
            AuditAction.VALIDATION_FAILED, kind, exc.entity_id or entity_id, actor,
            {"error_type": exc.error_type, "errors": list(exc.errors)},
        )
        logger.error("%s rejected (%s): %s", kind.value.capitalize(), exc.error_type, "; ".join(exc.errors))
        return OperationResult.failed(exc)


# ===========================================================================
# USE CASES — USER DIRECTORY
# ===========================================================================

@dataclass
class RegisterUserCommand:
    full_name: str
    email: str
    segments: List[str] = field(default_factory=list)
    is_active: bool = True


class RegisterUserUseCase:
    def execute(self, cmd: RegisterUserCommand, users: AbstractUserDirectory) -> UserDTO:
        if users.get_by_email(cmd.email) is not None:
            raise ApplicationError(f"A user with email {cmd.email} already exists.")
        user = User(
            full_name=cmd.full_name,
            email=cmd.email,
            is_active=cmd.is_active,
            segments=set(cmd.segments),
        )
        users.save(user)
        logger.info("Registered user %s (%s)", user.id, user.email)
        return _Assembler.user(user)


class GetUserUseCase:
    def execute(self, user_id: str, users: AbstractUserDirectory) -> UserDTO:
        user = users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        return _Assembler.user(user)


class DeactivateUserUseCase:
    """Inactive users stay referenced by existing tasks but cannot be assigned new ones."""

    def execute(self, user_id: str, users: AbstractUserDirectory) -> UserDTO:
        user = users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        user.is_active = False
        users.save(user)
        logger.info("Deactivated user %s", user_id)
        return _Assembler.user(user)
