"""
Tests for LifecycleCoordinator.

Tests cover:
- Create flows with field, reference and parent-state checks
- Post-commit re-validation and compensating rollback
- State transitions, top-down cascade and its idempotence
- Bottom-up completion aggregation
- Budget roll-up, including re-parenting
- Field updates, unarchive, segment-filtered listing and the audit trail
"""
import uuid
from datetime import datetime, timezone

import pytest

from application import NotFoundError
from model import AuditAction, CampaignState, EntityKind


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _state_changes(db, kind: EntityKind, record_id: str):
    return [
        e for e in db.audit_log.list_for_entity(kind, uuid.UUID(record_id))
        if e.action == AuditAction.STATE_CHANGED
    ]


@pytest.fixture
def tree(coordinator, campaign_id, make_task):
    """Campaign Q1 with two projects holding two tasks each."""
    projects = {}
    for i in range(2):
        result = coordinator.create_project(campaign_id, {"name": f"Project {i}"})
        assert result.success, result.errors
        projects[result.id] = [make_task(result.id, name=f"Task {i}.{j}") for j in range(2)]
    return projects


# ========== Campaign creation ==========

def test_create_campaign_then_get_returns_same_record(coordinator, assignee):
    data = {
        "name": "Q1",
        "description": "Quarter one push",
        "start_date": "2026-01-01",
        "end_date": "2026-03-31",
        "state": "planned",
        "owner_id": assignee.id,
        "budget": 50000,
        "estimated_budget": 52000,
        "priority": 2,
    }
    result = coordinator.create_campaign(data)
    assert result.success
    assert result.errors == []
    assert result.warnings == []

    campaign = coordinator.get_campaign(result.id)
    assert campaign.id == result.id
    assert campaign.name == "Q1"
    assert campaign.description == "Quarter one push"
    assert campaign.start_date == "2026-01-01"
    assert campaign.end_date == "2026-03-31"
    assert campaign.state == "planned"
    assert campaign.owner_id == assignee.id
    assert campaign.budget == 50000
    assert campaign.estimated_budget == 52000
    assert campaign.priority == 2


def test_create_campaign_defaults(coordinator):
    result = coordinator.create_campaign({"name": "Bare"})
    campaign = coordinator.get_campaign(result.id)
    assert campaign.state == "draft"
    assert campaign.budget == 0
    assert campaign.priority == 3


def test_create_campaign_audits_creation(db, coordinator):
    result = coordinator.create_campaign({"name": "Q1"}, actor_id="alice")
    trail = coordinator.get_audit_trail("campaign", result.id)
    assert [e.action for e in trail] == ["created"]
    assert trail[0].actor_id == "alice"
    assert trail[0].changes["name"] == "Q1"


def test_invalid_campaign_returns_every_error_and_stores_nothing(db, coordinator):
    result = coordinator.create_campaign({"name": "", "priority": 7, "budget": -3})
    assert not result.success
    assert result.error_type == "field_validation"
    assert len(result.errors) == 3
    assert db.store.list_all(EntityKind.CAMPAIGN) == []

    entry = db.audit_log.list_all()[-1]
    assert entry.action == AuditAction.VALIDATION_FAILED
    assert entry.entity_id is None
    assert entry.actor_id == "system"


def test_missing_owner_is_a_reference_error(coordinator):
    result = coordinator.create_campaign({"name": "Q1", "owner_id": "ghost"})
    assert not result.success
    assert result.error_type == "invalid_reference"


def test_variance_of_22_percent_warns_once(coordinator):
    result = coordinator.create_campaign(
        {"name": "Big", "budget": 50000, "estimated_budget": 61000}
    )
    assert result.success
    assert len(result.warnings) == 1
    assert "22%" in result.warnings[0]


def test_variance_of_8_percent_is_silent(coordinator):
    result = coordinator.create_campaign(
        {"name": "Small", "budget": 50000, "estimated_budget": 54000}
    )
    assert result.success
    assert result.warnings == []


def test_duplicate_campaign_name_is_only_a_warning(coordinator, campaign_id):
    result = coordinator.create_campaign({"name": "Q1"})
    assert result.success
    assert result.warnings == ["Another campaign with the same name exists"]


# ========== Project & task creation ==========

def test_q1_p1_t1_scenario(coordinator, assignee, campaign_id, project_id, make_task):
    task_id = make_task(project_id, name="T1")
    assert len({campaign_id, project_id, task_id}) == 3

    children = coordinator.list_children("campaign", campaign_id)
    assert [p.id for p in children] == [project_id]
    assert [t.id for t in coordinator.list_children("project", project_id)] == [task_id]

    task = coordinator.get_task(task_id)
    assert task.assignee_id == assignee.id
    assert task.campaign_id == campaign_id
    assert coordinator.get_campaign(campaign_id).budget == 50000


def test_project_under_missing_campaign(db, coordinator):
    result = coordinator.create_project(str(uuid.uuid4()), {"name": "Orphan"})
    assert not result.success
    assert result.error_type == "invalid_reference"
    assert "Invalid campaign reference" in result.errors[0]
    assert result.parent_validation is not None
    assert not result.parent_validation.valid
    assert db.store.list_all(EntityKind.PROJECT) == []


@pytest.mark.parametrize("state", ["cancelled", "archived"])
def test_project_under_blocking_campaign(coordinator, campaign_id, project_id, state):
    assert coordinator.transition_state("campaign", campaign_id, state).success
    before = len(coordinator.list_children("campaign", campaign_id))

    result = coordinator.create_project(campaign_id, {"name": "Late"})
    assert not result.success
    assert result.error_type == "state_constraint"
    assert result.parent_validation.data["campaign_state"] == state
    assert len(coordinator.list_children("campaign", campaign_id)) == before


def test_project_field_errors_carry_parent_validation(coordinator, campaign_id):
    result = coordinator.create_project(campaign_id, {"name": "p" * 101, "budget": "abc"})
    assert not result.success
    assert result.error_type == "field_validation"
    assert len(result.errors) == 2
    assert result.parent_validation.valid
    assert result.parent_validation.data["project_count"] == 0


def test_project_dates_outside_campaign_warn_once(coordinator):
    campaign = coordinator.create_campaign(
        {"name": "Window", "start_date": "2026-01-01", "end_date": "2026-03-31"}
    )
    result = coordinator.create_project(
        campaign.id, {"name": "Overrun", "start_date": "2026-02-01", "end_date": "2026-05-01"}
    )
    assert result.success
    assert len(result.warnings) == 1
    assert "outside campaign date range" in result.warnings[0]


@pytest.mark.parametrize("state", ["completed", "cancelled"])
def test_task_under_closed_project(coordinator, assignee, project_id, state):
    assert coordinator.transition_state("project", project_id, state).success

    result = coordinator.create_task(project_id, {"name": "Late", "assignee_id": assignee.id})
    assert not result.success
    assert result.error_type == "state_constraint"
    assert coordinator.list_children("project", project_id) == []


def test_task_requires_active_assignee(coordinator, project_id, inactive_user):
    missing = coordinator.create_task(project_id, {"name": "T"})
    assert missing.error_type == "field_validation"

    inactive = coordinator.create_task(project_id, {"name": "T", "assignee_id": inactive_user.id})
    assert inactive.error_type == "invalid_reference"
    assert "inactive" in inactive.errors[0]

    unknown = coordinator.create_task(project_id, {"name": "T", "assignee_id": "ghost"})
    assert unknown.error_type == "invalid_reference"


def test_task_under_missing_project(coordinator, assignee):
    result = coordinator.create_task(uuid.uuid4(), {"name": "T", "assignee_id": assignee.id})
    assert not result.success
    assert result.error_type == "invalid_reference"


# ========== Post-commit rollback ==========

def test_project_rolled_back_when_parent_changes_after_commit(db, coordinator, campaign_id, monkeypatch):
    check_parent = coordinator.validator.validate_parent_campaign
    calls = []

    def cancelled_after_commit(cid, project_data=None):
        calls.append(cid)
        if len(calls) == 2:
            db.store.update_fields(
                EntityKind.CAMPAIGN, uuid.UUID(campaign_id), {"state": CampaignState.CANCELLED}
            )
        return check_parent(cid, project_data)

    monkeypatch.setattr(coordinator.validator, "validate_parent_campaign", cancelled_after_commit)
    result = coordinator.create_project(campaign_id, {"name": "Doomed"})

    assert not result.success
    assert result.error_type == "post_commit_integrity"
    assert len(result.errors) == 1
    assert db.store.children(EntityKind.CAMPAIGN, uuid.UUID(campaign_id)) == []

    project_entries = [e for e in db.audit_log.list_all() if e.entity_kind == EntityKind.PROJECT]
    assert [e.action for e in project_entries] == [AuditAction.VALIDATION_FAILED]
    with pytest.raises(NotFoundError):
        coordinator.get_project(project_entries[0].entity_id)


def test_task_rolled_back_when_assignee_deactivated_after_commit(
    db, coordinator, project_id, assignee, monkeypatch
):
    check_assignee = coordinator.validator.validate_assignee
    calls = []

    def deactivated_after_commit(user_id):
        calls.append(user_id)
        if len(calls) == 2:
            user = db.users.get(assignee.id)
            user.is_active = False
            db.users.save(user)
        return check_assignee(user_id)

    monkeypatch.setattr(coordinator.validator, "validate_assignee", deactivated_after_commit)
    result = coordinator.create_task(project_id, {"name": "Doomed", "assignee_id": assignee.id})

    assert not result.success
    assert result.error_type == "post_commit_integrity"
    assert coordinator.list_children("project", project_id) == []


def test_campaign_rolled_back_when_fields_fail_after_commit(db, coordinator, monkeypatch):
    check_fields = coordinator.validator.validate_campaign_fields
    calls = []

    def invalid_after_commit(data):
        calls.append(data)
        result = check_fields(data)
        if len(calls) == 2:
            result.add_error("Campaign name was changed concurrently")
        return result

    monkeypatch.setattr(coordinator.validator, "validate_campaign_fields", invalid_after_commit)
    result = coordinator.create_campaign({"name": "Doomed"})

    assert not result.success
    assert result.error_type == "post_commit_integrity"
    assert len(result.errors) == 1
    assert db.store.list_all(EntityKind.CAMPAIGN) == []

    campaign_entries = [e for e in db.audit_log.list_all() if e.entity_kind == EntityKind.CAMPAIGN]
    assert [e.action for e in campaign_entries] == [AuditAction.VALIDATION_FAILED]


def test_move_reverted_when_target_campaign_archived_during_update(
    db, coordinator, campaign_id, project_id, monkeypatch
):
    target = coordinator.create_campaign({"name": "Q2"}).id
    check_parent = coordinator.validator.validate_parent_campaign
    calls = []

    def archived_after_check(cid, project_data=None):
        result = check_parent(cid, project_data)
        calls.append(cid)
        if len(calls) == 1:
            assert coordinator.transition_state("campaign", target, "archived").success
        return result

    monkeypatch.setattr(coordinator.validator, "validate_parent_campaign", archived_after_check)
    result = coordinator.update_fields("project", project_id, {"campaign_id": target})

    assert not result.success
    assert result.error_type == "post_commit_integrity"
    assert len(result.errors) == 1
    assert coordinator.get_campaign(target).state == "archived"
    assert coordinator.list_children("campaign", target) == []

    project = coordinator.get_project(project_id)
    assert project.campaign_id == campaign_id
    assert [p.id for p in coordinator.list_children("campaign", campaign_id)] == [project_id]

    updates = [
        e for e in db.audit_log.list_for_entity(EntityKind.PROJECT, uuid.UUID(project_id))
        if e.action == AuditAction.UPDATED
    ]
    assert updates == []


# ========== Transitions ==========

def test_transitions_are_permissive_until_terminal(db, coordinator, campaign_id):
    assert coordinator.transition_state("campaign", campaign_id, "completed").success
    assert coordinator.get_campaign(campaign_id).state == "completed"

    reopened = coordinator.transition_state("campaign", campaign_id, "active")
    assert not reopened.success
    assert reopened.error_type == "state_constraint"
    assert coordinator.get_campaign(campaign_id).state == "completed"


def test_reapplying_current_state_is_a_noop(db, coordinator, campaign_id):
    assert coordinator.transition_state("campaign", campaign_id, "active").success
    before = len(db.audit_log.list_all())
    assert coordinator.transition_state("campaign", campaign_id, "active").success
    assert len(db.audit_log.list_all()) == before


def test_transition_to_unknown_state(coordinator, project_id):
    result = coordinator.transition_state("project", project_id, "exploded")
    assert not result.success
    assert result.error_type == "field_validation"


def test_transition_unknown_record(coordinator):
    result = coordinator.transition_state("task", uuid.uuid4(), "completed")
    assert not result.success
    assert result.error_type == "not_found"


def test_transition_is_audited_with_actor(db, coordinator, campaign_id):
    coordinator.transition_state("campaign", campaign_id, "active", actor_id="bob")
    [entry] = _state_changes(db, EntityKind.CAMPAIGN, campaign_id)
    assert entry.actor_id == "bob"
    assert entry.changes["state"] == {"from": "draft", "to": "active"}


# ========== Cascade ==========

def test_archiving_campaign_cascades_to_every_descendant(db, coordinator, campaign_id, tree):
    first_project, first_tasks = next(iter(tree.items()))
    assert coordinator.transition_state("task", first_tasks[0], "completed").success

    assert coordinator.transition_state("campaign", campaign_id, "archived").success

    for project_id, task_ids in tree.items():
        assert coordinator.get_project(project_id).state == "archived"
        for task_id in task_ids:
            expected = "completed" if task_id == first_tasks[0] else "cancelled"
            assert coordinator.get_task(task_id).state == expected

    cascaded = [
        e for e in db.audit_log.list_all()
        if e.action == AuditAction.STATE_CHANGED and e.changes.get("cascaded")
    ]
    assert len(cascaded) == 2 + 3


def test_cascade_is_idempotent(db, coordinator, campaign_id, tree):
    coordinator.transition_state("campaign", campaign_id, "archived")
    states = {pid: coordinator.get_project(pid).state for pid in tree}
    entries = len(db.audit_log.list_all())

    changed = coordinator.cascade_down("campaign", campaign_id, "archived")

    assert changed == 0
    assert len(db.audit_log.list_all()) == entries
    assert {pid: coordinator.get_project(pid).state for pid in tree} == states


def test_cancellation_skips_closed_children(coordinator, campaign_id, tree):
    done, open_ = list(tree)
    assert coordinator.transition_state("project", done, "completed").success

    coordinator.transition_state("campaign", campaign_id, "cancelled")

    assert coordinator.get_project(done).state == "completed"
    assert coordinator.get_project(open_).state == "cancelled"
    assert {coordinator.get_task(t).state for t in tree[open_]} == {"cancelled"}


def test_archival_overrides_cancelled_children(coordinator, campaign_id, tree):
    cancelled, _ = list(tree)
    coordinator.transition_state("project", cancelled, "cancelled")
    coordinator.transition_state("campaign", campaign_id, "archived")
    assert coordinator.get_project(cancelled).state == "archived"
    assert {coordinator.get_task(t).state for t in tree[cancelled]} == {"cancelled"}


def test_cancelling_project_cancels_its_tasks_only(coordinator, campaign_id, tree):
    target, other = list(tree)
    coordinator.transition_state("project", target, "cancelled")
    assert {coordinator.get_task(t).state for t in tree[target]} == {"cancelled"}
    assert {coordinator.get_task(t).state for t in tree[other]} == {"new"}
    assert coordinator.get_campaign(campaign_id).state == "draft"


# ========== Aggregation ==========

def test_completing_all_three_tasks_completes_project(coordinator, campaign_id, project_id, make_task):
    task_ids = [make_task(project_id, name=f"T{i}") for i in range(3)]

    for task_id in task_ids[:2]:
        assert coordinator.transition_state("task", task_id, "completed").success
    assert coordinator.get_project(project_id).state == "draft"
    assert coordinator.get_project(project_id).end_date is None

    assert coordinator.transition_state("task", task_ids[2], "completed").success
    project = coordinator.get_project(project_id)
    assert project.state == "completed"
    assert project.end_date == _today()

    # P1 is Q1's only project, so the campaign closes as well
    campaign = coordinator.get_campaign(campaign_id)
    assert campaign.state == "completed"
    assert campaign.end_date == _today()


def test_cancelled_tasks_count_as_terminal(coordinator, project_id, make_task):
    first, second = make_task(project_id, name="A"), make_task(project_id, name="B")
    coordinator.transition_state("task", first, "cancelled")
    coordinator.transition_state("task", second, "completed")
    assert coordinator.get_project(project_id).state == "completed"


def test_aggregation_is_audited(db, coordinator, project_id, make_task):
    task_id = make_task(project_id)
    coordinator.transition_state("task", task_id, "completed", actor_id="carol")
    [entry] = _state_changes(db, EntityKind.PROJECT, project_id)
    assert entry.actor_id == "carol"
    assert entry.changes["aggregated_from"] == "task"


def test_aggregation_follows_project_not_task_campaign_id(coordinator, campaign_id, project_id, make_task):
    second = coordinator.create_project(campaign_id, {"name": "P2"}).id
    task_id = make_task(second)
    other_campaign = coordinator.create_campaign({"name": "Q2"}).id

    assert coordinator.update_fields("project", second, {"campaign_id": other_campaign}).success
    assert coordinator.get_task(task_id).campaign_id == campaign_id  # stale back-reference

    coordinator.transition_state("task", task_id, "completed")

    assert coordinator.get_project(second).state == "completed"
    assert coordinator.get_campaign(other_campaign).state == "completed"
    assert coordinator.get_campaign(campaign_id).state == "draft"


# ========== Budget roll-up ==========

def test_campaign_budget_is_sum_of_project_budgets(coordinator, campaign_id):
    ids = [
        coordinator.create_project(campaign_id, {"name": f"P{b}", "budget": b}).id
        for b in (100, 200, 300)
    ]
    assert coordinator.get_campaign(campaign_id).budget == 600

    assert coordinator.update_fields("project", ids[0], {"budget": 400}).success
    assert coordinator.get_campaign(campaign_id).budget == 900


def test_project_without_budget_leaves_campaign_budget(coordinator, campaign_id, project_id):
    assert coordinator.get_campaign(campaign_id).budget == 50000


def test_reparenting_updates_both_campaign_budgets(coordinator, campaign_id):
    keep = coordinator.create_project(campaign_id, {"name": "Keep", "budget": 100}).id
    move = coordinator.create_project(campaign_id, {"name": "Move", "budget": 200}).id
    other = coordinator.create_campaign({"name": "Q2"}).id
    coordinator.create_project(other, {"name": "Stay", "budget": 300})
    assert coordinator.get_campaign(campaign_id).budget == 300
    assert coordinator.get_campaign(other).budget == 300

    assert coordinator.update_fields("project", move, {"campaign_id": other}).success

    assert coordinator.get_campaign(campaign_id).budget == 100
    assert coordinator.get_campaign(other).budget == 500
    assert [p.id for p in coordinator.list_children("campaign", campaign_id)] == [keep]


def test_roll_up_is_audited(db, coordinator, campaign_id):
    coordinator.create_project(campaign_id, {"name": "Funded", "budget": 250})
    updates = [
        e for e in db.audit_log.list_for_entity(EntityKind.CAMPAIGN, uuid.UUID(campaign_id))
        if e.action == AuditAction.UPDATED
    ]
    assert updates[-1].changes["budget"] == {"from": 50000, "to": 250}


# ========== Field updates ==========

def test_update_records_diff(coordinator, project_id):
    result = coordinator.update_fields("project", project_id, {"name": "P1 renamed"}, actor_id="dave")
    assert result.success
    assert coordinator.get_project(project_id).name == "P1 renamed"

    entry = coordinator.get_audit_trail("project", project_id)[-1]
    assert entry.action == "updated"
    assert entry.actor_id == "dave"
    assert entry.changes == {"name": {"from": "P1", "to": "P1 renamed"}}


def test_update_validates_merged_record(coordinator, project_id):
    result = coordinator.update_fields("project", project_id, {"name": "x" * 101})
    assert not result.success
    assert result.error_type == "field_validation"
    assert coordinator.get_project(project_id).name == "P1"


def test_update_cannot_change_state(coordinator, campaign_id):
    result = coordinator.update_fields("campaign", campaign_id, {"state": "completed"})
    assert result.error_type == "field_validation"
    assert coordinator.get_campaign(campaign_id).state == "draft"


def test_task_parent_edge_is_immutable(coordinator, project_id, make_task):
    task_id = make_task(project_id)
    result = coordinator.update_fields("task", task_id, {"project_id": str(uuid.uuid4())})
    assert result.error_type == "field_validation"


def test_update_unknown_field(coordinator, campaign_id):
    result = coordinator.update_fields("campaign", campaign_id, {"colour": "red"})
    assert result.error_type == "field_validation"


def test_update_missing_record(coordinator):
    result = coordinator.update_fields("task", uuid.uuid4(), {"name": "x"})
    assert result.error_type == "not_found"


def test_reassign_task_to_inactive_user(coordinator, project_id, make_task, inactive_user):
    task_id = make_task(project_id)
    result = coordinator.update_fields("task", task_id, {"assignee_id": inactive_user.id})
    assert result.error_type == "invalid_reference"


def test_reparent_to_cancelled_or_missing_campaign(coordinator, project_id):
    closed = coordinator.create_campaign({"name": "Closed"}).id
    coordinator.transition_state("campaign", closed, "cancelled")

    blocked = coordinator.update_fields("project", project_id, {"campaign_id": closed})
    assert blocked.error_type == "state_constraint"

    missing = coordinator.update_fields("project", project_id, {"campaign_id": str(uuid.uuid4())})
    assert missing.error_type == "invalid_reference"


# ========== Unarchive ==========

def test_unarchive_restores_previous_state_without_cascade(coordinator, campaign_id, project_id):
    coordinator.transition_state("campaign", campaign_id, "active")
    coordinator.transition_state("campaign", campaign_id, "archived")
    assert coordinator.get_project(project_id).state == "archived"

    direct = coordinator.transition_state("campaign", campaign_id, "active")
    assert direct.error_type == "state_constraint"
    assert "unarchive" in direct.errors[0]

    assert coordinator.unarchive("campaign", campaign_id).success
    assert coordinator.get_campaign(campaign_id).state == "active"
    assert coordinator.get_project(project_id).state == "archived"


def test_unarchive_requires_archived_record(coordinator, campaign_id, project_id, make_task):
    assert coordinator.unarchive("campaign", campaign_id).error_type == "state_constraint"
    task_id = make_task(project_id)
    assert coordinator.unarchive("task", task_id).error_type == "state_constraint"


# ========== Listing & audit ==========

def test_list_campaigns_filters_by_viewer_segments(coordinator, assignee, campaign_id):
    coordinator.create_campaign({"name": "EMEA push", "segment": "emea"})
    coordinator.create_campaign({"name": "NA push", "segment": "na"})

    assert len(coordinator.list_campaigns()) == 3
    visible = {c.name for c in coordinator.list_campaigns(viewer_id=assignee.id)}
    assert visible == {"Q1", "EMEA push"}


def test_get_missing_records_raise_not_found(coordinator):
    with pytest.raises(NotFoundError):
        coordinator.get_campaign(uuid.uuid4())
    with pytest.raises(NotFoundError):
        coordinator.get_task("not-a-uuid")


def test_tail_audit_resumes_after_sequence(coordinator):
    coordinator.create_campaign({"name": "A"})
    coordinator.create_campaign({"name": "B"})
    coordinator.create_campaign({"name": "C"})

    entries = coordinator.tail_audit()
    assert [e.sequence_number for e in entries] == [1, 2, 3]
    assert [e.changes["name"] for e in coordinator.tail_audit(after_sequence=1)] == ["B", "C"]
    assert len(coordinator.tail_audit(after_sequence=0, limit=2)) == 2
