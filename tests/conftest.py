"""
Test configuration and fixtures for the Work Item Lifecycle Engine tests.
"""
import pytest

from application import LifecycleCoordinator
from infrastructure import InMemoryDatabase
from model import User


@pytest.fixture
def db() -> InMemoryDatabase:
    """A fresh, empty in-memory database per test."""
    return InMemoryDatabase()


@pytest.fixture
def coordinator(db):
    coord = LifecycleCoordinator(db.store, db.audit_log, db.users)
    yield coord
    coord.close()


# ========== Users ==========

@pytest.fixture
def assignee(db) -> User:
    """An active user that tasks can be assigned to."""
    user = User(full_name="Una Assignee", email="una@example.com", segments={"emea"})
    db.users.save(user)
    return user


@pytest.fixture
def inactive_user(db) -> User:
    user = User(full_name="Ivo Inactive", email="ivo@example.com", is_active=False)
    db.users.save(user)
    return user


# ========== Work items ==========

@pytest.fixture
def campaign_id(coordinator) -> str:
    result = coordinator.create_campaign({"name": "Q1", "budget": 50000})
    assert result.success, result.errors
    return result.id


@pytest.fixture
def project_id(coordinator, campaign_id) -> str:
    result = coordinator.create_project(campaign_id, {"name": "P1"})
    assert result.success, result.errors
    return result.id


@pytest.fixture
def make_task(coordinator, assignee):
    """Factory creating a task under a project, asserting success."""
    def _make(project_id, name="T1", **fields):
        data = {"name": name, "assignee_id": assignee.id}
        data.update(fields)
        result = coordinator.create_task(project_id, data)
        assert result.success, result.errors
        return result.id
    return _make
