"""
main.py

Entry point for the Work Item Lifecycle Engine API.

Configures logging, wires the in-memory infrastructure into the FastAPI app
and starts uvicorn.

Usage
-----
    # Option 1 — run directly
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Option 3 — tune the engine through the environment
    WORKITEMS_CASCADE_WORKERS=4 WORKITEMS_LOG_LEVEL=DEBUG uvicorn main:app

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST  /api/v1/users                          — register an assignee, copy its "id"
2.  POST  /api/v1/campaigns                      — create a campaign
3.  POST  /api/v1/campaigns/{id}/projects        — add a project (budget rolls up)
4.  POST  /api/v1/projects/{id}/tasks            — add tasks, assignee_id from step 1
5.  POST  /api/v1/tasks/{id}/transition          — {"state": "completed"} for each task;
                                                   the project and campaign auto-complete
6.  POST  /api/v1/campaigns/{id}/transition      — {"state": "archived"} cascades down
7.  GET   /api/v1/audit?after=0                  — read everything that happened

Send an `X-Actor-Id` header to attribute changes to a caller; otherwise the
configured system actor is recorded.
"""

import logging

import uvicorn

from api import app, get_coordinator
from application import LifecycleCoordinator
from config import get_settings
from infrastructure import InMemoryDatabase

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wire the in-memory database into the FastAPI dependency system.
# To swap databases, implement the Abstract* interfaces from application.py
# and hand them to the coordinator here.
# ---------------------------------------------------------------------------

database = InMemoryDatabase()
coordinator = LifecycleCoordinator(
    database.store,
    database.audit_log,
    database.users,
    variance_threshold=settings.BUDGET_VARIANCE_THRESHOLD,
    cascade_workers=settings.CASCADE_WORKERS,
    system_actor_id=settings.SYSTEM_ACTOR_ID,
)

app.dependency_overrides[get_coordinator] = lambda: coordinator
logger.info(
    "Lifecycle coordinator ready (variance threshold %.2f, %d cascade worker(s))",
    settings.BUDGET_VARIANCE_THRESHOLD,
    settings.CASCADE_WORKERS,
)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
    )
