"""
infrastructure.py

In-memory implementation of the Entity Store, Audit Log and User Directory
interfaces declared in application.py.

This is a self-contained backend that stores everything in plain Python
dicts keyed by UUID.  It is suitable for local development, demos, and
integration testing without needing a real database.

Concurrency
-----------
Every record has its own re-entrant lock.  put / update_fields take it for
the duration of the write, and the coordinator takes it (via `locked`) around
read-modify-write sequences such as state transitions and budget roll-ups.
Records are copied on the way in and on the way out, so a caller never
observes a half-applied write and cannot mutate stored state in place.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and hand the implementation to LifecycleCoordinator.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from application import (
    AbstractAuditLog,
    AbstractEntityStore,
    AbstractUserDirectory,
    NotFoundError,
)
from model import CHILD_KIND, ENTITY_TYPES, AuditEntry, EntityKind, User

logger = logging.getLogger(__name__)

_Key = Tuple[EntityKind, uuid.UUID]

# Attribute on the child record that points at its authoritative parent
_PARENT_FIELD = {
    EntityKind.PROJECT: "campaign_id",
    EntityKind.TASK: "project_id",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Entity store
# ---------------------------------------------------------------------------

class InMemoryEntityStore(AbstractEntityStore):
    """Dumb keyed storage: no validation happens here."""

    def __init__(self):
        self._tables: Dict[EntityKind, Dict[uuid.UUID, Any]] = {k: {} for k in EntityKind}
        self._order: Dict[_Key, int] = {}
        self._tombstones: Set[_Key] = set()
        self._locks: Dict[_Key, threading.RLock] = {}
        self._meta = threading.Lock()
        self._sequence = itertools.count(1)

    # --- Locking ------------------------------------------------------------

    def _lock_for(self, kind: EntityKind, record_id: uuid.UUID) -> threading.RLock:
        key = (EntityKind(kind), record_id)
        with self._meta:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def locked(self, kind: EntityKind, record_id: uuid.UUID) -> Iterator[None]:
        with self._lock_for(kind, record_id):
            yield

    # --- Reads --------------------------------------------------------------

    def _live(self, kind: EntityKind, record_id: Any) -> Optional[Any]:
        kind = EntityKind(kind)
        if (kind, record_id) in self._tombstones:
            return None
        return self._tables[kind].get(record_id)

    def find(self, kind: EntityKind, record_id: uuid.UUID) -> Optional[Any]:
        record = self._live(kind, record_id)
        return dataclasses.replace(record) if record is not None else None

    def get(self, kind: EntityKind, record_id: uuid.UUID) -> Any:
        record = self.find(kind, record_id)
        if record is None:
            raise NotFoundError(f"{EntityKind(kind).value.capitalize()} {record_id} not found.")
        return record

    def list_all(self, kind: EntityKind) -> List[Any]:
        kind = EntityKind(kind)
        with self._meta:
            live = [
                r for rid, r in self._tables[kind].items()
                if (kind, rid) not in self._tombstones
            ]
            live.sort(key=lambda r: self._order[(kind, r.id)])
        return [dataclasses.replace(r) for r in live]

    def children(self, parent_kind: EntityKind, parent_id: uuid.UUID) -> List[Any]:
        child_kind = CHILD_KIND[EntityKind(parent_kind)]
        if child_kind is None:
            return []
        attr = _PARENT_FIELD[child_kind]
        return [r for r in self.list_all(child_kind) if getattr(r, attr) == parent_id]

    # --- Writes -------------------------------------------------------------

    def put(self, kind: EntityKind, record: Any) -> Any:
        kind = EntityKind(kind)
        if not isinstance(record, ENTITY_TYPES[kind]):
            raise TypeError(f"expected {ENTITY_TYPES[kind].__name__}, got {type(record).__name__}")
        if record.id is None:
            record = dataclasses.replace(record, id=uuid.uuid4())
        with self._lock_for(kind, record.id):
            existing = self._tables[kind].get(record.id)
            stored = dataclasses.replace(
                record,
                version=(existing.version if existing is not None else record.version) + 1,
                updated_at=_utcnow(),
            )
            with self._meta:
                self._tables[kind][stored.id] = stored
                self._order.setdefault((kind, stored.id), next(self._sequence))
                self._tombstones.discard((kind, stored.id))
        return dataclasses.replace(stored)

    def update_fields(self, kind: EntityKind, record_id: uuid.UUID, partial: Dict[str, Any]) -> Any:
        kind = EntityKind(kind)
        known = {f.name for f in dataclasses.fields(ENTITY_TYPES[kind])}
        unknown = set(partial) - known
        if unknown:
            raise ValueError(f"Unknown {kind.value} fields: {', '.join(sorted(unknown))}")
        with self._lock_for(kind, record_id):
            current = self._live(kind, record_id)
            if current is None:
                raise NotFoundError(f"{kind.value.capitalize()} {record_id} not found.")
            stored = dataclasses.replace(
                current,
                **partial,
                version=current.version + 1,
                updated_at=_utcnow(),
            )
            with self._meta:
                self._tables[kind][record_id] = stored
        return dataclasses.replace(stored)

    def tombstone(self, kind: EntityKind, record_id: uuid.UUID) -> None:
        """Compensating rollback of a just-committed insert; not a public delete."""
        kind = EntityKind(kind)
        with self._lock_for(kind, record_id):
            with self._meta:
                self._tombstones.add((kind, record_id))
        logger.debug("Tombstoned %s %s", kind.value, record_id)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class InMemoryAuditLog(AbstractAuditLog):
    """Append-only; sequence numbers increase by one per entry."""

    def __init__(self):
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            stored = dataclasses.replace(entry, sequence_number=len(self._entries) + 1)
            self._entries.append(stored)
        return stored

    def list_all(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def list_for_entity(self, kind: EntityKind, entity_id: uuid.UUID) -> List[AuditEntry]:
        kind = EntityKind(kind)
        return [
            e for e in self.list_all()
            if e.entity_kind == kind and e.entity_id == entity_id
        ]

    def tail(self, after_sequence: int = 0, limit: Optional[int] = None) -> List[AuditEntry]:
        with self._lock:
            entries = self._entries[after_sequence:]
        return entries[:limit] if limit is not None else entries


# ---------------------------------------------------------------------------
# User directory
# ---------------------------------------------------------------------------

class InMemoryUserDirectory(AbstractUserDirectory):
    def __init__(self):
        self._users: Dict[str, User] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(str(user_id))
        if user is None:
            return None
        return dataclasses.replace(user, segments=set(user.segments))

    def get_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.list_all() if u.email == email), None)

    def list_all(self) -> List[User]:
        with self._lock:
            users = list(self._users.values())
        return [dataclasses.replace(u, segments=set(u.segments)) for u in users]

    def save(self, user: User) -> None:
        with self._lock:
            self._users[user.id] = dataclasses.replace(user, segments=set(user.segments))


# ---------------------------------------------------------------------------
# Shared in-memory database
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.store = InMemoryEntityStore()
        self.audit_log = InMemoryAuditLog()
        self.users = InMemoryUserDirectory()
