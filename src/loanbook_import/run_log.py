"""loanbook_import.run_log

ImportRun audit records and the stores that keep them.

State machine:

    pending -> running -> completed
                       -> failed      (ParseError at ingestion, or an unexpected
                                       error after it)

ImportRun is frozen; every transition returns a new object.  A completed run
holds its own copy of the result and column mapping, and InMemoryRunStore
hands out copies, so nothing a caller does to a returned object reaches the
record.  Stores are append-only: a run id is written once and never updated.

Persistence is best-effort.  record_run() swallows and logs store failures
so that a broken audit log never changes what the caller was told.

History reads go newest-first.  A store that cannot order server-side raises
OrderingUnavailableError, and get_import_history() falls back to an unordered
fetch plus an in-memory sort on started_at.

Depends on: migrations/0001_import_run.sql (PostgresRunStore)
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol

import psycopg

from loanbook_import.shared import (
    ImportEngineError,
    ImportResult,
    MappingWarning,
    OrderingUnavailableError,
    RunStoreError,
)

log = logging.getLogger(__name__)

RUN_STATUSES = ("pending", "running", "completed", "failed")

_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


class InvalidRunTransitionError(ImportEngineError):
    """Raised when an ImportRun is moved along an edge the state machine lacks."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# ImportRun
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImportRun:
    id: str
    agency_id: str
    actor_id: str
    file_name: str
    file_size: int
    target_entity_kind: str
    started_at: datetime
    status: str = "pending"
    completed_at: datetime | None = None
    column_mapping: dict[str, Any] = field(default_factory=dict)
    result: ImportResult | None = None
    dry_run: bool = False
    mapping_warnings: tuple[MappingWarning, ...] = ()
    failure_reason: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in ("completed", "failed")

    def _move(self, status: str, **changes: Any) -> ImportRun:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidRunTransitionError(
                f"run {self.id}: cannot move from {self.status} to {status}"
            )
        return replace(self, status=status, **changes)

    def start(self) -> ImportRun:
        return self._move("running")

    def complete(
        self,
        result: ImportResult,
        column_mapping: dict[str, Any],
        mapping_warnings: tuple[MappingWarning, ...] = (),
        completed_at: datetime | None = None,
    ) -> ImportRun:
        return self._move(
            "completed",
            result=ImportResult.from_dict(result.to_dict()),
            column_mapping=copy.deepcopy(dict(column_mapping)),
            mapping_warnings=tuple(mapping_warnings),
            completed_at=completed_at or utcnow(),
        )

    def detached(self) -> ImportRun:
        """Copy whose result and column_mapping share nothing with this run."""
        return replace(
            self,
            column_mapping=copy.deepcopy(self.column_mapping),
            result=ImportResult.from_dict(self.result.to_dict()) if self.result else None,
        )

    def fail(self, reason: str, completed_at: datetime | None = None) -> ImportRun:
        return self._move("failed", failure_reason=reason, completed_at=completed_at or utcnow())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "actor_id": self.actor_id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "target_entity_kind": self.target_entity_kind,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "status": self.status,
            "column_mapping": self.column_mapping,
            "result": self.result.to_dict() if self.result else None,
            "dry_run": self.dry_run,
            "mapping_warnings": [w.to_dict() for w in self.mapping_warnings],
            "failure_reason": self.failure_reason,
        }


def new_run(
    agency_id: str,
    actor_id: str,
    file_name: str,
    file_size: int,
    target_entity_kind: str,
    dry_run: bool = False,
    started_at: datetime | None = None,
    run_id: str | None = None,
) -> ImportRun:
    return ImportRun(
        id=run_id or str(uuid.uuid4()),
        agency_id=agency_id,
        actor_id=actor_id,
        file_name=file_name,
        file_size=file_size,
        target_entity_kind=target_entity_kind,
        started_at=started_at or utcnow(),
        dry_run=dry_run,
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class RunStore(Protocol):
    def save(self, run: ImportRun) -> None: ...

    def fetch_recent(self, agency_id: str, limit: int) -> list[ImportRun]: ...

    def fetch_all(self, agency_id: str) -> list[ImportRun]: ...


class InMemoryRunStore:
    """Append-only run store kept in a list.

    With ordered_reads_available=False, fetch_recent raises
    OrderingUnavailableError the way a backend without the history index does.
    """

    def __init__(self, ordered_reads_available: bool = True) -> None:
        self.ordered_reads_available = ordered_reads_available
        self._runs: list[ImportRun] = []
        self._lock = threading.Lock()

    def save(self, run: ImportRun) -> None:
        if not run.is_finished:
            raise RunStoreError(f"run {run.id} is {run.status}; only finished runs are stored")
        with self._lock:
            if any(r.id == run.id for r in self._runs):
                raise RunStoreError(f"run {run.id} already recorded")
            self._runs.append(run.detached())

    def fetch_recent(self, agency_id: str, limit: int) -> list[ImportRun]:
        if not self.ordered_reads_available:
            raise OrderingUnavailableError("ordered history index is not available")
        runs = sorted(self.fetch_all(agency_id), key=lambda r: r.started_at, reverse=True)
        return runs[:limit]

    def fetch_all(self, agency_id: str) -> list[ImportRun]:
        with self._lock:
            return [r.detached() for r in self._runs if r.agency_id == agency_id]


_RUN_COLUMNS = (
    "id, agency_id, actor_id, file_name, file_size, target_entity_kind, "
    "started_at, completed_at, status, dry_run, column_mapping, result, "
    "mapping_warnings, failure_reason"
)


class PostgresRunStore:
    """ImportRun rows in the import_run table (see migrations/0001_import_run.sql)."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def save(self, run: ImportRun) -> None:
        if not run.is_finished:
            raise RunStoreError(f"run {run.id} is {run.status}; only finished runs are stored")
        try:
            with self._conn.transaction():
                self._conn.execute(
                    f"""
                    INSERT INTO import_run ({_RUN_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                            %s::jsonb, %s::jsonb, %s::jsonb, %s)
                    """,
                    (
                        run.id,
                        run.agency_id,
                        run.actor_id,
                        run.file_name,
                        run.file_size,
                        run.target_entity_kind,
                        run.started_at,
                        run.completed_at,
                        run.status,
                        run.dry_run,
                        json.dumps(run.column_mapping, sort_keys=True),
                        json.dumps(run.result.to_dict()) if run.result else None,
                        json.dumps([w.to_dict() for w in run.mapping_warnings]),
                        run.failure_reason,
                    ),
                )
        except psycopg.Error as exc:
            raise RunStoreError(f"could not record run {run.id}: {exc}") from exc

    def fetch_recent(self, agency_id: str, limit: int) -> list[ImportRun]:
        try:
            with self._conn.transaction():
                rows = self._conn.execute(
                    f"""
                    SELECT {_RUN_COLUMNS} FROM import_run
                    WHERE agency_id = %s
                    ORDER BY started_at DESC
                    LIMIT %s
                    """,
                    (agency_id, limit),
                ).fetchall()
        except psycopg.Error as exc:
            raise OrderingUnavailableError(str(exc)) from exc
        return [_run_from_row(r) for r in rows]

    def fetch_all(self, agency_id: str) -> list[ImportRun]:
        try:
            with self._conn.transaction():
                rows = self._conn.execute(
                    f"SELECT {_RUN_COLUMNS} FROM import_run WHERE agency_id = %s",
                    (agency_id,),
                ).fetchall()
        except psycopg.Error as exc:
            raise RunStoreError(f"could not read import history: {exc}") from exc
        return [_run_from_row(r) for r in rows]


def _run_from_row(row: tuple) -> ImportRun:
    (run_id, agency_id, actor_id, file_name, file_size, kind, started_at,
     completed_at, status, dry_run, column_mapping, result, warnings, reason) = row
    return ImportRun(
        id=str(run_id),
        agency_id=agency_id,
        actor_id=actor_id,
        file_name=file_name,
        file_size=int(file_size),
        target_entity_kind=kind,
        started_at=started_at,
        completed_at=completed_at,
        status=status,
        dry_run=bool(dry_run),
        column_mapping=column_mapping or {},
        result=ImportResult.from_dict(result) if result else None,
        mapping_warnings=tuple(
            MappingWarning(field=w["field"], message=w["message"]) for w in warnings or []
        ),
        failure_reason=reason,
    )


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------

def record_run(store: RunStore | None, run: ImportRun) -> bool:
    """Write the run; never raise.  Returns True when the write succeeded."""
    if store is None:
        return False
    try:
        store.save(run)
    except Exception as exc:
        log.warning("import run %s was not recorded: %s", run.id, exc)
        return False
    return True


def get_import_history(store: RunStore, agency_id: str, limit: int = 10) -> list[ImportRun]:
    """Most recent runs for an agency, newest first."""
    if limit < 1:
        return []
    try:
        return list(store.fetch_recent(agency_id, limit))
    except OrderingUnavailableError as exc:
        log.warning("ordered history read unavailable (%s); sorting in memory", exc)
    runs = sorted(store.fetch_all(agency_id), key=lambda r: r.started_at, reverse=True)
    return runs[:limit]
