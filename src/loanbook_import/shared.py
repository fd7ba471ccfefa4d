"""loanbook_import.shared

Shared types used across the import pipeline: the error taxonomy,
per-row error records, the run summary returned to callers, and the
RejectWriter that lets a user fix and re-upload only the failed rows.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportEngineError(Exception):
    """Base class for every error raised by the import engine."""


class ParseError(ImportEngineError):
    """Raised when the uploaded file cannot be turned into a header + rows.

    File-level and fatal: no row is processed after a ParseError.
    """


class MappingOverrideError(ImportEngineError):
    """Raised when a user-supplied column override names an unknown header or field."""


class RowValidationError(ImportEngineError):
    """A row failed cleaning or validation.  Carries every problem found."""

    def __init__(self, row_index: int, errors: list[RowError]) -> None:
        self.row_index = row_index
        self.errors = list(errors)
        super().__init__("; ".join(e.message for e in self.errors))


class AmbiguousMatchError(ImportEngineError):
    """Raised when the deciding identifier matches more than one customer."""

    def __init__(self, kind: str, value: str, count: int) -> None:
        self.kind = kind
        self.value = value
        self.count = count
        super().__init__(
            f"ambiguous customer match: {count} customers share {kind} {value}"
        )


class CustomerNotFoundError(ImportEngineError):
    """Raised when no identifier on a row resolves to any customer."""

    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f"customer not found for identifier {value}")


class CommitError(ImportEngineError):
    """Wraps a failure raised by (or reported from) the injected creation callable."""


class RunStoreError(ImportEngineError):
    """Raised by a run store when it cannot read or write an ImportRun."""


class OrderingUnavailableError(RunStoreError):
    """The store cannot serve newest-first reads (e.g. a missing index)."""


# ---------------------------------------------------------------------------
# Row-level records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RowError:
    """One user-facing problem with one row."""

    row_index: int
    message: str
    field: str | None = None

    def __str__(self) -> str:
        return f"Row {self.row_index}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {"row_index": self.row_index, "message": self.message, "field": self.field}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RowError:
        return cls(
            row_index=int(data["row_index"]),
            message=str(data["message"]),
            field=data.get("field"),
        )


@dataclass(frozen=True)
class MappingWarning:
    """Non-fatal mapping finding, surfaced to the user for confirmation."""

    field: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "message": self.message}


# ---------------------------------------------------------------------------
# ImportResult
# ---------------------------------------------------------------------------

@dataclass
class ImportResult:
    success: int = 0
    failed: int = 0
    skipped: int = 0
    created_ids: list[str] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    warnings: list[MappingWarning] = field(default_factory=list)
    dry_run: bool = False

    @property
    def error_messages(self) -> list[str]:
        return [str(e) for e in self.errors]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "created_ids": list(self.created_ids),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImportResult:
        return cls(
            success=int(data.get("success", 0)),
            failed=int(data.get("failed", 0)),
            skipped=int(data.get("skipped", 0)),
            created_ids=[str(i) for i in data.get("created_ids") or []],
            errors=[RowError.from_dict(e) for e in data.get("errors") or []],
            warnings=[
                MappingWarning(field=w["field"], message=w["message"])
                for w in data.get("warnings") or []
            ],
            dry_run=bool(data.get("dry_run", False)),
        )


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    Writes the original cells plus `_row_index` and `_reject_reason`, so the
    file can be corrected and uploaded again on its own.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row_index: int, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_row_index", "_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_row_index"] = row_index
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
