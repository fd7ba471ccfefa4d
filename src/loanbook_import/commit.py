"""loanbook_import.commit

Hands clean rows to the injected creation callables.

Two modes:

  per-row   create_entity(agency_id, fields) once per row.  An exception is
            recorded against that row only and the next row proceeds.

  chunked   create_batch(agency_id, [fields, ...]) once per chunk of at most
            `batch_ceiling` rows.  Chunks run on a thread pool with at most
            `max_in_flight` outstanding.  A raised failure is attributed to
            every row in the chunk; a returned per-row outcome list is used
            as-is.  One chunk failing never cancels its siblings.

No rollback: once a row or chunk has been handed over it stays handed over.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from loanbook_import.rows import NormalizedRow
from loanbook_import.shared import CommitError, RowError, RowValidationError

log = logging.getLogger(__name__)

DEFAULT_BATCH_CEILING = 400
DEFAULT_MAX_IN_FLIGHT = 4

CreateEntity = Callable[[str, dict], Any]
CreateBatch = Callable[[str, list], Optional[list]]


@dataclass
class CommitOutcome:
    created: list[tuple[int, str | None]] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    batch_calls: int = 0

    @property
    def created_ids(self) -> list[str]:
        return [entity_id for _, entity_id in self.created if entity_id is not None]


def _entity_id(result: Any) -> str:
    """Pull the new entity id out of whatever the creation callable returned."""
    if isinstance(result, dict) and result.get("id") is not None:
        return str(result["id"])
    if isinstance(result, str) and result:
        return result
    entity_id = getattr(result, "id", None)
    if entity_id is not None:
        return str(entity_id)
    raise CommitError(f"creation returned no id (got {result!r})")


def _message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def chunked(rows: Sequence[NormalizedRow], size: int) -> list[list[NormalizedRow]]:
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    return [list(rows[i:i + size]) for i in range(0, len(rows), size)]


# ---------------------------------------------------------------------------
# Per-row mode
# ---------------------------------------------------------------------------

def _commit_each(
    agency_id: str,
    rows: Sequence[NormalizedRow],
    create_entity: CreateEntity,
) -> CommitOutcome:
    outcome = CommitOutcome()
    for row in rows:
        try:
            entity_id = _entity_id(create_entity(agency_id, row.commit_fields()))
        except Exception as exc:
            log.debug("row %d: create failed: %s", row.index, exc)
            outcome.errors.append(RowError(row.index, _message(exc)))
            continue
        outcome.created.append((row.index, entity_id))
    return outcome


# ---------------------------------------------------------------------------
# Chunked mode
# ---------------------------------------------------------------------------

def _commit_chunk(
    agency_id: str,
    chunk: list[NormalizedRow],
    create_batch: CreateBatch,
) -> CommitOutcome:
    outcome = CommitOutcome(batch_calls=1)
    try:
        results = create_batch(agency_id, [row.commit_fields() for row in chunk])
        if results is not None:
            results = list(results)
    except Exception as exc:
        log.warning(
            "batch write failed for rows %d-%d: %s",
            chunk[0].index, chunk[-1].index, exc,
        )
        outcome.errors.extend(RowError(row.index, _message(exc)) for row in chunk)
        return outcome

    if results is None:
        # Whole chunk accepted without per-row ids.
        outcome.created.extend((row.index, None) for row in chunk)
        return outcome

    if len(results) != len(chunk):
        message = f"batch write returned {len(results)} outcomes for {len(chunk)} rows"
        outcome.errors.extend(RowError(row.index, message) for row in chunk)
        return outcome

    for row, result in zip(chunk, results):
        if isinstance(result, BaseException):
            outcome.errors.append(RowError(row.index, _message(result)))
            continue
        try:
            outcome.created.append((row.index, _entity_id(result)))
        except CommitError as exc:
            outcome.errors.append(RowError(row.index, _message(exc)))
    return outcome


def _commit_chunks(
    agency_id: str,
    rows: Sequence[NormalizedRow],
    create_batch: CreateBatch,
    batch_ceiling: int,
    max_in_flight: int,
) -> CommitOutcome:
    chunks = chunked(rows, batch_ceiling)
    outcome = CommitOutcome()
    if not chunks:
        return outcome

    workers = max(1, min(max_in_flight, len(chunks)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="commit") as pool:
        futures = [pool.submit(_commit_chunk, agency_id, c, create_batch) for c in chunks]
        for future in futures:
            part = future.result()
            outcome.created.extend(part.created)
            outcome.errors.extend(part.errors)
            outcome.batch_calls += part.batch_calls
    return outcome


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def commit_rows(
    agency_id: str,
    rows: Sequence[NormalizedRow],
    create_entity: CreateEntity | None = None,
    create_batch: CreateBatch | None = None,
    batch_ceiling: int = DEFAULT_BATCH_CEILING,
    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
) -> CommitOutcome:
    """Commit clean rows; every row ends up in exactly one of created / errors.

    create_batch takes precedence when both callables are given.

    Raises:
        RowValidationError: A row still carrying errors was handed over.
            Checked before anything is committed.
    """
    for row in rows:
        if not row.is_clean:
            raise RowValidationError(row.index, list(row.errors))
    if create_batch is not None:
        outcome = _commit_chunks(agency_id, rows, create_batch, batch_ceiling, max_in_flight)
    elif create_entity is not None:
        outcome = _commit_each(agency_id, rows, create_entity)
    else:
        raise ValueError("commit_rows needs create_entity or create_batch")

    outcome.created.sort(key=lambda pair: pair[0])
    outcome.errors.sort(key=lambda e: e.row_index)
    log.debug(
        "committed %d rows, %d failed, %d batch calls",
        len(outcome.created), len(outcome.errors), outcome.batch_calls,
    )
    return outcome
