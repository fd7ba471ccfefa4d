"""loanbook_import.orchestrator

Runs one bulk import end to end.

    ingest -> map (once) -> normalize + match (thread pool) -> commit

Matching for every row finishes before the first commit starts.  A row that
fails normalization never reaches matching; a row that fails matching never
reaches commit.  Only a ParseError stops the run; every other problem becomes
a RowError on the row it belongs to and the run still completes.

The ImportResult is built first and returned as-is; writing the rejects file
and recording the ImportRun afterwards are best-effort and cannot change it.
Every call that gets past argument checks records exactly one run, except
when a mapping override is rejected.

Usage:
    result = run_import(
        content, "loans.csv",
        agency_id="agency-1", actor_id="user-7", entity_kind="loan",
        create_entity=crud.create_loan,
        find_customer=crud.find_customers,
        store=PostgresRunStore(conn),
    )
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Collection, Mapping

from loanbook_import.commit import CreateBatch, CreateEntity, commit_rows
from loanbook_import.config import ImportSettings, load_settings
from loanbook_import.ingest import IngestedFile, RawRow, ingest_file
from loanbook_import.mapping import ColumnMapping, map_columns
from loanbook_import.matching import CustomerLookup, match_customer
from loanbook_import.rows import NormalizedRow, normalize_row
from loanbook_import.run_log import RunStore, new_run, record_run, utcnow
from loanbook_import.schema import TargetSchema, load_builtin_schema
from loanbook_import.shared import (
    AmbiguousMatchError,
    CustomerNotFoundError,
    ImportResult,
    ParseError,
    RejectWriter,
    RowError,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Per-row work
# ---------------------------------------------------------------------------

def _with_error(row: NormalizedRow, message: str, field_name: str | None = None) -> NormalizedRow:
    return replace(row, errors=row.errors + (RowError(row.index, message, field_name),))


def _process_row(
    raw: RawRow,
    agency_id: str,
    mapping: ColumnMapping,
    schema: TargetSchema,
    settings: ImportSettings,
    find_customer: CustomerLookup | None,
) -> NormalizedRow:
    row = normalize_row(raw, mapping, schema, settings.date_formats)
    if not row.is_clean or schema.references is None:
        return row
    try:
        return row.with_match(match_customer(agency_id, row, schema, find_customer))
    except (AmbiguousMatchError, CustomerNotFoundError) as exc:
        return _with_error(row, str(exc))
    except Exception as exc:
        log.warning("row %d: customer lookup failed: %s", row.index, exc)
        return _with_error(row, f"customer lookup failed: {exc}")


def _write_rejects(
    path: Path,
    ingested: IngestedFile,
    errors: list[RowError],
) -> None:
    reasons: dict[int, list[str]] = {}
    for err in errors:
        reasons.setdefault(err.row_index, []).append(err.message)
    writer = RejectWriter(path)
    try:
        for raw in ingested.rows:
            if raw.index in reasons:
                writer.write(raw.index, raw.values, "; ".join(reasons[raw.index]))
    finally:
        writer.close()


def _run_rows(
    ingested: IngestedFile,
    mapping: ColumnMapping,
    agency_id: str,
    schema: TargetSchema,
    settings: ImportSettings,
    find_customer: CustomerLookup | None,
    create_entity: CreateEntity | None,
    create_batch: CreateBatch | None,
    dry_run: bool,
    selected_rows: Collection[int] | None,
) -> ImportResult:
    """Normalize, match and commit; everything between mapping and the run record."""
    with ThreadPoolExecutor(
        max_workers=settings.normalize_workers, thread_name_prefix="normalize"
    ) as pool:
        rows = list(pool.map(
            lambda raw: _process_row(raw, agency_id, mapping, schema, settings, find_customer),
            ingested.rows,
        ))

    clean = [r for r in rows if r.is_clean]
    errors: list[RowError] = [e for r in rows for e in r.errors]
    failed_indices = {r.index for r in rows if not r.is_clean}

    if selected_rows is None:
        to_commit = clean
    else:
        wanted = set(selected_rows)
        to_commit = [r for r in clean if r.index in wanted]
    skipped = len(clean) - len(to_commit)

    if dry_run:
        success = len(to_commit)
        created_ids: list[str] = []
    else:
        outcome = commit_rows(
            agency_id,
            to_commit,
            create_entity=create_entity,
            create_batch=create_batch,
            batch_ceiling=settings.batch_ceiling,
            max_in_flight=settings.max_in_flight_chunks,
        )
        success = len(outcome.created)
        created_ids = outcome.created_ids
        errors.extend(outcome.errors)
        failed_indices.update(e.row_index for e in outcome.errors)

    errors.sort(key=lambda e: e.row_index)
    return ImportResult(
        success=success,
        failed=len(failed_indices),
        skipped=skipped,
        created_ids=created_ids,
        errors=errors,
        warnings=list(mapping.warnings),
        dry_run=dry_run,
    )



# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def preview_mapping(
    content: bytes,
    file_name: str,
    entity_kind: str,
    overrides: Mapping[str, str | None] | None = None,
    settings: ImportSettings | None = None,
    schema: TargetSchema | None = None,
) -> ColumnMapping:
    """Ingest and map only, so the proposed mapping can be confirmed first.

    Raises:
        ParseError: The file cannot be read.
        MappingOverrideError: An override is invalid for this file.
    """
    settings = settings or load_settings()
    schema = schema or load_builtin_schema(entity_kind)
    ingested = ingest_file(content, file_name)
    return map_columns(ingested.headers, schema, overrides, settings.fuzzy_threshold)


def run_import(
    content: bytes,
    file_name: str,
    agency_id: str,
    actor_id: str,
    entity_kind: str,
    create_entity: CreateEntity | None = None,
    find_customer: CustomerLookup | None = None,
    create_batch: CreateBatch | None = None,
    store: RunStore | None = None,
    overrides: Mapping[str, str | None] | None = None,
    settings: ImportSettings | None = None,
    schema: TargetSchema | None = None,
    dry_run: bool = False,
    selected_rows: Collection[int] | None = None,
    rejects_path: Path | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> ImportResult:
    """Import one file for one agency and return the per-row outcome.

    Args:
        content: Uploaded file bytes (CSV or .xlsx).
        file_name: Original file name; its suffix selects the reader.
        agency_id: Tenant the rows belong to.  Passed to every collaborator.
        actor_id: User who started the import (audit only).
        entity_kind: "customer" or "loan".
        create_entity: create_entity(agency_id, fields) -> {"id": ...}.
        find_customer: find_customer(agency_id, kind, value) -> ref(s) or None.
            Required for schemas that reference customers.
        create_batch: Optional multi-row writer; when given, rows are committed
            in chunks of settings.batch_ceiling instead of one at a time.
        store: Run store for the audit record.  None skips recording.
        overrides: target field -> header, used verbatim by the mapper.
        settings: Engine settings; packaged defaults when None.
        schema: Target schema; the packaged schema for entity_kind when None.
        dry_run: Run everything except commit.
        selected_rows: Row indices to commit; other clean rows are skipped.
        rejects_path: Write failed rows (with reasons) to this CSV.
        clock: Timestamp source for the run record.

    Raises:
        ParseError: The file could not be read.  A failed run is recorded first.
        MappingOverrideError: An override names an unknown header or field.
        ValueError: A collaborator needed for this import was not supplied.
    """
    settings = settings or load_settings()
    schema = schema or load_builtin_schema(entity_kind)
    if schema.entity_kind != entity_kind:
        raise ValueError(f"schema is for {schema.entity_kind}, not {entity_kind}")
    if schema.references is not None and find_customer is None:
        raise ValueError(f"{entity_kind} import needs a find_customer lookup")
    if not dry_run and create_entity is None and create_batch is None:
        raise ValueError("run_import needs create_entity or create_batch")

    run = new_run(
        agency_id=agency_id,
        actor_id=actor_id,
        file_name=file_name,
        file_size=len(content or b""),
        target_entity_kind=entity_kind,
        dry_run=dry_run,
        started_at=clock(),
    ).start()
    log.info(
        "import %s started: agency=%s kind=%s file=%s (%d bytes)%s",
        run.id, agency_id, entity_kind, file_name, run.file_size,
        " [dry run]" if dry_run else "",
    )

    # --- Ingest ---------------------------------------------------------------
    try:
        ingested = ingest_file(content, file_name)
    except ParseError as exc:
        log.warning("import %s failed: %s", run.id, exc)
        record_run(store, run.fail(str(exc), completed_at=clock()))
        raise

    # --- Map ------------------------------------------------------------------
    mapping = map_columns(ingested.headers, schema, overrides, settings.fuzzy_threshold)
    for warning in mapping.warnings:
        log.info("import %s: %s", run.id, warning.message)

    try:
        result = _run_rows(
            ingested, mapping, agency_id, schema, settings,
            find_customer, create_entity, create_batch, dry_run, selected_rows,
        )
    except Exception as exc:
        log.error("import %s aborted after ingestion: %s", run.id, exc)
        record_run(store, run.fail(f"import aborted: {exc}", completed_at=clock()))
        raise

    if rejects_path is not None and result.errors:
        try:
            _write_rejects(rejects_path, ingested, result.errors)
        except OSError as exc:
            log.warning("import %s: could not write rejects to %s: %s", run.id, rejects_path, exc)

    log.info(
        "import %s completed: success=%d failed=%d skipped=%d",
        run.id, result.success, result.failed, result.skipped,
    )
    record_run(store, run.complete(
        result,
        column_mapping=mapping.to_dict(),
        mapping_warnings=mapping.warnings,
        completed_at=clock(),
    ))
    return result
