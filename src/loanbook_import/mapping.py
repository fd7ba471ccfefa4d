"""loanbook_import.mapping

Maps source headers onto target schema fields.

Passes, each over the schema's fields in declaration order:
  1. user overrides: used verbatim, no heuristics
  2. exact match of the normalized header against the field name or an alias
  3. fuzzy match of the remaining headers, accepted above a fixed threshold

A header is assigned to at most one field.  The result only depends on the
header row, the schema and the overrides, so identical input always yields an
identical mapping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from rapidfuzz import fuzz

from loanbook_import.normalize import header_tokens, normalize_header
from loanbook_import.schema import FieldSpec, TargetSchema
from loanbook_import.shared import MappingOverrideError, MappingWarning

log = logging.getLogger(__name__)

DEFAULT_FUZZY_THRESHOLD = 0.80


@dataclass(frozen=True)
class FieldMapping:
    source: str | None
    confidence: float
    method: str  # exact | alias | fuzzy | override | unmapped

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "confidence": self.confidence, "method": self.method}


@dataclass(frozen=True)
class ColumnMapping:
    fields: dict[str, FieldMapping]
    warnings: tuple[MappingWarning, ...] = ()
    unmapped_headers: tuple[str, ...] = field(default=())

    def source_for(self, field_name: str) -> str | None:
        entry = self.fields.get(field_name)
        return entry.source if entry else None

    def is_mapped(self, field_name: str) -> bool:
        return self.source_for(field_name) is not None

    def to_dict(self) -> dict[str, Any]:
        return {name: entry.to_dict() for name, entry in self.fields.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ColumnMapping:
        return cls(fields={
            name: FieldMapping(
                source=entry.get("source"),
                confidence=float(entry.get("confidence", 0.0)),
                method=str(entry.get("method", "unmapped")),
            )
            for name, entry in data.items()
        })


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def header_similarity(header: str, candidate: str) -> float:
    """Similarity in [0, 1]: the better of edit-distance and token-order-free ratios."""
    a, b = normalize_header(header), normalize_header(candidate)
    if not a or not b:
        return 0.0
    edit = fuzz.ratio(a, b)
    tokens = fuzz.token_sort_ratio(header_tokens(header), header_tokens(candidate))
    return round(max(edit, tokens) / 100.0, 4)


def _candidate_names(spec: FieldSpec) -> list[str]:
    return [spec.name, *spec.aliases]


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------

def map_columns(
    headers: Sequence[str],
    schema: TargetSchema,
    overrides: Mapping[str, str | None] | None = None,
    threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> ColumnMapping:
    """Map headers to schema fields.

    Args:
        headers: Header row as ingested.
        schema: Target schema.
        overrides: target field → header (or None to force unmapped).  Used
            verbatim.
        threshold: Minimum fuzzy similarity to accept a header.

    Raises:
        MappingOverrideError: An override names an unknown field or header, or
            assigns one header to two fields.
    """
    overrides = dict(overrides or {})
    _check_overrides(headers, schema, overrides)

    result: dict[str, FieldMapping] = {}
    used: set[str] = set()

    for name, source in overrides.items():
        if source is None:
            result[name] = FieldMapping(None, 0.0, "unmapped")
        else:
            result[name] = FieldMapping(source, 1.0, "override")
            used.add(source)

    normalized_headers = [(h, normalize_header(h)) for h in headers]

    # Pass 2: exact
    for spec in schema.fields:
        if spec.name in result:
            continue
        for position, candidate in enumerate(_candidate_names(spec)):
            wanted = normalize_header(candidate)
            hit = next(
                (h for h, norm in normalized_headers if norm == wanted and h not in used),
                None,
            )
            if hit is not None:
                method = "exact" if position == 0 else "alias"
                result[spec.name] = FieldMapping(hit, 1.0, method)
                used.add(hit)
                break

    # Pass 3: fuzzy
    for spec in schema.fields:
        if spec.name in result:
            continue
        best_header: str | None = None
        best_score = 0.0
        for header in headers:
            if header in used:
                continue
            score = max(header_similarity(header, c) for c in _candidate_names(spec))
            if score > best_score:
                best_header, best_score = header, score
        if best_header is not None and best_score >= threshold:
            result[spec.name] = FieldMapping(best_header, best_score, "fuzzy")
            used.add(best_header)
            log.debug("fuzzy-mapped %r -> %s (%.2f)", best_header, spec.name, best_score)
        else:
            result[spec.name] = FieldMapping(None, 0.0, "unmapped")

    ordered = {spec.name: result[spec.name] for spec in schema.fields}
    return ColumnMapping(
        fields=ordered,
        warnings=tuple(_warnings(schema, ordered)),
        unmapped_headers=tuple(h for h in headers if h not in used),
    )


def _check_overrides(
    headers: Sequence[str],
    schema: TargetSchema,
    overrides: Mapping[str, str | None],
) -> None:
    known_fields = set(schema.field_names)
    known_headers = set(headers)
    assigned: dict[str, str] = {}
    for name, source in overrides.items():
        if name not in known_fields:
            raise MappingOverrideError(f"unknown target field '{name}'")
        if source is None:
            continue
        if source not in known_headers:
            raise MappingOverrideError(f"column '{source}' is not in the file")
        if source in assigned:
            raise MappingOverrideError(
                f"column '{source}' is assigned to both {assigned[source]} and {name}"
            )
        assigned[source] = name


def _warnings(schema: TargetSchema, fields: Mapping[str, FieldMapping]) -> list[MappingWarning]:
    warnings: list[MappingWarning] = []
    for spec in schema.fields:
        if fields[spec.name].source is not None:
            continue
        if spec.required:
            warnings.append(MappingWarning(
                spec.name,
                f"required field {spec.name} has no matching column; every row will fail",
            ))
        elif spec.required_when_mapped:
            warnings.append(MappingWarning(
                spec.name,
                f"{spec.name} has no matching column; rows will be imported without it",
            ))
    return warnings
