"""loanbook_import.rows

Per-row cleaning, type coercion and validation.

A RawRow goes in; a typed, frozen NormalizedRow comes out.  Nothing
downstream of this module ever sees raw cell strings.

Per field, in order:
  1. trim (blank → no value)
  2. missing value: "<field> is required" for required fields, else the
     schema default (or None)
  3. type coercion; failure is "<field> has invalid value '<raw>'"
  4. domain validators (min / max / gt) on the coerced value

Every problem on the row is collected; nothing short-circuits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Sequence

from loanbook_import.ingest import RawRow
from loanbook_import.mapping import ColumnMapping
from loanbook_import.normalize import (
    DEFAULT_DATE_FORMATS,
    normalize_email,
    normalize_nrc,
    normalize_phone,
    normalize_space,
    parse_bool,
    parse_date,
    parse_int,
    parse_numeric,
    trim,
)
from loanbook_import.schema import FieldSpec, TargetSchema
from loanbook_import.shared import RowError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchCandidate:
    entity_id: str
    confidence: float
    identifier_kind: str
    identifier_value: str


@dataclass(frozen=True)
class NormalizedRow:
    index: int
    fields: dict[str, Any] = field(default_factory=dict)
    errors: tuple[RowError, ...] = ()
    match: MatchCandidate | None = None

    @property
    def is_clean(self) -> bool:
        return not self.errors

    def with_match(self, match: MatchCandidate) -> NormalizedRow:
        return replace(self, match=match)

    def commit_fields(self) -> dict[str, Any]:
        """Fields handed to the creation callable (resolved customer id included)."""
        out = dict(self.fields)
        if self.match is not None:
            out["customerId"] = self.match.entity_id
        return out


# ---------------------------------------------------------------------------
# Coercion table
# ---------------------------------------------------------------------------

def _coercers(date_formats: Sequence[str]) -> dict[str, Callable[[str], Any]]:
    return {
        "string": normalize_space,
        "name": normalize_space,
        "phone": normalize_phone,
        "email": normalize_email,
        "nrc": normalize_nrc,
        "decimal": parse_numeric,
        "integer": parse_int,
        "date": lambda v: parse_date(v, date_formats),
        "bool": parse_bool,
    }


def _fmt(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)


def _validate(spec: FieldSpec, value: Any) -> str | None:
    rules = spec.validators
    if not rules or not isinstance(value, (int, Decimal)):
        return None
    low, high, gt = rules.get("min"), rules.get("max"), rules.get("gt")
    number = Decimal(value)
    if low is not None and high is not None:
        if not (Decimal(str(low)) <= number <= Decimal(str(high))):
            return f"{spec.name} must be between {_fmt(low)} and {_fmt(high)}"
    elif low is not None and number < Decimal(str(low)):
        return f"{spec.name} must be at least {_fmt(low)}"
    elif high is not None and number > Decimal(str(high)):
        return f"{spec.name} must be at most {_fmt(high)}"
    if gt is not None and number <= Decimal(str(gt)):
        return f"{spec.name} must be greater than {_fmt(gt)}"
    return None


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

def normalize_row(
    row: RawRow,
    mapping: ColumnMapping,
    schema: TargetSchema,
    date_formats: Sequence[str] = DEFAULT_DATE_FORMATS,
) -> NormalizedRow:
    coercers = _coercers(date_formats)
    fields: dict[str, Any] = {}
    errors: list[RowError] = []

    for spec in schema.fields:
        source = mapping.source_for(spec.name)
        raw = trim(row.get(source))

        if raw is None:
            if spec.required or (spec.required_when_mapped and source is not None):
                errors.append(RowError(row.index, f"{spec.name} is required", spec.name))
            fields[spec.name] = spec.default
            continue

        value = coercers[spec.type](raw)
        if value is None:
            errors.append(
                RowError(row.index, f"{spec.name} has invalid value '{raw}'", spec.name)
            )
            continue

        problem = _validate(spec, value)
        if problem:
            errors.append(RowError(row.index, problem, spec.name))
            continue

        fields[spec.name] = value

    if errors:
        log.debug("row %d rejected: %s", row.index, "; ".join(e.message for e in errors))
    return NormalizedRow(index=row.index, fields=fields, errors=tuple(errors))
