"""loanbook_import.matching

Resolves the customer a loan row refers to.

Identifier kinds are tried in a fixed priority order:

    id  >  nrc  >  phone  >  name

Within a kind, a dedicated column (customerNrc, customerPhone, customerName)
is tried before the generic customerIdentifier value.  The first kind that
yields any candidate decides the row:

  - exactly one candidate  -> MatchCandidate
  - more than one          -> AmbiguousMatchError (never pick one)

A lower-priority kind is never consulted once a higher one has produced
candidates.  If nothing yields a candidate the row fails with
CustomerNotFoundError.

The lookup is injected; this module never writes and never creates a
customer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from loanbook_import.normalize import normalize_nrc, normalize_phone, normalize_space, trim
from loanbook_import.rows import MatchCandidate, NormalizedRow
from loanbook_import.schema import IDENTIFIER_PRIORITY, TargetSchema
from loanbook_import.shared import AmbiguousMatchError, CustomerNotFoundError

log = logging.getLogger(__name__)

# Confidence reported on a MatchCandidate, per deciding identifier kind.
_KIND_CONFIDENCE = {"id": 1.0, "nrc": 1.0, "phone": 0.95, "name": 0.8}

_GENERIC_COERCERS: dict[str, Callable[[Optional[str]], Optional[str]]] = {
    "id": trim,
    "nrc": normalize_nrc,
    "phone": normalize_phone,
    "name": normalize_space,
}


@dataclass(frozen=True)
class CustomerRef:
    id: str
    full_name: str | None = None


# lookup(agency_id, kind, value) -> CustomerRef | list[CustomerRef] | None
CustomerLookup = Callable[[str, str, str], Any]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _as_refs(found: Any) -> list[CustomerRef]:
    """Accept whatever the lookup returned and flatten it to a list of refs."""
    if found is None:
        return []
    if isinstance(found, (list, tuple, set, frozenset)):
        items = list(found)
    else:
        items = [found]
    refs: list[CustomerRef] = []
    seen: set[str] = set()
    for item in items:
        if isinstance(item, CustomerRef):
            ref = item
        elif isinstance(item, dict):
            ref = CustomerRef(id=str(item["id"]), full_name=item.get("fullName"))
        else:
            ref = CustomerRef(id=str(item))
        if ref.id not in seen:
            seen.add(ref.id)
            refs.append(ref)
    return refs


def identifier_attempts(row: NormalizedRow, schema: TargetSchema) -> list[tuple[str, str]]:
    """Ordered (kind, value) pairs to look up for one row, duplicates removed."""
    typed: dict[str, list[str]] = {}
    generic: list[str] = []
    for spec in schema.identifier_fields:
        if spec.identifier == "any":
            generic.append(spec.name)
        else:
            typed.setdefault(spec.identifier, []).append(spec.name)

    attempts: list[tuple[str, str]] = []
    for kind in IDENTIFIER_PRIORITY:
        values = [row.fields.get(name) for name in typed.get(kind, [])]
        values += [_GENERIC_COERCERS[kind](row.fields.get(name)) for name in generic]
        for value in values:
            if value is None or value == "":
                continue
            pair = (kind, str(value))
            if pair not in attempts:
                attempts.append(pair)
    return attempts


def _not_found_value(row: NormalizedRow, schema: TargetSchema, attempts: list[tuple[str, str]]) -> str:
    for spec in schema.identifier_fields:
        if spec.identifier == "any" and row.fields.get(spec.name):
            return str(row.fields[spec.name])
    return attempts[0][1] if attempts else ""


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------

def match_customer(
    agency_id: str,
    row: NormalizedRow,
    schema: TargetSchema,
    lookup: CustomerLookup,
) -> MatchCandidate:
    """Resolve the row's customer.

    Raises:
        AmbiguousMatchError: The deciding identifier matched several customers.
        CustomerNotFoundError: No identifier on the row matched anyone.
    """
    attempts = identifier_attempts(row, schema)

    for kind, value in attempts:
        refs = _as_refs(lookup(agency_id, kind, value))
        if not refs:
            continue
        if len(refs) > 1:
            raise AmbiguousMatchError(kind, value, len(refs))
        log.debug("row %d matched customer %s by %s", row.index, refs[0].id, kind)
        return MatchCandidate(
            entity_id=refs[0].id,
            confidence=_KIND_CONFIDENCE[kind],
            identifier_kind=kind,
            identifier_value=value,
        )

    raise CustomerNotFoundError(_not_found_value(row, schema, attempts))
