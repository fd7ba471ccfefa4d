"""loanbook_import.schema

YAML-based target schemas for bulk import.

Responsibilities:
  - Load and validate schema files from loanbook_import/schemas/*.yml
  - Describe each target field: type, required flag, aliases, default,
    domain validators, and (loan rows) which customer identifier it carries
  - Hash YAML content so an ImportRun can record exactly which schema it used

Usage:
    from loanbook_import.schema import load_builtin_schema

    schema = load_builtin_schema("loan")
    schema.field_spec("interestRate").validators   # {"min": 0, "max": 100}
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SCHEMAS_DIR = Path(__file__).parent / "schemas"

VALID_ENTITY_KINDS = frozenset({"customer", "loan"})

VALID_FIELD_TYPES = frozenset({
    "string", "name", "phone", "email", "nrc",
    "decimal", "integer", "date", "bool",
})

VALID_VALIDATORS = frozenset({"min", "max", "gt"})

# Identifier kinds in the fixed priority order used by EntityMatcher.
IDENTIFIER_PRIORITY = ("id", "nrc", "phone", "name")
VALID_IDENTIFIER_ROLES = frozenset(IDENTIFIER_PRIORITY) | {"any"}

REQUIRED_YAML_KEYS = frozenset({"entity_kind", "version", "fields"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SchemaValidationError(ValueError):
    """Raised when a YAML schema file fails validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: str = "string"
    required: bool = False
    required_when_mapped: bool = False
    aliases: tuple[str, ...] = ()
    default: Any = None
    validators: dict[str, float] = field(default_factory=dict)
    identifier: str | None = None


@dataclass(frozen=True)
class TargetSchema:
    """Parsed, validated target schema loaded from a YAML file."""

    entity_kind: str
    version: str
    yaml_hash: str
    fields: tuple[FieldSpec, ...]
    references: str | None = None
    raw_yaml: str = field(repr=False, default="")

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def required_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.required]

    @property
    def identifier_fields(self) -> list[FieldSpec]:
        return [f for f in self.fields if f.identifier]

    def field_spec(self, name: str) -> FieldSpec:
        for spec in self.fields:
            if spec.name == name:
                return spec
        raise KeyError(name)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_schema(yaml_path: Path) -> TargetSchema:
    """Load, validate, and return a TargetSchema from a YAML file.

    Raises:
        SchemaValidationError: If any required key is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    return parse_schema(raw)


def load_builtin_schema(entity_kind: str) -> TargetSchema:
    """Load one of the packaged schemas ('customer' or 'loan')."""
    if entity_kind not in VALID_ENTITY_KINDS:
        raise SchemaValidationError(
            f"Unknown entity kind '{entity_kind}'. Must be one of {sorted(VALID_ENTITY_KINDS)}."
        )
    return load_schema(SCHEMAS_DIR / f"{entity_kind}.yml")


def parse_schema(raw: str) -> TargetSchema:
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_schema(data)
    fields = tuple(
        FieldSpec(
            name=str(f["name"]),
            type=str(f.get("type") or "string"),
            required=f.get("required") is True,
            required_when_mapped=f.get("required") == "when_mapped",
            aliases=tuple(str(a) for a in f.get("aliases") or []),
            default=f.get("default"),
            validators={k: float(v) for k, v in (f.get("validators") or {}).items()},
            identifier=f.get("identifier"),
        )
        for f in data["fields"]
    )
    return TargetSchema(
        entity_kind=data["entity_kind"],
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        fields=fields,
        references=data.get("references"),
        raw_yaml=raw,
    )


def validate_schema(data: dict[str, Any]) -> None:
    """Raise SchemaValidationError if data does not match the schema format.

    Validates:
      - Required top-level keys present, entity_kind allowed
      - Every field has a unique name and a known type
      - Validator keys known and numeric
      - Identifier roles only appear on schemas that reference another entity
    """
    if not isinstance(data, dict):
        raise SchemaValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise SchemaValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    entity_kind = data.get("entity_kind")
    if entity_kind not in VALID_ENTITY_KINDS:
        raise SchemaValidationError(
            f"Invalid entity_kind '{entity_kind}'. Must be one of {sorted(VALID_ENTITY_KINDS)}."
        )

    references = data.get("references")
    if references is not None and references not in VALID_ENTITY_KINDS:
        raise SchemaValidationError(f"Invalid references '{references}'.")

    fields = data.get("fields")
    if not isinstance(fields, list) or not fields:
        raise SchemaValidationError("'fields' must be a non-empty list.")

    seen: set[str] = set()
    for entry in fields:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise SchemaValidationError(f"Field entry {entry!r} has no name.")
        name = str(entry["name"])
        if name in seen:
            raise SchemaValidationError(f"Duplicate field name '{name}'.")
        seen.add(name)

        required = entry.get("required", False)
        if required not in (True, False, "when_mapped"):
            raise SchemaValidationError(
                f"Field '{name}' required must be true, false or 'when_mapped'."
            )

        ftype = entry.get("type") or "string"
        if ftype not in VALID_FIELD_TYPES:
            raise SchemaValidationError(f"Field '{name}' has unknown type '{ftype}'.")

        aliases = entry.get("aliases") or []
        if not isinstance(aliases, list):
            raise SchemaValidationError(f"Field '{name}' aliases must be a list.")

        for key, val in (entry.get("validators") or {}).items():
            if key not in VALID_VALIDATORS:
                raise SchemaValidationError(f"Field '{name}' has unknown validator '{key}'.")
            try:
                float(val)
            except (TypeError, ValueError):
                raise SchemaValidationError(
                    f"Field '{name}' validator '{key}' value '{val}' is not numeric."
                )

        identifier = entry.get("identifier")
        if identifier is not None:
            if identifier not in VALID_IDENTIFIER_ROLES:
                raise SchemaValidationError(
                    f"Field '{name}' has unknown identifier role '{identifier}'."
                )
            if references is None:
                raise SchemaValidationError(
                    f"Field '{name}' carries an identifier but the schema references nothing."
                )
