"""
Schema Validator
================

Declarative structural check of a record. A schema maps field names to
``FieldSpec``; a spec may mark the field required, constrain its type and
nest a schema for mapping values. Schemas never supply defaults.

    schema = Schema.from_dict({
        "Coins": {"required": True, "type": "number"},
        "Inventory": {"type": "table", "schema": {"Slots": {"type": "integer"}}},
    })
    validate(schema, record)   # Ok(None) | Err(ValidationError)

Fields are checked in declaration order and the first failure wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from reliastore.core.errors import ValidationError
from reliastore.core.types import Result, Ok, Err

TypeSpec = Union[str, type, tuple[type, ...]]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, int) or (isinstance(value, float) and value.is_integer())


_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": _is_number,
    "integer": _is_integer,
    "boolean": lambda v: isinstance(v, bool),
    "table": lambda v: isinstance(v, Mapping),
    "object": lambda v: isinstance(v, Mapping),
    "dict": lambda v: isinstance(v, Mapping),
    "array": lambda v: isinstance(v, list),
    "list": lambda v: isinstance(v, list),
    "null": lambda v: v is None,
}


def type_name(value: Any) -> str:
    """Name of ``value``'s type in schema vocabulary."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "table"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


def _matches(expected: TypeSpec, value: Any) -> bool:
    if isinstance(expected, str):
        return _TYPE_CHECKS[expected](value)
    return isinstance(value, expected)


def _describe(expected: TypeSpec) -> str:
    if isinstance(expected, str):
        return expected
    if isinstance(expected, tuple):
        return " | ".join(t.__name__ for t in expected)
    return expected.__name__


@dataclass(frozen=True)
class FieldSpec:
    """Constraints on one field."""

    required: bool = False
    type: Optional[TypeSpec] = None
    schema: Optional[Schema] = None

    def __post_init__(self) -> None:
        if isinstance(self.type, str) and self.type not in _TYPE_CHECKS:
            raise ValueError(
                f"Unknown type name {self.type!r}, expected one of {sorted(_TYPE_CHECKS)}"
            )


@dataclass(frozen=True)
class Schema:
    """Ordered mapping of field name to ``FieldSpec``."""

    fields: dict[str, FieldSpec] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, spec: Mapping[str, Any]) -> Schema:
        """
        Build a schema from plain nested dicts.

        Each value is either a ``FieldSpec`` or a mapping with optional
        ``required``, ``type`` and ``schema`` keys; ``schema`` may itself
        be a plain mapping or a ``Schema``.
        """
        fields: dict[str, FieldSpec] = {}
        for name, entry in spec.items():
            if isinstance(entry, FieldSpec):
                fields[name] = entry
                continue
            if not isinstance(entry, Mapping):
                raise TypeError(f"Field spec for {name!r} must be a mapping or FieldSpec")
            nested = entry.get("schema")
            if nested is not None and not isinstance(nested, Schema):
                nested = cls.from_dict(nested)
            fields[name] = FieldSpec(
                required=bool(entry.get("required", False)),
                type=entry.get("type"),
                schema=nested,
            )
        return cls(fields=fields)

    def __len__(self) -> int:
        return len(self.fields)


def validate(
    schema: Optional[Schema],
    record: Any,
    path: str = "",
) -> Result[None, ValidationError]:
    """
    Recursively check ``record`` against ``schema``.

    A ``None`` schema accepts anything. Nested schemas only apply when the
    field's value is a mapping; a non-mapping value under a nested schema
    is left to the field's ``type`` constraint.
    """
    if schema is None:
        return Ok(None)
    data = record if isinstance(record, Mapping) else {}
    for name, spec in schema.fields.items():
        field_path = f"{path}.{name}" if path else name
        value = data.get(name)
        if value is None:
            if spec.required:
                return Err(ValidationError.missing_field(field_path))
            continue
        if spec.type is not None and not _matches(spec.type, value):
            return Err(ValidationError.type_mismatch(
                field_path, _describe(spec.type), type_name(value)
            ))
        if spec.schema is not None and isinstance(value, Mapping):
            nested = validate(spec.schema, value, field_path)
            if nested.is_err():
                return nested
    return Ok(None)
