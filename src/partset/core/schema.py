"""
Schema helpers shared by discovery, scanning and writing.

Responsibilities
- Union per-file physical schemas into one dataset schema, failing on type conflicts.
- Select named subsets of a schema (projections, partition schemas, write payloads).

Rules
- Union keeps first-seen field order; a field that appears in several schemas must
  carry the same type everywhere (null-typed fields are promoted), otherwise
  SchemaConflict is raised. Nullability is the OR of the inputs.
- Fields missing from some inputs are kept; the scan layer null-fills them.

Notes
- Zero-IO; depends on pyarrow only.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import pyarrow as pa

from .errors import SchemaConflict, SchemaError

__all__ = [
    "unify_schemas",
    "schema_from_names",
    "schema_without",
]


def unify_schemas(schemas: Iterable[pa.Schema]) -> pa.Schema:
    """
    Union schemas by field name with a same-type check.

    Args:
        schemas (Iterable[pa.Schema]): Schemas in discovery order.

    Returns:
        pa.Schema: Unified schema (empty schema for no input).

    Raises:
        SchemaConflict: A field name is declared with two different types.

    Examples:
        >>> import pyarrow as pa
        >>> a = pa.schema([("x", pa.int32())])
        >>> b = pa.schema([("y", pa.string()), ("x", pa.int32())])
        >>> unify_schemas([a, b]).names
        ['x', 'y']
    """
    items = list(schemas)
    if not items:
        return pa.schema([])
    seen: dict[str, pa.DataType] = {}
    for schema in items:
        for f in schema:
            prior = seen.get(f.name)
            if prior is None or pa.types.is_null(prior):
                seen[f.name] = f.type
            elif not pa.types.is_null(f.type) and prior != f.type:
                raise SchemaConflict(
                    f"field {f.name!r} has conflicting types {prior} and {f.type}"
                )
    try:
        return pa.unify_schemas(items)
    except (pa.ArrowInvalid, pa.ArrowTypeError) as exc:
        raise SchemaConflict(f"failed to unify schemas: {exc}") from exc


def schema_from_names(schema: pa.Schema, names: Sequence[str]) -> pa.Schema:
    """
    Select fields of schema by name, in the order given.

    Raises:
        SchemaError: A name is not present in schema.
    """
    fields = []
    for name in names:
        index = schema.get_field_index(name)
        if index < 0:
            raise SchemaError(f"field {name!r} not found in schema {schema.names!r}")
        fields.append(schema.field(index))
    return pa.schema(fields)


def schema_without(schema: pa.Schema, names: Iterable[str]) -> pa.Schema:
    """Return schema minus the named fields, preserving order and metadata."""
    drop = set(names)
    return pa.schema([f for f in schema if f.name not in drop], metadata=schema.metadata)
