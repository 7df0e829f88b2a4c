"""
Core exception types raised by expression binding and schema union.

Provides typed exceptions for core-domain failures:
- SchemaError for schema-level constraints (unknown columns, bad projections).
- SchemaConflict when two schemas declare the same field with different types.
- ExpressionError when a predicate cannot be bound to a schema.

Notes:
    - This module uses only the Python standard library and has no side effects.
    - The dataset layer raises its own errors (see partset.dataset.errors) for
      discovery, scan and write failures.

Examples:
    Catch a union conflict.

    >>> from partset.core.errors import SchemaConflict, SchemaError
    >>> issubclass(SchemaConflict, SchemaError)
    True
"""

from __future__ import annotations

__all__ = [
    "SchemaError",
    "SchemaConflict",
    "ExpressionError",
]


class SchemaError(ValueError):
    """Schema-level failure (unknown field, invalid projection)."""


class SchemaConflict(SchemaError):
    """Same field name declared with incompatible types across schemas."""


class ExpressionError(ValueError):
    """Predicate references an unknown field or a literal that cannot be cast."""
