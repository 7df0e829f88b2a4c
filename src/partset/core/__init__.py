"""
Core contracts for partset (expressions, schema union, constants, errors).

## Contracts (single source of truth)
- Expressions — predicate nodes, binding, evaluation, satisfiability oracle.
- Schema — union-with-conflict-check and name-based selection.
- Constants — defaults for scanning, discovery and writing.
- Errors — SchemaError, SchemaConflict, ExpressionError.

## Notes
- Zero-IO policy: pyarrow/polars are used for types and evaluation only; no file access.

## Downstream usage
- partset.dataset — binds partition predicates, prunes fragments, filters batches and
  unifies physical schemas through this package.

## Examples
```python
from partset.core import field, is_satisfiable

part = (field("year") == 2018) & (field("month") == 1)
is_satisfiable(part & (field("year") == 2019))  # False -> fragment can be pruned
```
"""

from __future__ import annotations

from .errors import ExpressionError, SchemaConflict, SchemaError
from .expression import (
    FALSE,
    TRUE,
    Expression,
    and_,
    field,
    implies,
    is_satisfiable,
    literal,
    not_,
    or_,
)
from .schema import schema_from_names, unify_schemas

__all__ = [
    "Expression",
    "TRUE",
    "FALSE",
    "field",
    "literal",
    "and_",
    "or_",
    "not_",
    "is_satisfiable",
    "implies",
    "unify_schemas",
    "schema_from_names",
    "SchemaError",
    "SchemaConflict",
    "ExpressionError",
]
