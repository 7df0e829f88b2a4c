"""
Boolean predicate expressions over named fields.

Expressions are immutable value objects used in three places: partition predicates
derived from file paths, scan filters supplied by callers, and the pruning oracle
that decides which fragments can be skipped.

Node set
- Literal(value): constant; Literal(True) and Literal(False) are exported as TRUE/FALSE.
- Comparison(op, name, value): field vs. literal with op in ==, !=, <, <=, >, >=.
- IsIn(name, values), IsNull(name).
- And(terms), Or(terms), Not(term).

Building
- field("year") == 2018 builds a Comparison; & | ~ combine nodes.
- and_()/or_() flatten nested conjunctions/disjunctions and fold TRUE/FALSE.

Binding and evaluation
- bind(schema) checks that referenced fields exist and casts literal values to the
  field's Arrow type, raising ExpressionError otherwise.
- evaluate(batch) computes a per-row boolean mask through polars; nulls count as false.

Satisfiability
- is_satisfiable() is a sound over-approximation: it may answer True for an
  unsatisfiable predicate but never answers False for a satisfiable one.
- implies(a, b) is True only when a ∧ ¬b is provably unsatisfiable.

Examples:
    >>> from partset.core.expression import field, is_satisfiable
    >>> part = (field("year") == 2018) & (field("month") == 1)
    >>> is_satisfiable(part & (field("year") > 2018))
    False
    >>> is_satisfiable(part & (field("country") == "US"))
    True
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Final, cast

import polars as pl
import pyarrow as pa

from .constants import MAX_DNF_TERMS
from .errors import ExpressionError

__all__ = [
    "Expression",
    "Literal",
    "Comparison",
    "IsIn",
    "IsNull",
    "And",
    "Or",
    "Not",
    "FieldRef",
    "TRUE",
    "FALSE",
    "field",
    "literal",
    "and_",
    "or_",
    "not_",
    "conjunction_members",
    "known_field_values",
    "is_satisfiable",
    "implies",
]

_COMPARISON_OPS: Final[dict[str, Callable[[Any, Any], Any]]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_NEGATED_OPS: Final[dict[str, str]] = {
    "==": "!=",
    "!=": "==",
    "<": ">=",
    "<=": ">",
    ">": "<=",
    ">=": "<",
}

_MASK_COLUMN: Final[str] = "__partset_mask__"


class Expression:
    """
    Base class of all predicate nodes.

    Notes:
        Subclasses are frozen dataclasses, so == is structural equality between
        nodes and nodes are hashable when their values are.
    """

    __slots__ = ()

    def __and__(self, other: Expression) -> Expression:
        return and_(self, other)

    def __or__(self, other: Expression) -> Expression:
        return or_(self, other)

    def __invert__(self) -> Expression:
        return not_(self)

    def fields(self) -> frozenset[str]:
        """Return the names of all fields referenced by this expression."""
        raise NotImplementedError

    def bind(self, schema: pa.Schema) -> Expression:
        """
        Return a copy whose literals are cast to the types declared in schema.

        Args:
            schema (pa.Schema): Schema providing field types.

        Returns:
            Expression: Bound expression (binding is idempotent).

        Raises:
            ExpressionError: Unknown field, or a literal that cannot be cast.
        """
        raise NotImplementedError

    def to_polars(self) -> pl.Expr:
        """Translate to a polars expression over columns named like the fields."""
        raise NotImplementedError

    def evaluate(self, batch: pa.RecordBatch) -> pa.BooleanArray:
        """
        Evaluate this expression row by row against a record batch.

        Args:
            batch (pa.RecordBatch): Batch carrying every referenced field.

        Returns:
            pa.BooleanArray: Mask of length batch.num_rows; null results are False.
        """
        if isinstance(self, Literal):
            return pa.array([self.value is True] * batch.num_rows, type=pa.bool_())
        frame = cast(pl.DataFrame, pl.from_arrow(batch))
        mask = frame.with_columns(self.to_polars().fill_null(False).alias(_MASK_COLUMN))
        return mask.get_column(_MASK_COLUMN).to_arrow()


@dataclass(frozen=True, slots=True)
class Literal(Expression):
    """Constant value; boolean literals act as always-true / always-false predicates."""

    value: Any

    def fields(self) -> frozenset[str]:
        return frozenset()

    def bind(self, schema: pa.Schema) -> Expression:
        return self

    def to_polars(self) -> pl.Expr:
        return pl.lit(self.value)

    def __str__(self) -> str:
        return repr(self.value)


@dataclass(frozen=True, slots=True)
class Comparison(Expression):
    """Comparison of a field against a literal value."""

    op: str
    name: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _COMPARISON_OPS:
            raise ExpressionError(f"unsupported comparison operator {self.op!r}")

    def fields(self) -> frozenset[str]:
        return frozenset((self.name,))

    def bind(self, schema: pa.Schema) -> Expression:
        target = _field_type(schema, self.name)
        return Comparison(self.op, self.name, _cast_literal(self.value, target, self.name))

    def to_polars(self) -> pl.Expr:
        return _COMPARISON_OPS[self.op](pl.col(self.name), pl.lit(self.value))

    def __str__(self) -> str:
        return f"({self.name} {self.op} {self.value!r})"


@dataclass(frozen=True, slots=True)
class IsIn(Expression):
    """Membership of a field value in a finite set of literals."""

    name: str
    values: tuple[Any, ...]

    def fields(self) -> frozenset[str]:
        return frozenset((self.name,))

    def bind(self, schema: pa.Schema) -> Expression:
        target = _field_type(schema, self.name)
        return IsIn(self.name, tuple(_cast_literal(v, target, self.name) for v in self.values))

    def to_polars(self) -> pl.Expr:
        if not self.values:
            return pl.lit(False)
        return pl.col(self.name).is_in(list(self.values))

    def __str__(self) -> str:
        return f"({self.name} in {list(self.values)!r})"


@dataclass(frozen=True, slots=True)
class IsNull(Expression):
    """True where the field value is null."""

    name: str

    def fields(self) -> frozenset[str]:
        return frozenset((self.name,))

    def bind(self, schema: pa.Schema) -> Expression:
        _field_type(schema, self.name)
        return self

    def to_polars(self) -> pl.Expr:
        return pl.col(self.name).is_null()

    def __str__(self) -> str:
        return f"is_null({self.name})"


@dataclass(frozen=True, slots=True)
class And(Expression):
    """Conjunction of two or more terms (build with and_ or &)."""

    terms: tuple[Expression, ...]

    def fields(self) -> frozenset[str]:
        return frozenset().union(*(t.fields() for t in self.terms))

    def bind(self, schema: pa.Schema) -> Expression:
        return and_(*(t.bind(schema) for t in self.terms))

    def to_polars(self) -> pl.Expr:
        out = self.terms[0].to_polars()
        for term in self.terms[1:]:
            out = out & term.to_polars()
        return out

    def __str__(self) -> str:
        return " and ".join(str(t) for t in self.terms)


@dataclass(frozen=True, slots=True)
class Or(Expression):
    """Disjunction of two or more terms (build with or_ or |)."""

    terms: tuple[Expression, ...]

    def fields(self) -> frozenset[str]:
        return frozenset().union(*(t.fields() for t in self.terms))

    def bind(self, schema: pa.Schema) -> Expression:
        return or_(*(t.bind(schema) for t in self.terms))

    def to_polars(self) -> pl.Expr:
        out = self.terms[0].to_polars()
        for term in self.terms[1:]:
            out = out | term.to_polars()
        return out

    def __str__(self) -> str:
        return "(" + " or ".join(str(t) for t in self.terms) + ")"


@dataclass(frozen=True, slots=True)
class Not(Expression):
    """Negation (build with not_ or ~)."""

    term: Expression

    def fields(self) -> frozenset[str]:
        return self.term.fields()

    def bind(self, schema: pa.Schema) -> Expression:
        return not_(self.term.bind(schema))

    def to_polars(self) -> pl.Expr:
        return ~self.term.to_polars()

    def __str__(self) -> str:
        return f"not {self.term}"


TRUE: Final[Literal] = Literal(True)
FALSE: Final[Literal] = Literal(False)


class FieldRef:
    """
    Builder for predicates on a named field.

    Comparison operators return Comparison nodes rather than booleans, so a
    FieldRef is not itself a predicate and is not hashable.

    Examples:
        >>> from partset.core.expression import field
        >>> str(field("month") >= 3)
        '(month >= 3)'
    """

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __eq__(self, value: object) -> Comparison:  # type: ignore[override]
        return Comparison("==", self.name, value)

    def __ne__(self, value: object) -> Comparison:  # type: ignore[override]
        return Comparison("!=", self.name, value)

    def __lt__(self, value: Any) -> Comparison:
        return Comparison("<", self.name, value)

    def __le__(self, value: Any) -> Comparison:
        return Comparison("<=", self.name, value)

    def __gt__(self, value: Any) -> Comparison:
        return Comparison(">", self.name, value)

    def __ge__(self, value: Any) -> Comparison:
        return Comparison(">=", self.name, value)

    __hash__ = None  # type: ignore[assignment]

    def isin(self, values: Iterable[Any]) -> IsIn:
        return IsIn(self.name, tuple(values))

    def is_null(self) -> IsNull:
        return IsNull(self.name)

    def is_valid(self) -> Expression:
        return Not(IsNull(self.name))

    def __repr__(self) -> str:
        return f"field({self.name!r})"


def field(name: str) -> FieldRef:
    """Reference a field by name (see FieldRef)."""
    return FieldRef(name)


def literal(value: Any) -> Literal:
    """Wrap a constant value."""
    return Literal(value)


def _is_bool_literal(expr: Expression, value: bool) -> bool:
    return isinstance(expr, Literal) and expr.value is value


def and_(*exprs: Expression) -> Expression:
    """
    Conjunction of the given expressions.

    Nested conjunctions are flattened, TRUE terms dropped, duplicates removed, and
    any FALSE term collapses the result to FALSE. An empty conjunction is TRUE.
    """
    terms: list[Expression] = []
    for expr in exprs:
        for member in expr.terms if isinstance(expr, And) else (expr,):
            if _is_bool_literal(member, True):
                continue
            if _is_bool_literal(member, False):
                return FALSE
            if member not in terms:
                terms.append(member)
    if not terms:
        return TRUE
    if len(terms) == 1:
        return terms[0]
    return And(tuple(terms))


def or_(*exprs: Expression) -> Expression:
    """Disjunction of the given expressions; the dual of and_()."""
    terms: list[Expression] = []
    for expr in exprs:
        for member in expr.terms if isinstance(expr, Or) else (expr,):
            if _is_bool_literal(member, False):
                continue
            if _is_bool_literal(member, True):
                return TRUE
            if member not in terms:
                terms.append(member)
    if not terms:
        return FALSE
    if len(terms) == 1:
        return terms[0]
    return Or(tuple(terms))


def not_(expr: Expression) -> Expression:
    """Negation with double negation and boolean literals folded."""
    if isinstance(expr, Literal) and isinstance(expr.value, bool):
        return Literal(not expr.value)
    if isinstance(expr, Not):
        return expr.term
    return Not(expr)


def conjunction_members(expr: Expression) -> list[Expression]:
    """Top-level conjuncts of expr ([] for TRUE)."""
    if _is_bool_literal(expr, True):
        return []
    if isinstance(expr, And):
        return list(expr.terms)
    return [expr]


def known_field_values(expr: Expression) -> dict[str, Any]:
    """
    Collect field values pinned by top-level equality conjuncts.

    Args:
        expr (Expression): Typically a partition expression.

    Returns:
        dict[str, Any]: field -> value for each `field == value` conjunct, and
        field -> None for each is_null(field) conjunct.
    """
    out: dict[str, Any] = {}
    for member in conjunction_members(expr):
        if isinstance(member, Comparison) and member.op == "==":
            out[member.name] = member.value
        elif isinstance(member, IsNull):
            out[member.name] = None
    return out


# -----------------------------------------------------------------------------
# Binding helpers
# -----------------------------------------------------------------------------


def _field_type(schema: pa.Schema, name: str) -> pa.DataType:
    index = schema.get_field_index(name)
    if index < 0:
        raise ExpressionError(f"field {name!r} not found (or ambiguous) in schema {schema.names!r}")
    return schema.field(index).type


def _cast_literal(value: Any, target: pa.DataType, name: str) -> Any:
    if value is None:
        return None
    if pa.types.is_dictionary(target):
        target = target.value_type
    try:
        return pa.scalar(value).cast(target).as_py()
    except (pa.ArrowException, TypeError, ValueError) as exc:
        raise ExpressionError(f"cannot cast {value!r} to {target} for field {name!r}: {exc}") from exc


# -----------------------------------------------------------------------------
# Satisfiability oracle
# -----------------------------------------------------------------------------


def _nnf(expr: Expression, negate: bool = False) -> Expression:
    # Push negations down to the atoms; Not survives only over IsIn/IsNull.
    if isinstance(expr, Not):
        return _nnf(expr.term, not negate)
    if isinstance(expr, And):
        terms = tuple(_nnf(t, negate) for t in expr.terms)
        return Or(terms) if negate else And(terms)
    if isinstance(expr, Or):
        terms = tuple(_nnf(t, negate) for t in expr.terms)
        return And(terms) if negate else Or(terms)
    if not negate:
        return expr
    if isinstance(expr, Comparison):
        return Comparison(_NEGATED_OPS[expr.op], expr.name, expr.value)
    if isinstance(expr, Literal):
        return Literal(not expr.value) if isinstance(expr.value, bool) else expr
    return Not(expr)


def _dnf(expr: Expression) -> list[list[Expression]] | None:
    if isinstance(expr, Or):
        out: list[list[Expression]] = []
        for term in expr.terms:
            sub = _dnf(term)
            if sub is None:
                return None
            out.extend(sub)
            if len(out) > MAX_DNF_TERMS:
                return None
        return out
    if isinstance(expr, And):
        acc: list[list[Expression]] = [[]]
        for term in expr.terms:
            sub = _dnf(term)
            if sub is None:
                return None
            acc = [left + right for left in acc for right in sub]
            if len(acc) > MAX_DNF_TERMS:
                return None
        return acc
    return [[expr]]


class _Domain:
    """Constraints accumulated for one field within one conjunct."""

    __slots__ = ("candidates", "excluded", "lower", "upper", "null", "not_null")

    def __init__(self) -> None:
        self.candidates: set[Any] | None = None
        self.excluded: set[Any] = set()
        self.lower: tuple[Any, bool] | None = None
        self.upper: tuple[Any, bool] | None = None
        self.null = False
        self.not_null = False

    def restrict(self, values: Iterable[Any]) -> None:
        allowed = {v for v in values if v is not None}
        self.candidates = allowed if self.candidates is None else self.candidates & allowed

    def bound_below(self, value: Any, inclusive: bool) -> None:
        if self.lower is None or value > self.lower[0] or (value == self.lower[0] and not inclusive):
            self.lower = (value, inclusive)

    def bound_above(self, value: Any, inclusive: bool) -> None:
        if self.upper is None or value < self.upper[0] or (value == self.upper[0] and not inclusive):
            self.upper = (value, inclusive)

    def _in_range(self, value: Any) -> bool:
        if self.lower is not None:
            lo, inclusive = self.lower
            if value < lo or (value == lo and not inclusive):
                return False
        if self.upper is not None:
            hi, inclusive = self.upper
            if value > hi or (value == hi and not inclusive):
                return False
        return True

    def possible(self) -> bool:
        if self.null:
            return not self.not_null
        if self.candidates is not None:
            return any(v not in self.excluded and self._in_range(v) for v in self.candidates)
        if self.lower is not None and self.upper is not None:
            (lo, lo_inc), (hi, hi_inc) = self.lower, self.upper
            if lo > hi:
                return False
            if lo == hi:
                return lo_inc and hi_inc and lo not in self.excluded
        return True


def _conjunct_satisfiable(atoms: list[Expression]) -> bool:
    domains: dict[str, _Domain] = {}
    try:
        for atom in atoms:
            if isinstance(atom, Literal):
                if atom.value is True:
                    continue
                return False
            if isinstance(atom, Comparison):
                if atom.value is None:
                    return False
                dom = domains.setdefault(atom.name, _Domain())
                dom.not_null = True
                if atom.op == "==":
                    dom.restrict((atom.value,))
                elif atom.op == "!=":
                    dom.excluded.add(atom.value)
                elif atom.op in ("<", "<="):
                    dom.bound_above(atom.value, atom.op == "<=")
                else:
                    dom.bound_below(atom.value, atom.op == ">=")
            elif isinstance(atom, IsIn):
                dom = domains.setdefault(atom.name, _Domain())
                dom.not_null = True
                dom.restrict(atom.values)
            elif isinstance(atom, IsNull):
                domains.setdefault(atom.name, _Domain()).null = True
            elif isinstance(atom, Not) and isinstance(atom.term, IsNull):
                domains.setdefault(atom.term.name, _Domain()).not_null = True
            elif isinstance(atom, Not) and isinstance(atom.term, IsIn):
                dom = domains.setdefault(atom.term.name, _Domain())
                dom.not_null = True
                dom.excluded.update(v for v in atom.term.values if v is not None)
        return all(dom.possible() for dom in domains.values())
    except TypeError:
        # Values of incomparable types: cannot prove anything.
        return True


def is_satisfiable(expr: Expression) -> bool:
    """
    Conservative satisfiability check.

    Args:
        expr (Expression): Predicate, ideally bound so literals share field types.

    Returns:
        bool: False only if no row can satisfy expr; True otherwise (including
        whenever the check is inconclusive).
    """
    dnf = _dnf(_nnf(expr))
    if dnf is None:
        return True
    return any(_conjunct_satisfiable(conjunct) for conjunct in dnf)


def implies(premise: Expression, conclusion: Expression) -> bool:
    """True only when every row satisfying premise provably satisfies conclusion."""
    return not is_satisfiable(and_(premise, not_(conclusion)))
