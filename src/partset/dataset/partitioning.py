"""
Partitioning schemes: bidirectional mapping between path segments and predicates.

Overview
- DirectoryPartitioning: segment i maps positionally to field i
  (e.g. "2018/1" -> year == 2018 and month == 1). Excess segments are ignored.
- HivePartitioning: "key=value" segments matched by name, in any order; segments
  for unknown keys and missing keys are tolerated.

Parse
- parse(segments) returns the conjunction of one equality per recognized segment,
  with the segment text unescaped and cast to the field type.
- A segment whose value cannot be cast raises PartitionParseError when the
  partitioning is strict; otherwise it is treated as unmatched.

Format
- format(predicate) is the inverse: fields pinned by top-level equalities are
  rendered into segments; conjuncts on other fields are omitted. Values are
  percent-escaped so "/" and other reserved characters stay inside one segment.
- Directory formatting needs the pinned fields to be a leading run of the field list.
  Empty, "." and ".." values cannot be represented as directory segments.
- Hive writes a real value equal to the null token fully percent-escaped.

Discovery
- PartitioningFactory infers a partition schema (int32 if every observed value casts,
  string otherwise) from observed paths and then builds the partitioning.
"""

from __future__ import annotations

import abc
from collections.abc import Iterable, Sequence
from typing import Any, ClassVar
from urllib.parse import quote, unquote

import pyarrow as pa

from partset.core.constants import HIVE_NULL_FALLBACK
from partset.core.expression import (
    TRUE,
    Comparison,
    Expression,
    IsNull,
    and_,
    known_field_values,
)

from .errors import PartitionFormatError, PartitionParseError


def _cast_segment(raw: str, target: pa.DataType) -> Any:
    if pa.types.is_dictionary(target):
        target = target.value_type
    if pa.types.is_string(target) or pa.types.is_large_string(target):
        return raw
    return pa.scalar(raw, type=pa.string()).cast(target).as_py()


# Segments that would vanish from, or step out of, a joined path.
_UNREPRESENTABLE_SEGMENTS = frozenset(("", ".", ".."))


def _escape_all(text: str) -> str:
    return "".join(f"%{byte:02X}" for byte in text.encode("utf-8"))


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, bytes):
        text = value.decode("utf-8")
    else:
        text = str(value)
    return quote(text, safe="")


class Partitioning(abc.ABC):
    """
    Base class for partitioning schemes.

    Attributes:
        schema (pa.Schema): Ordered partition fields.
        strict (bool): Raise PartitionParseError on uncastable segments.

    Notes:
        Instances are immutable and safe to share across threads.
    """

    type_name: ClassVar[str]

    def __init__(self, schema: pa.Schema, *, strict: bool = False) -> None:
        self._schema = schema
        self._strict = strict

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    @property
    def strict(self) -> bool:
        return self._strict

    @property
    def field_names(self) -> list[str]:
        return list(self._schema.names)

    @staticmethod
    def default() -> Partitioning:
        """A partitioning with no fields: every path parses to TRUE."""
        return DirectoryPartitioning(pa.schema([]))

    @abc.abstractmethod
    def parse(self, segments: Sequence[str]) -> Expression:
        """Convert ordered path segments into a partition predicate."""

    @abc.abstractmethod
    def format(self, expr: Expression) -> list[str]:
        """Convert a partition predicate into ordered path segments."""

    def parse_path(self, path: str) -> Expression:
        """Parse a '/'-separated directory path (no file name)."""
        return self.parse([s for s in path.split("/") if s])

    def format_path(self, expr: Expression) -> str:
        return "/".join(self.format(expr))

    def equals(self, other: object) -> bool:
        return (
            type(self) is type(other)
            and isinstance(other, Partitioning)
            and self._schema.equals(other._schema)
            and self._strict == other._strict
        )

    def _convert(self, f: pa.Field, raw: str) -> Expression | None:
        text = unquote(raw)
        try:
            value = _cast_segment(text, f.type)
        except (pa.ArrowException, ValueError, TypeError) as exc:
            if self._strict:
                raise PartitionParseError(
                    f"cannot cast segment {raw!r} to {f.type} for partition field {f.name!r}"
                ) from exc
            return None
        return Comparison("==", f.name, value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.field_names!r})"


class DirectoryPartitioning(Partitioning):
    """
    Positional partitioning: "/2018/1" with fields (year, month).

    Examples:
        >>> import pyarrow as pa
        >>> p = DirectoryPartitioning(pa.schema([("year", pa.int32()), ("month", pa.int32())]))
        >>> str(p.parse(["2018", "1"]))
        '(year == 2018) and (month == 1)'
        >>> p.format(p.parse(["2018", "1"]))
        ['2018', '1']
    """

    type_name: ClassVar[str] = "directory"

    def parse(self, segments: Sequence[str]) -> Expression:
        terms: list[Expression] = []
        for f, segment in zip(self._schema, segments):
            term = self._convert(f, segment)
            if term is not None:
                terms.append(term)
        return and_(*terms)

    def format(self, expr: Expression) -> list[str]:
        known = known_field_values(expr)
        segments: list[str] = []
        names = self.field_names
        for i, name in enumerate(names):
            if name not in known:
                later = [n for n in names[i + 1 :] if n in known]
                if later:
                    raise PartitionFormatError(
                        f"directory partitioning needs {name!r} to format {later!r}"
                    )
                break
            value = known[name]
            if value is None:
                raise PartitionFormatError(
                    f"directory partitioning cannot represent a null value for {name!r}"
                )
            segment = _format_value(value)
            if segment in _UNREPRESENTABLE_SEGMENTS:
                raise PartitionFormatError(
                    f"directory partitioning cannot represent {value!r} for {name!r}"
                )
            segments.append(segment)
        return segments

    @staticmethod
    def discover(field_names: Sequence[str], *, strict: bool = False) -> PartitioningFactory:
        """Factory inferring field types for the given positional names."""
        return PartitioningFactory("directory", field_names=field_names, strict=strict)


class HivePartitioning(Partitioning):
    """
    Named partitioning: "/year=2018/month=01".

    Attributes:
        null_fallback (str): Segment value standing for a null partition value.

    Examples:
        >>> import pyarrow as pa
        >>> p = HivePartitioning(pa.schema([("year", pa.int32()), ("month", pa.int32())]))
        >>> str(p.parse(["month=01", "other=x", "year=2018"]))
        '(month == 1) and (year == 2018)'
    """

    type_name: ClassVar[str] = "hive"

    def __init__(
        self,
        schema: pa.Schema,
        *,
        strict: bool = False,
        null_fallback: str = HIVE_NULL_FALLBACK,
    ) -> None:
        super().__init__(schema, strict=strict)
        self.null_fallback = null_fallback

    @staticmethod
    def split_segment(segment: str) -> tuple[str, str] | None:
        if "=" not in segment:
            return None
        key, raw = segment.split("=", 1)
        return unquote(key), raw

    def parse(self, segments: Sequence[str]) -> Expression:
        terms: list[Expression] = []
        for segment in segments:
            pair = self.split_segment(segment)
            if pair is None:
                continue
            key, raw = pair
            index = self._schema.get_field_index(key)
            if index < 0:
                continue
            if raw == self.null_fallback:
                terms.append(IsNull(key))
                continue
            term = self._convert(self._schema.field(index), raw)
            if term is not None:
                terms.append(term)
        return and_(*terms)

    def format(self, expr: Expression) -> list[str]:
        known = known_field_values(expr)
        segments: list[str] = []
        for name in self.field_names:
            if name not in known:
                continue
            value = known[name]
            if value is None:
                rendered = self.null_fallback
            else:
                rendered = _format_value(value)
                if rendered == self.null_fallback:
                    # A real value spelled like the null token is stored fully escaped.
                    rendered = _escape_all(rendered)
            segments.append(f"{quote(name, safe='')}={rendered}")
        return segments

    def equals(self, other: object) -> bool:
        return (
            super().equals(other)
            and isinstance(other, HivePartitioning)
            and self.null_fallback == other.null_fallback
        )

    @staticmethod
    def discover(*, strict: bool = False, null_fallback: str = HIVE_NULL_FALLBACK) -> PartitioningFactory:
        """Factory inferring both keys (first-seen order) and field types."""
        return PartitioningFactory("hive", strict=strict, null_fallback=null_fallback)


class PartitioningFactory:
    """
    Infers a partition schema from observed directory segments.

    Notes:
        - Directory flavor: names are given, types are inferred.
        - Hive flavor: names are collected from "key=value" segments in first-seen order.
        - A field is int32 when every non-null observed value casts to int32, else string.
    """

    def __init__(
        self,
        flavor: str,
        *,
        field_names: Sequence[str] = (),
        strict: bool = False,
        null_fallback: str = HIVE_NULL_FALLBACK,
    ) -> None:
        if flavor not in ("directory", "hive"):
            raise ValueError(f"unknown partitioning flavor {flavor!r}")
        self.flavor = flavor
        self.field_names = list(field_names)
        self.strict = strict
        self.null_fallback = null_fallback

    def _observed(self, segment_lists: Iterable[Sequence[str]]) -> dict[str, list[str]]:
        observed: dict[str, list[str]] = {name: [] for name in self.field_names}
        for segments in segment_lists:
            if self.flavor == "directory":
                for name, segment in zip(self.field_names, segments):
                    observed[name].append(unquote(segment))
                continue
            for segment in segments:
                pair = HivePartitioning.split_segment(segment)
                if pair is None:
                    continue
                key, raw = pair
                values = observed.setdefault(key, [])
                if raw != self.null_fallback:
                    values.append(unquote(raw))
        return observed

    def inspect(self, segment_lists: Iterable[Sequence[str]]) -> pa.Schema:
        """Infer the partition schema from the directory segments of every file."""
        fields = []
        for name, values in self._observed(segment_lists).items():
            fields.append(pa.field(name, _infer_type(values)))
        return pa.schema(fields)

    def finish(self, schema: pa.Schema) -> Partitioning:
        """Build the partitioning for an inferred (or overridden) partition schema."""
        if self.flavor == "directory":
            return DirectoryPartitioning(schema, strict=self.strict)
        return HivePartitioning(schema, strict=self.strict, null_fallback=self.null_fallback)

    def __repr__(self) -> str:
        return f"PartitioningFactory({self.flavor!r}, field_names={self.field_names!r})"


def _infer_type(values: Sequence[str]) -> pa.DataType:
    if not values:
        return pa.string()
    try:
        for value in values:
            pa.scalar(value, type=pa.string()).cast(pa.int32())
    except (pa.ArrowException, ValueError):
        return pa.string()
    return pa.int32()


def partition_expression_for(partitioning: Partitioning, values: dict[str, Any]) -> Expression:
    """Equality predicate over partitioning fields present in values (None -> is_null)."""
    terms: list[Expression] = []
    for name in partitioning.field_names:
        if name not in values:
            continue
        value = values[name]
        terms.append(IsNull(name) if value is None else Comparison("==", name, value))
    return and_(*terms) if terms else TRUE
