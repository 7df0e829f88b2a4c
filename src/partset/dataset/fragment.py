"""
Fragments: independently scannable pieces of a dataset.

A fragment pairs a unit of data (a file, or in-memory batches) with the partition
predicate known to hold for all of its rows. Fragments are read-only after
construction; the only lazily initialized state is the physical schema, resolved
at most once under a lock.
"""

from __future__ import annotations

import abc
import threading
from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING

import pyarrow as pa

from partset.core.expression import TRUE, Expression

from .scan_task import InMemoryScanTask, ScanOptions, ScanTask

if TYPE_CHECKING:
    from .formats import FileFormat
    from .fs import FileSource


class Fragment(abc.ABC):
    """
    Base class for fragments.

    Attributes:
        partition_expression (Expression): Predicate true for every row of the fragment.
    """

    def __init__(
        self,
        partition_expression: Expression = TRUE,
        physical_schema: pa.Schema | None = None,
    ) -> None:
        self._partition_expression = partition_expression
        self._physical_schema = physical_schema
        self._lock = threading.Lock()

    @property
    def partition_expression(self) -> Expression:
        return self._partition_expression

    @property
    def type_name(self) -> str:
        raise NotImplementedError

    def read_physical_schema(self) -> pa.Schema:
        """Return the schema stored in the fragment itself, resolving it on first use."""
        with self._lock:
            if self._physical_schema is None:
                self._physical_schema = self._read_physical_schema_impl()
            return self._physical_schema

    @abc.abstractmethod
    def _read_physical_schema_impl(self) -> pa.Schema: ...

    @abc.abstractmethod
    def scan(self, options: ScanOptions) -> Iterator[ScanTask]:
        """Yield the scan tasks covering this fragment."""


class FileFragment(Fragment):
    """
    One file of a FileSystemDataset.

    Attributes:
        source (FileSource): File location.
        format (FileFormat): Format used to inspect and scan the file.
    """

    def __init__(
        self,
        source: FileSource,
        format: FileFormat,
        partition_expression: Expression = TRUE,
        physical_schema: pa.Schema | None = None,
    ) -> None:
        super().__init__(partition_expression, physical_schema)
        self.source = source
        self.format = format

    @property
    def type_name(self) -> str:
        return self.format.type_name

    @property
    def path(self) -> str:
        return self.source.path

    def _read_physical_schema_impl(self) -> pa.Schema:
        return self.format.inspect(self.source)

    def scan(self, options: ScanOptions) -> Iterator[ScanTask]:
        return self.format.scan_file(self.source, options, self)

    def with_partition_expression(self, partition_expression: Expression) -> FileFragment:
        """Copy sharing source, format and any resolved physical schema."""
        return FileFragment(self.source, self.format, partition_expression, self._physical_schema)

    def __repr__(self) -> str:
        return f"FileFragment({self.source.path!r}, {self.format.type_name!r}, {self._partition_expression})"


class InMemoryFragment(Fragment):
    """Record batches held in memory; one scan task per batch."""

    def __init__(
        self,
        batches: Sequence[pa.RecordBatch],
        partition_expression: Expression = TRUE,
        schema: pa.Schema | None = None,
    ) -> None:
        if schema is None and not batches:
            raise ValueError("schema is required for an empty InMemoryFragment")
        super().__init__(partition_expression, schema if schema is not None else batches[0].schema)
        self.batches = list(batches)

    @property
    def type_name(self) -> str:
        return "in-memory"

    def _read_physical_schema_impl(self) -> pa.Schema:  # pragma: no cover - set at construction
        return self.batches[0].schema

    def scan(self, options: ScanOptions) -> Iterator[ScanTask]:
        for batch in self.batches:
            yield InMemoryScanTask(options, self, batch)

    def __repr__(self) -> str:
        return f"InMemoryFragment(batches={len(self.batches)}, {self._partition_expression})"
