"""
Datasets: a schema plus an owned, ordered collection of fragments.

Overview
- Dataset.get_fragments(predicate) lazily yields the fragments that may contain rows
  matching predicate, in construction order. A fragment is skipped only when
  root_partition ∧ partition_expression ∧ predicate is provably unsatisfiable.
- Dataset.new_scan() returns a ScannerBuilder bound to the dataset.
- InMemoryDataset wraps record batches; FileSystemDataset wraps files discovered
  (or listed) on an fsspec filesystem.

Invariants
- Datasets never mutate their fragments; replace_schema() returns a new dataset.
- FileSystemDataset rejects fragments provably disjoint from its root_partition.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Iterable, Iterator, Sequence
from typing import TYPE_CHECKING

import fsspec
import pyarrow as pa

from partset.core.expression import TRUE, Expression, and_, is_satisfiable

from .errors import DatasetError
from .fragment import FileFragment, Fragment, InMemoryFragment

if TYPE_CHECKING:
    from .formats import FileFormat
    from .scanner import Scanner, ScannerBuilder
    from .write import WriteOptions

logger = logging.getLogger(__name__)


class Dataset(abc.ABC):
    """
    Base class for datasets.

    Attributes:
        schema (pa.Schema): Dataset schema every scanned batch conforms to.
        partition_expression (Expression): Root predicate true for every row.
    """

    def __init__(self, schema: pa.Schema, partition_expression: Expression = TRUE) -> None:
        self._schema = schema
        self._partition_expression = partition_expression

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    @property
    def partition_expression(self) -> Expression:
        return self._partition_expression

    @property
    @abc.abstractmethod
    def type_name(self) -> str: ...

    def get_fragments(self, predicate: Expression = TRUE) -> Iterator[Fragment]:
        """
        Lazily yield fragments that may hold rows matching predicate.

        Args:
            predicate (Expression): Filter, ideally bound to self.schema.

        Returns:
            Iterator[Fragment]: Fragments in construction order. Pruning is a sound
            over-approximation: a fragment is dropped only when it provably
            cannot contain a matching row.
        """
        base = and_(self._partition_expression, predicate)
        for fragment in self._get_fragments_impl():
            if is_satisfiable(and_(base, fragment.partition_expression)):
                yield fragment
            else:
                logger.debug("pruned fragment %r for predicate %s", fragment, predicate)

    @abc.abstractmethod
    def _get_fragments_impl(self) -> Iterable[Fragment]: ...

    @abc.abstractmethod
    def replace_schema(self, schema: pa.Schema) -> Dataset:
        """Return a dataset over the same fragments with a different schema."""

    def new_scan(self) -> ScannerBuilder:
        """Start configuring a scan of this dataset."""
        from .scanner import ScannerBuilder

        return ScannerBuilder(self)

    def to_table(self) -> pa.Table:
        """Scan the whole dataset with default options."""
        return self.new_scan().finish().to_table()


class InMemoryDataset(Dataset):
    """
    Dataset over record batches held in memory, one fragment per batch.

    Examples:
        >>> import pyarrow as pa
        >>> batch = pa.record_batch({"x": [1, 2, 3]})
        >>> InMemoryDataset(batch.schema, [batch]).to_table().num_rows
        3
    """

    def __init__(self, schema: pa.Schema, batches: Sequence[pa.RecordBatch]) -> None:
        super().__init__(schema)
        self._batches = list(batches)
        self._fragments = [InMemoryFragment([b], schema=b.schema) for b in self._batches]

    @classmethod
    def from_table(cls, table: pa.Table) -> InMemoryDataset:
        return cls(table.schema, table.to_batches())

    @property
    def type_name(self) -> str:
        return "in-memory"

    def _get_fragments_impl(self) -> Iterable[Fragment]:
        return self._fragments

    def replace_schema(self, schema: pa.Schema) -> InMemoryDataset:
        return InMemoryDataset(schema, self._batches)


class FileSystemDataset(Dataset):
    """
    Dataset over files of one format on an fsspec filesystem.

    Attributes:
        format (FileFormat): Format shared by every fragment.
        filesystem (fsspec.AbstractFileSystem): Filesystem holding the files.

    Raises:
        DatasetError: A fragment's partition expression contradicts root_partition.
    """

    def __init__(
        self,
        schema: pa.Schema,
        root_partition: Expression,
        format: FileFormat,
        filesystem: fsspec.AbstractFileSystem,
        fragments: Sequence[FileFragment],
    ) -> None:
        super().__init__(schema, root_partition)
        self.format = format
        self.filesystem = filesystem
        self._fragments = list(fragments)
        for fragment in self._fragments:
            if not is_satisfiable(and_(root_partition, fragment.partition_expression)):
                raise DatasetError(
                    f"fragment {fragment.path!r} with {fragment.partition_expression} "
                    f"is outside root partition {root_partition}"
                )

    @property
    def type_name(self) -> str:
        return "filesystem"

    @property
    def files(self) -> list[str]:
        """Paths of all fragments in construction order."""
        return [fragment.path for fragment in self._fragments]

    def _get_fragments_impl(self) -> Iterable[Fragment]:
        return self._fragments

    def replace_schema(self, schema: pa.Schema) -> FileSystemDataset:
        return FileSystemDataset(schema, self._partition_expression, self.format, self.filesystem, self._fragments)

    @staticmethod
    def write(options: WriteOptions, scanner: Scanner) -> set[str]:
        """Write the scanner's batches as a partitioned dataset (see write_dataset)."""
        from .write import write_dataset

        return write_dataset(options, scanner)

    def __repr__(self) -> str:
        return f"FileSystemDataset(files={len(self._fragments)}, format={self.format!r})"
