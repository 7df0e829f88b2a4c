"""
Scan options, scan tasks and batch conforming.

ScanOptions
- Frozen pydantic model shared by every task of one scan: the dataset schema,
  the projected column names, the (bound) filter, batch size, threading and
  fragment readahead.

ScanTask
- Unit of work turning one chunk of one fragment into batches.
- execute() is the blocking entry point; execute_async(executor) returns a lazy
  iterator of futures (one per batch) and must not block the calling thread on
  pool work. Tasks that submit to the executor set supports_async = True.
- The Scanner never calls execute() on a task with supports_async = True when
  threads are enabled.

Conforming
- conform_batch() maps a physical batch onto the dataset schema: physical columns
  are cast to the dataset type, partition columns are filled from the fragment's
  partition expression, missing columns are null-filled; then the filter is applied
  (skipped when the partition expression already implies it) and the projection
  selected.
"""

from __future__ import annotations

import abc
from collections.abc import Callable, Iterator
from concurrent.futures import Executor, Future
from typing import TYPE_CHECKING, Any, TypeVar

import pyarrow as pa
from pydantic import BaseModel, ConfigDict, Field

from partset.core.constants import BATCH_SIZE, FRAGMENT_READAHEAD
from partset.core.expression import TRUE, Expression, Literal, implies, known_field_values
from partset.core.schema import schema_from_names

if TYPE_CHECKING:
    from .fragment import Fragment

T = TypeVar("T")
R = TypeVar("R")


class ScanOptions(BaseModel):
    """
    Options shared by all scan tasks of one scan.

    Attributes:
        dataset_schema (pa.Schema): Schema batches are conformed to.
        projection (tuple[str, ...] | None): Output columns, None for all.
        filter (Expression): Row filter bound to dataset_schema.
        batch_size (int): Maximum rows per yielded batch.
        use_threads (bool): Execute tasks on an executor.
        fragment_readahead (int): Fragments scheduled ahead of the consumer.

    Notes:
        Use ScannerBuilder to construct options; it validates the projection and
        binds the filter before building this model.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    dataset_schema: pa.Schema
    projection: tuple[str, ...] | None = None
    filter: Expression = TRUE
    batch_size: int = Field(default=BATCH_SIZE, gt=0)
    use_threads: bool = True
    fragment_readahead: int = Field(default=FRAGMENT_READAHEAD, ge=1)

    @property
    def projected_schema(self) -> pa.Schema:
        if self.projection is None:
            return self.dataset_schema
        return schema_from_names(self.dataset_schema, self.projection)

    @property
    def materialized_fields(self) -> list[str]:
        """Columns a task must produce: projection plus filter fields, in schema order."""
        wanted = set(self.projected_schema.names) | set(self.filter.fields())
        return [name for name in self.dataset_schema.names if name in wanted]


def conform_batch(
    batch: pa.RecordBatch,
    options: ScanOptions,
    partition_expression: Expression = TRUE,
) -> pa.RecordBatch:
    """
    Conform a physical batch to the projected dataset schema.

    Args:
        batch (pa.RecordBatch): Batch as read from the file.
        options (ScanOptions): Scan options of the task.
        partition_expression (Expression): Predicate of the fragment the batch belongs to.

    Returns:
        pa.RecordBatch: Filtered batch with options.projected_schema.
    """
    schema = options.dataset_schema
    known = known_field_values(partition_expression)
    n = batch.num_rows

    columns: dict[str, pa.Array] = {}
    for name in options.materialized_fields:
        target = schema.field(name).type
        index = batch.schema.get_field_index(name)
        if index >= 0:
            column = batch.column(index)
            if not column.type.equals(target):
                column = column.cast(target)
        elif known.get(name) is not None:
            column = pa.repeat(pa.scalar(known[name], type=target), n)
        else:
            column = pa.nulls(n, type=target)
        columns[name] = column

    materialized = pa.RecordBatch.from_arrays(
        list(columns.values()),
        schema=schema_from_names(schema, list(columns)),
    )
    flt = options.filter
    if not (isinstance(flt, Literal) and flt.value is True) and not implies(partition_expression, flt):
        materialized = materialized.filter(flt.evaluate(materialized))

    projected = options.projected_schema
    return pa.RecordBatch.from_arrays(
        [materialized.column(name) for name in projected.names],
        schema=projected,
    )


def slices(batch: pa.RecordBatch, batch_size: int) -> Iterator[pa.RecordBatch]:
    """Split batch into consecutive slices of at most batch_size rows (none if empty)."""
    for offset in range(0, batch.num_rows, batch_size):
        yield batch.slice(offset, batch_size)


def then(source: Future[T], fn: Callable[[T], R]) -> Future[R]:
    """
    Return a future resolved with fn(source.result()) once source completes.

    Notes:
        fn runs in whichever thread completes source; it must not block on the pool.
        Failures and cancellation of source propagate to the returned future.
    """
    out: Future[R] = Future()

    def _done(f: Future[T]) -> None:
        if f.cancelled():
            out.cancel()
            return
        exc = f.exception()
        if exc is not None:
            out.set_exception(exc)
            return
        try:
            out.set_result(fn(f.result()))
        except Exception as err:
            out.set_exception(err)

    source.add_done_callback(_done)
    return out


class ScanTask(abc.ABC):
    """
    One unit of scan work over one fragment.

    Attributes:
        options (ScanOptions): Shared scan options.
        fragment (Fragment): Fragment the task reads from.
        supports_async (bool): True when execute_async() is implemented.
    """

    supports_async: bool = False

    def __init__(self, options: ScanOptions, fragment: Fragment) -> None:
        self.options = options
        self.fragment = fragment

    @abc.abstractmethod
    def execute(self) -> Iterator[pa.RecordBatch]:
        """Produce conformed batches, blocking the calling thread."""

    def execute_async(self, executor: Executor) -> Iterator[Future[pa.RecordBatch]]:
        """Lazily yield one future per conformed batch, scheduling work on executor."""
        raise NotImplementedError(f"{type(self).__name__} does not support async execution")

    def conform(self, batch: pa.RecordBatch) -> pa.RecordBatch:
        return conform_batch(batch, self.options, self.fragment.partition_expression)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(fragment={self.fragment!r})"


class InMemoryScanTask(ScanTask):
    """Scan task over one in-memory record batch, sliced to batch_size."""

    supports_async = True

    def __init__(self, options: ScanOptions, fragment: Fragment, batch: pa.RecordBatch) -> None:
        super().__init__(options, fragment)
        self.batch = batch

    def execute(self) -> Iterator[pa.RecordBatch]:
        for chunk in slices(self.batch, self.options.batch_size):
            yield self.conform(chunk)

    def execute_async(self, executor: Executor) -> Iterator[Future[pa.RecordBatch]]:
        for chunk in slices(self.batch, self.options.batch_size):
            yield executor.submit(self.conform, chunk)


def run_blocking(task: ScanTask) -> list[Any]:
    """Execute a blocking task to completion (submitted whole to a pool thread)."""
    return list(task.execute())
