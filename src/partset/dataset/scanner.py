"""
Scan execution engine.

Overview
- Scanner.scan(): scan tasks of the pruned fragments, in fragment order.
- Scanner.scan_batches(): TaggedRecordBatch stream in fragment-major, batch-minor
  order; up to fragment_readahead fragments run ahead of the consumer and their
  results are buffered until it is their turn.
- A fragment that produces no rows still yields one empty batch tagged as its last,
  so consumers always observe fragment.last.
- Scanner.scan_batches_unordered(): the same tagged batches, each fragment emitted
  as soon as all of its work has completed.
- to_table(), to_polars(), count_rows() materialize the stream.

Scheduling
- With use_threads disabled every task runs through execute() on the calling thread.
- With threads enabled, tasks advertising supports_async are driven through
  execute_async(executor) from the consuming thread and never through execute();
  blocking tasks are submitted whole to the executor. No pool thread ever waits on
  another pool thread, so a pool of capacity 1 cannot deadlock.
- The executor is explicit: ScannerBuilder.executor(...) or, when absent, a pool the
  scanner creates from DatasetSettings.max_workers and shuts down after the scan.

Failure
- Fail-fast: the first task error ends the stream with ScanError (chained); futures
  not yet started are cancelled, running ones drain.
"""

from __future__ import annotations

import contextlib
import logging
from collections import deque
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, Executor, Future, wait
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, cast

import polars as pl
import pyarrow as pa

from partset.core.expression import TRUE, Expression
from partset.core.schema import schema_from_names

from .config import DatasetSettings
from .dataset import Dataset
from .errors import DatasetError, ScanError
from .fragment import Fragment
from .scan_task import ScanOptions, ScanTask, run_blocking

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Enumerated(Generic[T]):
    """A value with its zero-based position and whether it is the final element."""

    value: T
    index: int
    last: bool


@dataclass(frozen=True, slots=True)
class TaggedRecordBatch:
    """
    One scanned batch with its fragment and batch tags.

    Attributes:
        fragment (Enumerated[Fragment]): Fragment position within the scan.
        batch (Enumerated[pa.RecordBatch]): Batch position within the fragment.
    """

    fragment: Enumerated[Fragment]
    batch: Enumerated[pa.RecordBatch]

    @property
    def record_batch(self) -> pa.RecordBatch:
        return self.batch.value


def _with_last(items: Iterable[T]) -> Iterator[Enumerated[T]]:
    it = iter(items)
    try:
        current = next(it)
    except StopIteration:
        return
    index = 0
    for following in it:
        yield Enumerated(current, index, False)
        current = following
        index += 1
    yield Enumerated(current, index, True)


# Work scheduled for one fragment: futures resolving to a batch (async tasks) or
# to a list of batches (blocking tasks submitted whole).
_Units = list[Future[Any]]


def _unit_batches(unit: Future[Any]) -> list[pa.RecordBatch]:
    result = unit.result()
    if isinstance(result, pa.RecordBatch):
        return [result]
    return list(result)


def _cancel(units: Iterable[Future[Any]]) -> None:
    for unit in units:
        unit.cancel()


class Scanner:
    """
    Executes a configured scan over a dataset.

    Attributes:
        dataset (Dataset): Dataset being scanned.
        options (ScanOptions): Shared options of every scan task.
    """

    def __init__(
        self,
        dataset: Dataset,
        options: ScanOptions,
        executor: Executor | None = None,
        settings: DatasetSettings | None = None,
    ) -> None:
        self.dataset = dataset
        self.options = options
        self._executor = executor
        self._settings = settings or DatasetSettings()

    @property
    def projected_schema(self) -> pa.Schema:
        return self.options.projected_schema

    def _fragments(self) -> Iterator[Fragment]:
        return self.dataset.get_fragments(self.options.filter)

    def scan(self) -> Iterator[ScanTask]:
        """Yield fresh scan tasks for every pruned fragment, in fragment order."""
        for fragment in self._fragments():
            yield from fragment.scan(self.options)

    @contextlib.contextmanager
    def _executor_scope(self) -> Iterator[Executor | None]:
        if not self.options.use_threads:
            yield None
            return
        if self._executor is not None:
            yield self._executor
            return
        owned = self._settings.make_executor()
        try:
            yield owned
        finally:
            owned.shutdown(wait=True, cancel_futures=True)

    def _schedule(self, fragment: Fragment, executor: Executor) -> _Units:
        units: _Units = []
        for task in fragment.scan(self.options):
            if task.supports_async:
                units.extend(task.execute_async(executor))
            else:
                units.append(executor.submit(run_blocking, task))
        logger.debug("scheduled %d unit(s) for %r", len(units), fragment)
        return units

    def _tag(self, fragment: Enumerated[Fragment], batches: Iterable[pa.RecordBatch]) -> Iterator[TaggedRecordBatch]:
        empty = True
        for batch in _with_last(batches):
            empty = False
            yield TaggedRecordBatch(fragment, batch)
        if empty:
            # Every fragment contributes at least one batch so fragment.last is always seen.
            placeholder = pa.RecordBatch.from_pylist([], schema=self.projected_schema)
            yield TaggedRecordBatch(fragment, Enumerated(placeholder, 0, True))

    def scan_batches(self) -> Iterator[TaggedRecordBatch]:
        """
        Yield tagged batches in fragment-major, batch-minor order.

        Raises:
            ScanError: A task failed; the stream ends at the failure.
        """
        with self._executor_scope() as executor:
            try:
                if executor is None:
                    yield from self._serial_batches()
                else:
                    yield from self._ordered_batches(executor)
            except DatasetError:
                raise
            except Exception as exc:
                raise ScanError(f"scan failed: {exc}") from exc

    def _serial_batches(self) -> Iterator[TaggedRecordBatch]:
        for fragment in _with_last(self._fragments()):
            batches = (b for task in fragment.value.scan(self.options) for b in task.execute())
            yield from self._tag(fragment, batches)

    def _ordered_batches(self, executor: Executor) -> Iterator[TaggedRecordBatch]:
        fragments = _with_last(self._fragments())
        window: deque[tuple[Enumerated[Fragment], _Units]] = deque()

        def fill() -> None:
            while len(window) < self.options.fragment_readahead:
                fragment = next(fragments, None)
                if fragment is None:
                    return
                window.append((fragment, self._schedule(fragment.value, executor)))

        current: _Units = []
        try:
            fill()
            while window:
                fragment, current = window.popleft()
                fill()
                batches = (b for unit in current for b in _unit_batches(unit))
                yield from self._tag(fragment, batches)
        finally:
            _cancel(current)
            for _, units in window:
                _cancel(units)

    def scan_batches_unordered(self) -> Iterator[TaggedRecordBatch]:
        """
        Yield tagged batches, each fragment as soon as its work has completed.

        Notes:
            Tags are identical to scan_batches(); only arrival order differs.
        """
        with self._executor_scope() as executor:
            try:
                if executor is None:
                    yield from self._serial_batches()
                else:
                    yield from self._unordered_batches(executor)
            except DatasetError:
                raise
            except Exception as exc:
                raise ScanError(f"scan failed: {exc}") from exc

    def _unordered_batches(self, executor: Executor) -> Iterator[TaggedRecordBatch]:
        fragments = _with_last(self._fragments())
        running: list[tuple[Enumerated[Fragment], _Units]] = []
        exhausted = False
        try:
            while True:
                while not exhausted and len(running) < self.options.fragment_readahead:
                    fragment = next(fragments, None)
                    if fragment is None:
                        exhausted = True
                    else:
                        running.append((fragment, self._schedule(fragment.value, executor)))
                if not running:
                    return
                outstanding = [u for _, units in running for u in units if not u.done()]
                if outstanding:
                    wait(outstanding, return_when=FIRST_COMPLETED)
                ready = [item for item in running if all(u.done() for u in item[1])]
                for item in ready:
                    running.remove(item)
                    fragment, units = item
                    batches = [b for unit in units for b in _unit_batches(unit)]
                    yield from self._tag(fragment, batches)
        finally:
            for _, units in running:
                _cancel(units)

    def to_batches(self) -> Iterator[pa.RecordBatch]:
        """Yield plain record batches in scan order."""
        for tagged in self.scan_batches():
            yield tagged.record_batch

    def to_table(self) -> pa.Table:
        """Materialize the ordered scan into a table with the projected schema."""
        return pa.Table.from_batches(list(self.to_batches()), schema=self.projected_schema)

    def to_polars(self) -> pl.DataFrame:
        return cast(pl.DataFrame, pl.from_arrow(self.to_table()))

    def count_rows(self) -> int:
        """Count rows matching the filter."""
        options = self.options
        if not options.projected_schema.names and options.dataset_schema.names:
            options = options.model_copy(update={"projection": tuple(options.dataset_schema.names[:1])})
        counter = Scanner(self.dataset, options, self._executor, self._settings)
        return sum(tagged.record_batch.num_rows for tagged in counter.scan_batches_unordered())


class ScannerBuilder:
    """
    Fluent configuration of a Scanner.

    Examples:
        >>> import pyarrow as pa
        >>> from partset.core import field
        >>> from partset.dataset.dataset import InMemoryDataset
        >>> ds = InMemoryDataset.from_table(pa.table({"x": [1, 2, 3], "y": ["a", "b", "c"]}))
        >>> scanner = ds.new_scan().project(["y"]).filter(field("x") > 1).finish()
        >>> scanner.to_table().column("y").to_pylist()
        ['b', 'c']
    """

    def __init__(self, dataset: Dataset, settings: DatasetSettings | None = None) -> None:
        self._dataset = dataset
        self._settings = settings or DatasetSettings()
        self._projection: tuple[str, ...] | None = None
        self._filter: Expression = TRUE
        self._batch_size = self._settings.batch_size
        self._use_threads = self._settings.use_threads
        self._fragment_readahead = self._settings.fragment_readahead
        self._executor: Executor | None = None

    @classmethod
    def from_fragment(
        cls, fragment: Fragment, schema: pa.Schema | None = None, settings: DatasetSettings | None = None
    ) -> ScannerBuilder:
        """Scan one fragment against schema (defaults to its physical schema)."""
        schema = schema if schema is not None else fragment.read_physical_schema()
        return cls(_SingleFragmentDataset(schema, fragment), settings)

    @property
    def schema(self) -> pa.Schema:
        return self._dataset.schema

    def project(self, columns: Sequence[str]) -> ScannerBuilder:
        """
        Select output columns by name.

        Raises:
            SchemaError: A column is not in the dataset schema.
        """
        schema_from_names(self._dataset.schema, columns)
        self._projection = tuple(columns)
        return self

    def filter(self, predicate: Expression) -> ScannerBuilder:
        """
        Set the row filter, bound to the dataset schema.

        Raises:
            ExpressionError: The filter references unknown fields or uncastable literals.
        """
        self._filter = predicate.bind(self._dataset.schema)
        return self

    def batch_size(self, batch_size: int) -> ScannerBuilder:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._batch_size = batch_size
        return self

    def use_threads(self, use_threads: bool = True) -> ScannerBuilder:
        self._use_threads = use_threads
        return self

    def fragment_readahead(self, readahead: int) -> ScannerBuilder:
        if readahead < 1:
            raise ValueError("fragment_readahead must be at least 1")
        self._fragment_readahead = readahead
        return self

    def executor(self, executor: Executor) -> ScannerBuilder:
        """Run tasks on executor; the caller keeps ownership and shuts it down."""
        self._executor = executor
        return self

    def finish(self) -> Scanner:
        options = ScanOptions(
            dataset_schema=self._dataset.schema,
            projection=self._projection,
            filter=self._filter,
            batch_size=self._batch_size,
            use_threads=self._use_threads,
            fragment_readahead=self._fragment_readahead,
        )
        return Scanner(self._dataset, options, self._executor, self._settings)


class _SingleFragmentDataset(Dataset):
    def __init__(self, schema: pa.Schema, fragment: Fragment) -> None:
        super().__init__(schema)
        self._fragment = fragment

    @property
    def type_name(self) -> str:
        return "fragment"

    def _get_fragments_impl(self) -> Iterable[Fragment]:
        return [self._fragment]

    def replace_schema(self, schema: pa.Schema) -> _SingleFragmentDataset:
        return _SingleFragmentDataset(schema, self._fragment)
