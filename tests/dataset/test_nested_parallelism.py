"""A pool of one worker must finish scans whose tasks themselves submit work to it."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from pathlib import Path

import pyarrow as pa
import pyarrow.ipc as ipc

from partset.dataset.dataset import InMemoryDataset
from partset.dataset.discovery import open_dataset
from partset.dataset.fragment import Fragment
from partset.dataset.scan_task import ScanOptions, ScanTask, then

SCHEMA = pa.schema([("x", pa.int64())])


class _Counter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.rows = 0
        self.blocking_calls = 0

    def add(self, batch: pa.RecordBatch) -> pa.RecordBatch:
        with self._lock:
            self.rows += batch.num_rows
        return batch


class _AsyncOnlyTask(ScanTask):
    supports_async = True

    def __init__(self, options: ScanOptions, fragment: Fragment, counter: _Counter, raise_on_execute: bool) -> None:
        super().__init__(options, fragment)
        self.counter = counter
        self.raise_on_execute = raise_on_execute

    def _read(self) -> pa.RecordBatch:
        return pa.record_batch({"x": list(range(10))})

    def execute(self) -> Iterator[pa.RecordBatch]:
        self.counter.blocking_calls += 1
        if self.raise_on_execute:
            raise AssertionError("blocking entry point used under threads")
        yield self.counter.add(self.conform(self._read()))

    def execute_async(self, executor: Executor) -> Iterator[Future[pa.RecordBatch]]:
        read = executor.submit(self._read)
        yield then(read, lambda batch: self.counter.add(self.conform(batch)))


class _AsyncOnlyFragment(Fragment):
    def __init__(self, counter: _Counter, raise_on_execute: bool) -> None:
        super().__init__(physical_schema=SCHEMA)
        self.counter = counter
        self.raise_on_execute = raise_on_execute

    def _read_physical_schema_impl(self) -> pa.Schema:
        return SCHEMA

    def scan(self, options: ScanOptions) -> Iterator[ScanTask]:
        yield _AsyncOnlyTask(options, self, self.counter, self.raise_on_execute)


class _Dataset(InMemoryDataset):
    def __init__(self, fragments: list[Fragment]) -> None:
        super().__init__(SCHEMA, [])
        self._fragments = fragments


def _dataset(counter: _Counter, n: int = 8, raise_on_execute: bool = True) -> _Dataset:
    return _Dataset([_AsyncOnlyFragment(counter, raise_on_execute) for _ in range(n)])


def test_single_worker_pool_completes_async_tasks():
    # Arrange
    counter = _Counter()
    ds = _dataset(counter)

    # Act
    with ThreadPoolExecutor(max_workers=1) as pool:
        table = ds.new_scan().executor(pool).fragment_readahead(4).finish().to_table()

    # Assert
    assert table.num_rows == 80
    assert counter.rows == 80
    assert counter.blocking_calls == 0


def test_single_worker_pool_completes_unordered_scan():
    counter = _Counter()
    ds = _dataset(counter)

    with ThreadPoolExecutor(max_workers=1) as pool:
        scanner = ds.new_scan().executor(pool).fragment_readahead(4).finish()
        total = sum(t.record_batch.num_rows for t in scanner.scan_batches_unordered())

    assert total == 80
    assert counter.blocking_calls == 0


def test_serial_scan_uses_blocking_entry_point():
    counter = _Counter()
    ds = _dataset(counter, raise_on_execute=False)

    table = ds.new_scan().use_threads(False).finish().to_table()

    assert table.num_rows == 80
    assert counter.blocking_calls == 8


def test_single_worker_pool_completes_blocking_file_tasks(sales_dir: Path):
    ds = open_dataset(str(sales_dir), format="json", partitioning="hive")

    with ThreadPoolExecutor(max_workers=1) as pool:
        scanner = ds.new_scan().executor(pool).fragment_readahead(4).finish()
        ordered = scanner.to_table()
        unordered = sum(t.record_batch.num_rows for t in scanner.scan_batches_unordered())

    assert ordered.num_rows == 16
    assert ordered.equals(ds.new_scan().use_threads(False).finish().to_table())
    assert unordered == 16


def test_single_worker_pool_keeps_ipc_batch_order(tmp_path: Path):
    # Arrange
    with ipc.new_file(str(tmp_path / "a.arrow"), SCHEMA) as writer:
        for i in range(5):
            writer.write_batch(pa.record_batch({"x": list(range(i * 10, i * 10 + 10))}, schema=SCHEMA))
    ds = open_dataset(str(tmp_path), format="ipc")

    # Act
    with ThreadPoolExecutor(max_workers=1) as pool:
        tagged = list(ds.new_scan().batch_size(4).executor(pool).fragment_readahead(2).finish().scan_batches())

    # Assert
    assert [t.record_batch.num_rows for t in tagged] == [4, 4, 2] * 5
    assert [x for t in tagged for x in t.record_batch.column("x").to_pylist()] == list(range(50))
    assert [t.batch.last for t in tagged] == [False] * 14 + [True]
