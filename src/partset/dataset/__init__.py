"""
partset.dataset — Partitioned file datasets: discovery, pruning, scanning and writing.

## Responsibilities
- Discover the files of a logical dataset on an fsspec filesystem and attach to each
  the partition predicate encoded in its directory path.
- Prune fragments with a sound satisfiability check of partition predicates against
  a query filter.
- Scan surviving fragments concurrently into a tagged batch stream, ordered or
  unordered, on an explicit executor.
- Re-write scan results under a new partitioning (schema shrinkage: partition fields
  live in the path, not in the files).

## Public API
- DatasetSettings — runtime configuration (defaults from partset.core.constants).
- DirectoryPartitioning, HivePartitioning, PartitioningFactory — path <-> predicate.
- ParquetFileFormat, IpcFileFormat, JsonFileFormat, get_format — file formats.
- FileSystemDatasetFactory, FileSystemFactoryOptions, FileSelector, open_dataset — discovery.
- Dataset, FileSystemDataset, InMemoryDataset — datasets and their fragments.
- Scanner, ScannerBuilder, ScanOptions, TaggedRecordBatch — scanning.
- WriteOptions, write_dataset — partitioned writes.

## Import DAG discipline
- Depends only on stdlib, pyarrow, polars, pydantic, fsspec and partset.core.*.

## Examples
```python
from partset.core import field
from partset.dataset import open_dataset

ds = open_dataset("/data/sales", format="json", partitioning="hive")  # doctest: +SKIP
scanner = ds.new_scan().filter(field("year") == 2019).finish()  # doctest: +SKIP
scanner.to_table()  # doctest: +SKIP
```

## Notes
- Writes are not transactional: files finished before a failure stay on disk.
- A scan never blocks a pool thread on another pool thread; a pool of one worker is enough.
"""

from __future__ import annotations

from .config import DatasetSettings
from .dataset import Dataset, FileSystemDataset, InMemoryDataset
from .discovery import FileSystemDatasetFactory, FileSystemFactoryOptions, open_dataset
from .errors import (
    DatasetError,
    DiscoveryError,
    PartitionFormatError,
    PartitionParseError,
    ScanError,
    UnsupportedFormat,
    WriteError,
)
from .formats import (
    FileFormat,
    FileWriteOptions,
    IpcFileFormat,
    JsonFileFormat,
    ParquetFileFormat,
    get_format,
    list_formats,
)
from .fragment import FileFragment, Fragment, InMemoryFragment
from .fs import FileSelector, FileSource
from .partitioning import (
    DirectoryPartitioning,
    HivePartitioning,
    Partitioning,
    PartitioningFactory,
)
from .scan_task import ScanOptions, ScanTask
from .scanner import Enumerated, Scanner, ScannerBuilder, TaggedRecordBatch
from .write import WriteOptions, write_dataset

__all__ = [
    "DatasetSettings",
    "Dataset",
    "FileSystemDataset",
    "InMemoryDataset",
    "FileSystemDatasetFactory",
    "FileSystemFactoryOptions",
    "open_dataset",
    "DatasetError",
    "DiscoveryError",
    "PartitionFormatError",
    "PartitionParseError",
    "ScanError",
    "UnsupportedFormat",
    "WriteError",
    "FileFormat",
    "FileWriteOptions",
    "IpcFileFormat",
    "JsonFileFormat",
    "ParquetFileFormat",
    "get_format",
    "list_formats",
    "Fragment",
    "FileFragment",
    "InMemoryFragment",
    "FileSelector",
    "FileSource",
    "Partitioning",
    "DirectoryPartitioning",
    "HivePartitioning",
    "PartitioningFactory",
    "ScanOptions",
    "ScanTask",
    "Enumerated",
    "Scanner",
    "ScannerBuilder",
    "TaggedRecordBatch",
    "WriteOptions",
    "write_dataset",
]
