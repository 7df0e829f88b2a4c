"""
File formats: inspection, scanning and writing of individual files.

Overview
- FileFormat is the capability interface discovery, fragments and the writer use:
  is_supported(), inspect(), make_fragment(), scan_file(), make_writer(),
  default_write_options().
- ParquetFileFormat: one scan task per row group. Tasks read the row group on the
  executor and split it into batch futures without blocking (supports_async).
- IpcFileFormat: Arrow IPC file format, one blocking task per record batch.
- JsonFileFormat: newline-delimited JSON, one blocking task per file, with an
  optional explicit schema (unexpected fields are ignored).

Writers
- FileWriter.write(batch) appends, finish() flushes and closes exactly once (a
  second call raises WriteError), abort() releases handles after a failure.

Registry
- get_format(name) / list_formats() resolve formats by name ("parquet", "ipc",
  "arrow", "json", "ndjson").

Notes
- Formats hold no per-file state and are shared by every fragment of a dataset.
"""

from __future__ import annotations

import abc
import contextlib
from collections.abc import Iterator
from concurrent.futures import Executor, Future
from typing import IO, TYPE_CHECKING, Any, ClassVar, cast

import polars as pl
import pyarrow as pa
import pyarrow.ipc as ipc
import pyarrow.json as pajson
import pyarrow.parquet as pq
from pydantic import BaseModel, ConfigDict

from partset.core.constants import COMPRESSION, ROW_GROUP_SIZE
from partset.core.expression import TRUE, Expression

from .errors import WriteError
from .fragment import FileFragment, Fragment
from .fs import FileSource
from .scan_task import ScanOptions, ScanTask, slices, then

if TYPE_CHECKING:
    from .config import DatasetSettings


def _as_batch(table: pa.Table) -> pa.RecordBatch:
    return pa.RecordBatch.from_arrays(
        [column.combine_chunks() for column in table.columns], schema=table.schema
    )


def _read_columns(options: ScanOptions, physical: pa.Schema) -> list[str]:
    # At least one column is read so that batches keep their row count.
    wanted = [name for name in options.materialized_fields if physical.get_field_index(name) >= 0]
    return wanted or physical.names[:1]


# -----------------------------------------------------------------------------
# Write options and writers
# -----------------------------------------------------------------------------


class FileWriteOptions(BaseModel):
    """Format-specific write options; format produces the writer."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    format: FileFormat


class ParquetWriteOptions(FileWriteOptions):
    compression: str = COMPRESSION
    row_group_size: int = ROW_GROUP_SIZE


class IpcWriteOptions(FileWriteOptions):
    compression: str | None = None


class JsonWriteOptions(FileWriteOptions):
    pass


class FileWriter(abc.ABC):
    """
    Writer for one output file.

    Attributes:
        path (str): Destination path.
        schema (pa.Schema): Schema of every written batch.
        rows (int): Rows written so far.

    Notes:
        A writer is owned by a single thread; it is not safe for concurrent use.
    """

    def __init__(self, sink: IO[bytes], schema: pa.Schema, options: FileWriteOptions, path: str) -> None:
        self.sink = sink
        self.schema = schema
        self.options = options
        self.path = path
        self.rows = 0
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def write(self, batch: pa.RecordBatch) -> None:
        if self._finished:
            raise WriteError(f"writer for {self.path!r} is already finished")
        self._write(batch)
        self.rows += batch.num_rows

    def finish(self) -> None:
        """Flush and close the file."""
        if self._finished:
            raise WriteError(f"writer for {self.path!r} finished twice")
        self._finished = True
        try:
            self._finish()
        finally:
            self.sink.close()

    def abort(self) -> None:
        """Best-effort release of the file handle after a failure; never raises."""
        if self._finished:
            return
        self._finished = True
        with contextlib.suppress(OSError, pa.ArrowException):
            self._finish()
        with contextlib.suppress(OSError):
            self.sink.close()

    @abc.abstractmethod
    def _write(self, batch: pa.RecordBatch) -> None: ...

    @abc.abstractmethod
    def _finish(self) -> None: ...


class ParquetFileWriter(FileWriter):
    def __init__(self, sink: IO[bytes], schema: pa.Schema, options: ParquetWriteOptions, path: str) -> None:
        super().__init__(sink, schema, options, path)
        compression = None if options.compression == "none" else options.compression
        self._row_group_size = options.row_group_size
        self._writer = pq.ParquetWriter(sink, schema, compression=compression)

    def _write(self, batch: pa.RecordBatch) -> None:
        self._writer.write_batch(batch, row_group_size=self._row_group_size)

    def _finish(self) -> None:
        self._writer.close()


class IpcFileWriter(FileWriter):
    def __init__(self, sink: IO[bytes], schema: pa.Schema, options: IpcWriteOptions, path: str) -> None:
        super().__init__(sink, schema, options, path)
        self._writer = ipc.new_file(sink, schema, options=ipc.IpcWriteOptions(compression=options.compression))

    def _write(self, batch: pa.RecordBatch) -> None:
        self._writer.write_batch(batch)

    def _finish(self) -> None:
        self._writer.close()


class JsonFileWriter(FileWriter):
    """Writes one JSON object per row (encoded by polars)."""

    def _write(self, batch: pa.RecordBatch) -> None:
        if batch.num_rows == 0:
            return
        frame = cast(pl.DataFrame, pl.from_arrow(batch))
        self.sink.write(frame.write_ndjson().encode("utf-8"))

    def _finish(self) -> None:
        self.sink.flush()


# -----------------------------------------------------------------------------
# Scan tasks
# -----------------------------------------------------------------------------


class ParquetScanTask(ScanTask):
    """
    Scan of one Parquet row group.

    Notes:
        execute_async() submits a single row-group read and derives one future per
        batch_size slice from it, so no pool thread ever waits on another.
    """

    supports_async = True

    def __init__(
        self,
        options: ScanOptions,
        fragment: Fragment,
        source: FileSource,
        row_group: int,
        num_rows: int,
    ) -> None:
        super().__init__(options, fragment)
        self.source = source
        self.row_group = row_group
        self.num_rows = num_rows

    def _read(self) -> pa.Table:
        columns = _read_columns(self.options, self.fragment.read_physical_schema())
        with self.source.open() as handle:
            return pq.ParquetFile(handle).read_row_group(self.row_group, columns=columns)

    def execute(self) -> Iterator[pa.RecordBatch]:
        table = self._read()
        for batch in table.to_batches(max_chunksize=self.options.batch_size):
            yield self.conform(batch)

    def execute_async(self, executor: Executor) -> Iterator[Future[pa.RecordBatch]]:
        size = self.options.batch_size
        table = executor.submit(self._read)
        for offset in range(0, self.num_rows, size):
            yield then(table, lambda t, offset=offset: self.conform(_as_batch(t.slice(offset, size))))


class IpcScanTask(ScanTask):
    """Scan of one record batch of an Arrow IPC file."""

    def __init__(self, options: ScanOptions, fragment: Fragment, source: FileSource, index: int) -> None:
        super().__init__(options, fragment)
        self.source = source
        self.index = index

    def execute(self) -> Iterator[pa.RecordBatch]:
        columns = _read_columns(self.options, self.fragment.read_physical_schema())
        with self.source.open() as handle:
            batch = ipc.open_file(handle).get_batch(self.index)
        batch = batch.select(columns)
        for chunk in slices(batch, self.options.batch_size):
            yield self.conform(chunk)


class JsonScanTask(ScanTask):
    """Scan of a whole NDJSON file."""

    def __init__(self, options: ScanOptions, fragment: Fragment, source: FileSource, format: JsonFileFormat) -> None:
        super().__init__(options, fragment)
        self.source = source
        self.format = format

    def execute(self) -> Iterator[pa.RecordBatch]:
        table = self.format.read_table(self.source)
        for batch in table.to_batches(max_chunksize=self.options.batch_size):
            yield self.conform(batch)


# -----------------------------------------------------------------------------
# Formats
# -----------------------------------------------------------------------------


class FileFormat(abc.ABC):
    """
    Capability interface of a file format.

    Attributes:
        type_name (str): Registry name of the format.
        extension (str): Conventional file suffix, appended to default basenames.
    """

    type_name: ClassVar[str]
    extension: ClassVar[str]

    def is_supported(self, source: FileSource) -> bool:
        """True if source can be read by this format."""
        try:
            self.inspect(source)
        except (pa.ArrowException, OSError, ValueError):
            return False
        return True

    @abc.abstractmethod
    def inspect(self, source: FileSource) -> pa.Schema:
        """Return the physical schema of source."""

    def make_fragment(
        self,
        source: FileSource,
        partition_expression: Expression = TRUE,
        physical_schema: pa.Schema | None = None,
    ) -> FileFragment:
        return FileFragment(source, self, partition_expression, physical_schema)

    @abc.abstractmethod
    def scan_file(self, source: FileSource, options: ScanOptions, fragment: Fragment) -> Iterator[ScanTask]:
        """Yield the scan tasks covering source."""

    @abc.abstractmethod
    def default_write_options(self, settings: DatasetSettings | None = None) -> FileWriteOptions: ...

    @abc.abstractmethod
    def make_writer(
        self, sink: IO[bytes], schema: pa.Schema, options: FileWriteOptions, path: str
    ) -> FileWriter: ...

    def equals(self, other: object) -> bool:
        return type(self) is type(other)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class ParquetFileFormat(FileFormat):
    type_name: ClassVar[str] = "parquet"
    extension: ClassVar[str] = ".parquet"

    def inspect(self, source: FileSource) -> pa.Schema:
        with source.open() as handle:
            return pq.ParquetFile(handle).schema_arrow

    def scan_file(self, source: FileSource, options: ScanOptions, fragment: Fragment) -> Iterator[ScanTask]:
        with source.open() as handle:
            metadata = pq.ParquetFile(handle).metadata
        for index in range(metadata.num_row_groups):
            yield ParquetScanTask(options, fragment, source, index, metadata.row_group(index).num_rows)

    def default_write_options(self, settings: DatasetSettings | None = None) -> ParquetWriteOptions:
        if settings is None:
            return ParquetWriteOptions(format=self)
        return ParquetWriteOptions(
            format=self, compression=settings.compression, row_group_size=settings.row_group_size
        )

    def make_writer(self, sink: IO[bytes], schema: pa.Schema, options: FileWriteOptions, path: str) -> FileWriter:
        if not isinstance(options, ParquetWriteOptions):
            raise WriteError(f"parquet format cannot use {type(options).__name__}")
        return ParquetFileWriter(sink, schema, options, path)


class IpcFileFormat(FileFormat):
    type_name: ClassVar[str] = "ipc"
    extension: ClassVar[str] = ".arrow"

    def inspect(self, source: FileSource) -> pa.Schema:
        with source.open() as handle:
            return ipc.open_file(handle).schema

    def scan_file(self, source: FileSource, options: ScanOptions, fragment: Fragment) -> Iterator[ScanTask]:
        with source.open() as handle:
            count = ipc.open_file(handle).num_record_batches
        for index in range(count):
            yield IpcScanTask(options, fragment, source, index)

    def default_write_options(self, settings: DatasetSettings | None = None) -> IpcWriteOptions:
        return IpcWriteOptions(format=self)

    def make_writer(self, sink: IO[bytes], schema: pa.Schema, options: FileWriteOptions, path: str) -> FileWriter:
        if not isinstance(options, IpcWriteOptions):
            raise WriteError(f"ipc format cannot use {type(options).__name__}")
        return IpcFileWriter(sink, schema, options, path)


class JsonFileFormat(FileFormat):
    """
    Newline-delimited JSON.

    Attributes:
        schema (pa.Schema | None): Explicit physical schema; when None the schema is
            inferred from each file and fields of the explicit schema missing from a
            file are null.
    """

    type_name: ClassVar[str] = "json"
    extension: ClassVar[str] = ".json"

    def __init__(self, schema: pa.Schema | None = None) -> None:
        self.schema = schema

    def _parse_options(self) -> pajson.ParseOptions:
        if self.schema is None:
            return pajson.ParseOptions()
        return pajson.ParseOptions(explicit_schema=self.schema, unexpected_field_behavior="ignore")

    def read_table(self, source: FileSource) -> pa.Table:
        if source.size() == 0:
            return (self.schema or pa.schema([])).empty_table()
        with source.open() as handle:
            return pajson.read_json(
                handle,
                read_options=pajson.ReadOptions(use_threads=False),
                parse_options=self._parse_options(),
            )

    def inspect(self, source: FileSource) -> pa.Schema:
        if self.schema is not None:
            # Still parse the file so that is_supported rejects malformed input.
            self.read_table(source)
            return self.schema
        return self.read_table(source).schema

    def scan_file(self, source: FileSource, options: ScanOptions, fragment: Fragment) -> Iterator[ScanTask]:
        yield JsonScanTask(options, fragment, source, self)

    def default_write_options(self, settings: DatasetSettings | None = None) -> JsonWriteOptions:
        return JsonWriteOptions(format=self)

    def make_writer(self, sink: IO[bytes], schema: pa.Schema, options: FileWriteOptions, path: str) -> FileWriter:
        if not isinstance(options, JsonWriteOptions):
            raise WriteError(f"json format cannot use {type(options).__name__}")
        return JsonFileWriter(sink, schema, options, path)

    def equals(self, other: object) -> bool:
        if not isinstance(other, JsonFileFormat):
            return False
        if self.schema is None or other.schema is None:
            return self.schema is other.schema
        return self.schema.equals(other.schema)

    def __repr__(self) -> str:
        return f"JsonFileFormat(schema={self.schema})"


# Registry
_FORMATS: dict[str, type[FileFormat]] = {
    "parquet": ParquetFileFormat,
    "ipc": IpcFileFormat,
    "arrow": IpcFileFormat,
    "json": JsonFileFormat,
    "ndjson": JsonFileFormat,
}


def get_format(name: str, **kwargs: Any) -> FileFormat:
    """
    Instantiate a registered format by name.

    Args:
        name (str): Registry name (case-insensitive).
        **kwargs: Constructor arguments (e.g. schema= for json).

    Raises:
        ValueError: Unknown format name.
    """
    try:
        cls = _FORMATS[name.lower()]
    except KeyError:
        raise ValueError(f"unknown file format {name!r}; known: {list_formats()}") from None
    return cls(**kwargs)


def list_formats() -> list[str]:
    """Registered format names, sorted."""
    return sorted(_FORMATS)


for _options in (FileWriteOptions, ParquetWriteOptions, IpcWriteOptions, JsonWriteOptions):
    _options.model_rebuild()
