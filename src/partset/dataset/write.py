"""
Partitioned dataset writer.

Overview
- Consumes a Scanner's ordered batch stream and routes each row to a directory
  derived from the destination Partitioning (Partitioning.format of the row's
  partition field values).
- Rows are grouped stably per batch (polars group_by with maintain_order), so the
  relative input order of rows within a partition is preserved.
- The first rows for a directory open "{base_dir}/{directory}/{basename}" where the
  basename template's "{i}" is replaced by a counter scoped to that directory
  (counter_scope="directory", first file 0) or to the whole write
  (counter_scope="dataset").
- Payload columns are the scanned columns minus the destination partition fields;
  those values are recovered from the path on re-discovery.
- Every writer is finished exactly once when the stream is exhausted (or when
  max_rows_per_file rolls over to the next file).

Failure
- Any error aborts the whole operation as WriteError (DatasetError subclasses such as
  ScanError propagate unchanged). Files already finished stay on disk; open writers
  are aborted. There is no rollback.
- A partition segment that is empty, "." or ".." or that contains "/" raises
  PartitionFormatError before any path is joined.

Manifest
- With write_manifest=True a _manifest.json is written at base_dir listing each file's
  relative path, partition segments and row count (see partset.dataset.manifest).
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from typing import Any, Literal, cast

import fsspec
import polars as pl
import pyarrow as pa
from pydantic import BaseModel, ConfigDict, Field, field_validator

from partset.core.constants import COUNTER_PLACEHOLDER
from partset.core.schema import schema_without

from .config import DatasetSettings
from .errors import DatasetError, PartitionFormatError, WriteError
from .formats import FileWriteOptions, FileWriter
from .fs import join_path, normalize_path, open_output, relative_to
from .manifest import DatasetManifest, write_manifest
from .partitioning import Partitioning, partition_expression_for
from .scanner import Scanner

logger = logging.getLogger(__name__)

_ROW_INDEX = "__partset_row__"


class WriteOptions(BaseModel):
    """
    Options of a partitioned write.

    Attributes:
        filesystem (fsspec.AbstractFileSystem): Destination filesystem.
        base_dir (str): Root directory of the written dataset.
        partitioning (Partitioning): Destination partitioning.
        file_write_options (FileWriteOptions): Format-specific options; their format
            creates the file writers.
        basename_template (str | None): File name containing exactly one "{i}".
            Defaults to DatasetSettings.basename_template plus the format extension.
        counter_scope ("directory" | "dataset"): Scope of the "{i}" counter.
        max_rows_per_file (int | None): Roll over to a new file after this many rows.
        write_manifest (bool): Write <base_dir>/_manifest.json after the data files.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    filesystem: fsspec.AbstractFileSystem
    base_dir: str
    partitioning: Partitioning
    file_write_options: FileWriteOptions
    basename_template: str | None = None
    counter_scope: Literal["directory", "dataset"] = "directory"
    max_rows_per_file: int | None = Field(default=None, gt=0)
    write_manifest: bool = False

    @field_validator("basename_template")
    @classmethod
    def _check_basename_template(cls, value: str | None) -> str | None:
        if value is None:
            return value
        if value.count(COUNTER_PLACEHOLDER) != 1:
            raise ValueError(f"basename_template must contain {COUNTER_PLACEHOLDER!r} exactly once: {value!r}")
        if "/" in value:
            raise ValueError(f"basename_template must not contain '/': {value!r}")
        return value

    def resolved_basename_template(self, settings: DatasetSettings | None = None) -> str:
        if self.basename_template is not None:
            return self.basename_template
        base = (settings or DatasetSettings()).basename_template
        return base + self.file_write_options.format.extension


def _group_rows(batch: pa.RecordBatch, fields: Sequence[str]) -> Iterator[tuple[tuple[Any, ...], pa.RecordBatch]]:
    """Split batch by the values of fields, groups in first-seen order, rows in input order."""
    if batch.num_rows == 0:
        return
    if not fields:
        yield (), batch
        return
    frame = cast(pl.DataFrame, pl.from_arrow(batch.select(list(fields))))
    groups = (
        frame.with_row_index(_ROW_INDEX)
        .group_by(list(fields), maintain_order=True)
        .agg(pl.col(_ROW_INDEX))
    )
    if groups.height == 1:
        yield tuple(groups.row(0)[:-1]), batch
        return
    for row in groups.iter_rows():
        indices = pa.array(row[-1], type=pa.uint32())
        yield tuple(row[:-1]), batch.take(indices)


class _DatasetWriter:
    """Owns the open file writers of one write_dataset call (single consumer thread)."""

    def __init__(self, options: WriteOptions, payload_schema: pa.Schema, settings: DatasetSettings) -> None:
        self.options = options
        self.payload_schema = payload_schema
        self.fs = options.filesystem
        self.base_dir = normalize_path(self.fs, options.base_dir)
        self.template = options.resolved_basename_template(settings)
        self.format = options.file_write_options.format
        self.open_writers: dict[str, FileWriter] = {}
        self.segments: dict[str, list[str]] = {}
        self.counters: dict[str, int] = {}
        self.written: list[str] = []
        self.manifest = DatasetManifest(
            format=self.format.type_name,
            partitioning={
                "type": type(options.partitioning).__name__,
                "fields": options.partitioning.field_names,
            },
        )

    def _next_index(self, directory: str) -> int:
        key = directory if self.options.counter_scope == "directory" else ""
        index = self.counters.get(key, 0)
        self.counters[key] = index + 1
        return index

    def _open(self, directory: str) -> FileWriter:
        basename = self.template.replace(COUNTER_PLACEHOLDER, str(self._next_index(directory)))
        path = join_path(self.base_dir, directory, basename)
        sink = open_output(self.fs, path)
        try:
            writer = self.format.make_writer(sink, self.payload_schema, self.options.file_write_options, path)
        except Exception:
            sink.close()
            raise
        self.open_writers[directory] = writer
        logger.debug("opened %s", path)
        return writer

    def _finish(self, directory: str) -> None:
        writer = self.open_writers.pop(directory)
        writer.finish()
        self.written.append(writer.path)
        self.manifest.add_file(relative_to(writer.path, self.base_dir), writer.rows, self.segments[directory])
        logger.debug("finished %s (%d rows)", writer.path, writer.rows)

    def write(self, key: tuple[Any, ...], rows: pa.RecordBatch) -> None:
        partitioning = self.options.partitioning
        expr = partition_expression_for(partitioning, dict(zip(partitioning.field_names, key)))
        segments = partitioning.format(expr)
        if any(segment in ("", ".", "..") or "/" in segment for segment in segments):
            raise PartitionFormatError(f"partition segments {segments!r} escape or collapse base_dir")
        directory = "/".join(segments)
        self.segments.setdefault(directory, segments)
        payload = pa.RecordBatch.from_arrays(
            [rows.column(name) for name in self.payload_schema.names], schema=self.payload_schema
        )
        limit = self.options.max_rows_per_file
        offset = 0
        while offset < payload.num_rows:
            writer = self.open_writers.get(directory)
            if writer is not None and limit is not None and writer.rows >= limit:
                self._finish(directory)
                writer = None
            if writer is None:
                writer = self._open(directory)
            room = payload.num_rows - offset if limit is None else limit - writer.rows
            chunk = payload.slice(offset, room)
            writer.write(chunk)
            offset += chunk.num_rows

    def finish(self) -> None:
        for directory in list(self.open_writers):
            self._finish(directory)
        if self.options.write_manifest:
            write_manifest(self.fs, self.base_dir, self.manifest)

    def abort(self) -> None:
        for writer in self.open_writers.values():
            writer.abort()
        self.open_writers.clear()


def write_dataset(options: WriteOptions, scanner: Scanner, settings: DatasetSettings | None = None) -> set[str]:
    """
    Write the scanner's batches as a partitioned dataset.

    Args:
        options (WriteOptions): Destination filesystem, base_dir, partitioning, formats.
        scanner (Scanner): Configured scanner; its projected schema must contain every
            destination partition field.
        settings (DatasetSettings | None): Supplies the default basename template.

    Returns:
        set[str]: Paths of all files written.

    Raises:
        WriteError: Missing partition fields or any writer/filesystem failure.
        PartitionFormatError: A key cannot be rendered by the destination partitioning.
        ScanError: The source scan failed.

    Examples:
        >>> # identical partitioning: year=2018/month=1/part-0.parquet, ...
        >>> # empty partitioning: a single part-0.parquet holding every column
    """
    settings = settings or DatasetSettings()
    fields = options.partitioning.field_names
    source_schema = scanner.projected_schema
    missing = [name for name in fields if source_schema.get_field_index(name) < 0]
    if missing:
        raise WriteError(f"partition fields {missing!r} are not in the scanned schema {source_schema.names!r}")

    writer = _DatasetWriter(options, schema_without(source_schema, fields), settings)
    try:
        for tagged in scanner.scan_batches():
            for key, rows in _group_rows(tagged.record_batch, fields):
                writer.write(key, rows)
        writer.finish()
    except DatasetError:
        writer.abort()
        raise
    except Exception as exc:
        writer.abort()
        raise WriteError(f"write to {options.base_dir!r} failed: {exc}") from exc
    return set(writer.written)
