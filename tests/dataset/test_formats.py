from __future__ import annotations

from pathlib import Path

import fsspec
import pyarrow as pa
import pytest

from partset.dataset.errors import WriteError
from partset.dataset.formats import (
    IpcFileFormat,
    JsonFileFormat,
    ParquetFileFormat,
    get_format,
    list_formats,
)
from partset.dataset.fs import FileSource, open_output
from partset.dataset.scan_task import ScanOptions

SCHEMA = pa.schema([("x", pa.int64()), ("y", pa.string())])


def _write_file(fmt, fs, path: str, batches: list[pa.RecordBatch]) -> None:
    writer = fmt.make_writer(open_output(fs, path), SCHEMA, fmt.default_write_options(), path)
    for batch in batches:
        writer.write(batch)
    writer.finish()


def test_registry_resolves_names_and_aliases():
    assert isinstance(get_format("parquet"), ParquetFileFormat)
    assert isinstance(get_format("ARROW"), IpcFileFormat)
    fmt = get_format("ndjson", schema=SCHEMA)
    assert isinstance(fmt, JsonFileFormat) and fmt.schema.equals(SCHEMA)
    assert set(list_formats()) >= {"parquet", "ipc", "json"}
    with pytest.raises(ValueError):
        get_format("csv")


def test_equals_compares_format_and_options():
    assert ParquetFileFormat().equals(ParquetFileFormat())
    assert not ParquetFileFormat().equals(IpcFileFormat())
    assert JsonFileFormat(SCHEMA).equals(JsonFileFormat(SCHEMA))
    assert not JsonFileFormat(SCHEMA).equals(JsonFileFormat())


def test_finish_twice_raises(tmp_path: Path):
    fs = fsspec.filesystem("file")
    path = str(tmp_path / "a.parquet")
    fmt = ParquetFileFormat()
    writer = fmt.make_writer(open_output(fs, path), SCHEMA, fmt.default_write_options(), path)
    writer.write(pa.record_batch({"x": [1], "y": ["a"]}, schema=SCHEMA))
    writer.finish()

    assert writer.finished
    with pytest.raises(WriteError):
        writer.finish()
    with pytest.raises(WriteError):
        writer.write(pa.record_batch({"x": [2], "y": ["b"]}, schema=SCHEMA))


def test_mismatched_write_options_are_rejected(tmp_path: Path):
    fs = fsspec.filesystem("file")
    path = str(tmp_path / "a.arrow")
    sink = open_output(fs, path)
    with pytest.raises(WriteError):
        IpcFileFormat().make_writer(sink, SCHEMA, ParquetFileFormat().default_write_options(), path)
    sink.close()


def test_ipc_file_scans_one_task_per_batch(memfs):
    fmt = IpcFileFormat()
    batches = [
        pa.record_batch({"x": [1, 2], "y": ["a", "b"]}, schema=SCHEMA),
        pa.record_batch({"x": [3], "y": ["c"]}, schema=SCHEMA),
    ]
    _write_file(fmt, memfs, "/data/a.arrow", batches)
    source = FileSource("/data/a.arrow", memfs)

    assert fmt.is_supported(source)
    assert fmt.inspect(source).equals(SCHEMA)
    fragment = fmt.make_fragment(source)
    tasks = list(fragment.scan(ScanOptions(dataset_schema=SCHEMA, projection=("y",))))

    assert len(tasks) == 2
    assert not any(t.supports_async for t in tasks)
    assert [b.column("y").to_pylist() for t in tasks for b in t.execute()] == [["a", "b"], ["c"]]


def test_garbage_is_not_supported(memfs):
    with memfs.open("/data/bad.parquet", "wb") as fh:
        fh.write(b"not a parquet file")
    source = FileSource("/data/bad.parquet", memfs)

    assert not ParquetFileFormat().is_supported(source)
    assert not IpcFileFormat().is_supported(source)
    assert not JsonFileFormat().is_supported(source)


def test_json_explicit_schema_ignores_unexpected_fields(memfs):
    with memfs.open("/data/a.json", "wb") as fh:
        fh.write(b'{"x": 1, "y": "a", "z": true}\n{"x": 2}\n')
    source = FileSource("/data/a.json", memfs)
    fmt = JsonFileFormat(SCHEMA)

    table = fmt.read_table(source)

    assert table.schema.equals(SCHEMA)
    assert table.column("y").to_pylist() == ["a", None]


def test_empty_json_file_has_no_rows(memfs):
    with memfs.open("/data/empty.json", "wb"):
        pass
    source = FileSource("/data/empty.json", memfs)

    assert JsonFileFormat(SCHEMA).read_table(source).num_rows == 0
    assert JsonFileFormat().inspect(source).names == []
