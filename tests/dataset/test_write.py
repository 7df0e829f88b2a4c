from __future__ import annotations

from pathlib import Path

import fsspec
import pyarrow as pa
import pyarrow.parquet as pq
import pytest
from pydantic import ValidationError

from partset.core.expression import field
from partset.dataset.config import DatasetSettings
from partset.dataset.dataset import FileSystemDataset, InMemoryDataset
from partset.dataset.discovery import open_dataset
from partset.dataset.errors import PartitionFormatError, WriteError
from partset.dataset.formats import JsonFileFormat, ParquetFileFormat
from partset.dataset.manifest import load_manifest
from partset.dataset.partitioning import DirectoryPartitioning, HivePartitioning, Partitioning
from partset.dataset.write import WriteOptions, write_dataset

LOCAL = fsspec.filesystem("file")


def _partitioning(*names: str) -> DirectoryPartitioning:
    types = {"year": pa.int32(), "month": pa.int32(), "country": pa.string(), "region": pa.string()}
    return DirectoryPartitioning(pa.schema([(name, types[name]) for name in names]))


def _options(base: Path, partitioning: Partitioning, **kwargs) -> WriteOptions:
    kwargs.setdefault("basename_template", "dat_{i}")
    return WriteOptions(
        filesystem=LOCAL,
        base_dir=str(base),
        partitioning=partitioning,
        file_write_options=ParquetFileFormat().default_write_options(),
        **kwargs,
    )


def _written(base: Path, paths: set[str]) -> dict[str, int]:
    return {str(Path(p).relative_to(base)): pq.read_metadata(p).num_rows for p in paths}


@pytest.mark.parametrize(
    "fields, expected, payload",
    [
        (
            ("year", "month"),
            {"2018/1/dat_0": 8, "2019/1/dat_0": 8},
            ["region", "model", "sales", "country"],
        ),
        (
            ("country", "region"),
            {"US/NY/dat_0": 4, "CA/QC/dat_0": 8, "US/CA/dat_0": 4},
            ["model", "sales", "year", "month"],
        ),
        (
            ("year", "month", "country", "region"),
            {
                "2018/1/US/NY/dat_0": 4,
                "2018/1/CA/QC/dat_0": 4,
                "2019/1/US/CA/dat_0": 4,
                "2019/1/CA/QC/dat_0": 4,
            },
            ["model", "sales"],
        ),
        (
            (),
            {"dat_0": 16},
            ["region", "model", "sales", "country", "year", "month"],
        ),
    ],
    ids=["identical", "unrelated", "superset", "empty"],
)
def test_write_routes_rows_by_destination_partitioning(sales_dir, tmp_path, fields, expected, payload):
    # Arrange
    source = open_dataset(str(sales_dir), format="json", partitioning="hive")
    base = tmp_path / "new_root"

    # Act
    paths = write_dataset(_options(base, _partitioning(*fields)), source.new_scan().finish())

    # Assert
    assert _written(base, paths) == expected
    for path in paths:
        assert pq.read_schema(path).names == payload


def test_directory_round_trip_preserves_rows(sales_dir, tmp_path, sales_schema):
    source = open_dataset(str(sales_dir), format="json", partitioning="hive")
    base = tmp_path / "new_root"
    write_dataset(_options(base, _partitioning("year", "month")), source.new_scan().finish())

    again = open_dataset(str(base), format="parquet", partitioning=["year", "month"])

    assert again.schema.equals(sales_schema)
    # Rows of one partition keep their input order across files of that partition.
    assert again.to_table().equals(source.to_table())
    assert [f.partition_expression for f in again.get_fragments()] == [
        (field("year") == 2018) & (field("month") == 1),
        (field("year") == 2019) & (field("month") == 1),
    ]


def test_hive_round_trip_on_memory_filesystem(sales_dir, memfs):
    source = open_dataset(str(sales_dir), format="json", partitioning="hive")
    hive = HivePartitioning(pa.schema([("country", pa.string()), ("year", pa.int32())]))
    options = WriteOptions(
        filesystem=memfs,
        base_dir="/out",
        partitioning=hive,
        file_write_options=JsonFileFormat().default_write_options(),
    )

    paths = FileSystemDataset.write(options, source.new_scan().finish())

    assert sorted(p.split("/out/")[1] for p in paths) == [
        "country=CA/year=2018/part-0.json",
        "country=CA/year=2019/part-0.json",
        "country=US/year=2018/part-0.json",
        "country=US/year=2019/part-0.json",
    ]
    again = open_dataset("/out", format="json", partitioning="hive", filesystem=memfs)
    us_2019 = again.new_scan().filter((field("country") == "US") & (field("year") == 2019)).finish()
    assert us_2019.count_rows() == 4
    assert again.to_table().num_rows == 16


def test_dataset_counter_scope(sales_dir, tmp_path):
    source = open_dataset(str(sales_dir), format="json", partitioning="hive")
    base = tmp_path / "new_root"

    paths = write_dataset(
        _options(base, _partitioning("year", "month"), counter_scope="dataset"),
        source.new_scan().finish(),
    )

    assert sorted(_written(base, paths)) == ["2018/1/dat_0", "2019/1/dat_1"]


def test_max_rows_per_file_rolls_over(sales_dir, tmp_path):
    source = open_dataset(str(sales_dir), format="json", partitioning="hive")
    base = tmp_path / "new_root"

    paths = write_dataset(_options(base, _partitioning(), max_rows_per_file=5), source.new_scan().finish())

    assert _written(base, paths) == {"dat_0": 5, "dat_1": 5, "dat_2": 5, "dat_3": 1}


def test_manifest_lists_files_and_is_skipped_by_discovery(sales_dir, tmp_path):
    source = open_dataset(str(sales_dir), format="json", partitioning="hive")
    base = tmp_path / "new_root"

    write_dataset(_options(base, _partitioning("year", "month"), write_manifest=True), source.new_scan().finish())

    manifest = load_manifest(LOCAL, str(base))
    assert manifest is not None
    assert manifest.format == "parquet"
    assert manifest.partitioning == {"type": "DirectoryPartitioning", "fields": ["year", "month"]}
    assert manifest.row_count == 16
    assert sorted(entry.path for entry in manifest.files) == ["2018/1/dat_0", "2019/1/dat_0"]
    assert sorted(entry.partition for entry in manifest.files) == [["2018", "1"], ["2019", "1"]]
    again = open_dataset(str(base), format="parquet", partitioning=["year", "month"])
    assert len(again.files) == 2


def test_default_basename_uses_settings_and_extension(tmp_path):
    ds = InMemoryDataset.from_table(pa.table({"x": [1, 2, 3]}))
    options = WriteOptions(
        filesystem=LOCAL,
        base_dir=str(tmp_path),
        partitioning=Partitioning.default(),
        file_write_options=ParquetFileFormat().default_write_options(),
    )

    paths = write_dataset(options, ds.new_scan().finish(), DatasetSettings(basename_template="chunk-{i}"))

    assert [Path(p).name for p in paths] == ["chunk-0.parquet"]


@pytest.mark.parametrize("template", ["dat", "dat_{i}_{i}", "sub/dat_{i}"])
def test_invalid_basename_template_is_rejected(tmp_path, template):
    with pytest.raises(ValidationError):
        _options(tmp_path, _partitioning(), basename_template=template)


def test_partition_fields_must_be_scanned(sales_dir, tmp_path):
    source = open_dataset(str(sales_dir), format="json", partitioning="hive")
    scanner = source.new_scan().project(["model", "sales"]).finish()

    with pytest.raises(WriteError):
        write_dataset(_options(tmp_path / "out", _partitioning("year")), scanner)


def test_null_directory_value_aborts_write(tmp_path):
    ds = InMemoryDataset.from_table(pa.table({"year": pa.array([2018, None], pa.int32()), "x": [1, 2]}))

    with pytest.raises(PartitionFormatError):
        write_dataset(_options(tmp_path / "out", _partitioning("year")), ds.new_scan().finish())


def test_null_hive_value_uses_fallback(tmp_path):
    ds = InMemoryDataset.from_table(pa.table({"year": pa.array([2018, None], pa.int32()), "x": [1, 2]}))
    hive = HivePartitioning(pa.schema([("year", pa.int32())]))

    write_dataset(_options(tmp_path, hive), ds.new_scan().finish())

    again = open_dataset(str(tmp_path), format="parquet", partitioning=hive)
    table = again.new_scan().filter(field("year").is_null()).finish().to_table()
    assert table.column("x").to_pylist() == [2]


@pytest.mark.parametrize("region", ["", ".", ".."])
def test_unrepresentable_directory_values_never_leave_base_dir(tmp_path, region):
    # Arrange
    ds = InMemoryDataset.from_table(pa.table({"region": [region, "NY"], "model": ["X", "Y"], "n": [1, 2]}))
    partitioning = DirectoryPartitioning(pa.schema([("region", pa.string()), ("model", pa.string())]))
    base = tmp_path / "out"

    # Act
    with pytest.raises(PartitionFormatError):
        write_dataset(_options(base, partitioning), ds.new_scan().finish())

    # Assert
    outside = [p for p in tmp_path.rglob("*") if p.is_file() and base not in p.parents]
    assert outside == []


def test_hive_keeps_empty_and_dot_values_inside_base_dir(tmp_path):
    ds = InMemoryDataset.from_table(pa.table({"region": ["", ".", ".."], "n": [1, 2, 3]}))
    hive = HivePartitioning(pa.schema([("region", pa.string())]))
    base = tmp_path / "out"

    paths = write_dataset(_options(base, hive), ds.new_scan().finish())

    assert all(base in Path(p).parents for p in paths)
    again = open_dataset(str(base), format="parquet", partitioning=hive)
    assert sorted(again.to_table().column("region").to_pylist()) == ["", ".", ".."]
