from __future__ import annotations

import json
from pathlib import Path

import fsspec
import pyarrow as pa
import pytest


def _rows(*rows: tuple[str, str, float, str]) -> list[dict]:
    # Sales are written as floats so NDJSON inference yields float64.
    return [
        {"region": region, "model": model, "sales": float(sales), "country": country}
        for region, model, sales, country in rows
    ]


# 16 rows across 4 files ({3, 5, 5, 3}), hive-partitioned by year/month.
SALES_FILES: dict[str, list[dict]] = {
    "year=2018/month=01/dat0.json": _rows(
        ("NY", "3", 742.0, "US"),
        ("NY", "S", 304.125, "US"),
        ("NY", "Y", 27.5, "US"),
    ),
    "year=2018/month=01/dat1.json": _rows(
        ("QC", "3", 512, "CA"),
        ("QC", "S", 978, "CA"),
        ("NY", "X", 136.25, "US"),
        ("QC", "X", 1.0, "CA"),
        ("QC", "Y", 69, "CA"),
    ),
    "year=2019/month=01/dat0.json": _rows(
        ("CA", "3", 273.5, "US"),
        ("CA", "S", 13, "US"),
        ("CA", "X", 54, "US"),
        ("QC", "S", 10, "CA"),
        ("CA", "Y", 21, "US"),
    ),
    "year=2019/month=01/dat1.json": _rows(
        ("QC", "3", 152.25, "CA"),
        ("QC", "X", 42, "CA"),
        ("QC", "Y", 37, "CA"),
    ),
}


def write_ndjson(path: Path, rows: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(row) + "\n" for row in rows))


@pytest.fixture
def sales_dir(tmp_path: Path) -> Path:
    """The 16-row sales fixture plus a garbage dot-file that discovery must skip."""
    base = tmp_path / "dataset"
    for rel, rows in SALES_FILES.items():
        write_ndjson(base / rel, rows)
    (base / ".pesky").write_text("garbage content")
    return base


@pytest.fixture
def sales_schema() -> pa.Schema:
    """Dataset schema discovered from sales_dir with hive partitioning."""
    return pa.schema(
        [
            ("region", pa.string()),
            ("model", pa.string()),
            ("sales", pa.float64()),
            ("country", pa.string()),
            ("year", pa.int32()),
            ("month", pa.int32()),
        ]
    )


@pytest.fixture
def memfs():
    """A cleared fsspec memory filesystem (its store is process-global)."""
    fs = fsspec.filesystem("memory")
    fs.store.clear()
    fs.pseudo_dirs.clear()
    fs.pseudo_dirs.append("")
    yield fs
    fs.store.clear()
    fs.pseudo_dirs.clear()
    fs.pseudo_dirs.append("")
