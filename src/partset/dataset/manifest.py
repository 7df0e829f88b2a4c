"""
Write manifest data structures and helpers.

Manifest layout (JSON at <base_dir>/_manifest.json):
{
  "version": 1,
  "format": "parquet",
  "partitioning": {"type": "hive", "fields": ["year", "month"]},
  "created_at": "ISO-8601",
  "row_count": 16,
  "files": [
    {
      "path": "year=2018/month=1/part-0.parquet",
      "rows": 8,
      "partition": ["year=2018", "month=1"],
      "created_at": "ISO-8601"
    }
  ]
}

Notes:
- File paths are stored relative to the base directory to keep the manifest relocatable.
- The leading underscore of the file name keeps the manifest out of discovery with
  the default ignore prefixes.
"""

from __future__ import annotations

import json
import logging
import posixpath
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

import fsspec

from partset.core.constants import MANIFEST_NAME

from .fs import open_output, replace_atomic

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True)
class FileEntry:
    """
    Per-file metadata recorded in the write manifest.

    Attributes:
        path (str): File path relative to the base directory.
        rows (int): Rows written to the file.
        partition (list[str]): Directory segments formatted by the partitioning.
        created_at (str): ISO-8601 timestamp of when the file was finished.
    """

    path: str  # relative to base_dir
    rows: int
    partition: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now_iso)


@dataclass(slots=True)
class DatasetManifest:
    """
    Manifest model persisted at <base_dir>/_manifest.json.

    Attributes:
        format (str): File format type name.
        partitioning (dict[str, Any]): {"type": ..., "fields": [...]}.
        version (int): Manifest schema version.
        created_at (str): ISO-8601 creation timestamp.
        files (list[FileEntry]): Written files, in finish order.
    """

    format: str
    partitioning: dict[str, Any]
    version: int = 1
    created_at: str = field(default_factory=_utc_now_iso)
    files: list[FileEntry] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return sum(entry.rows for entry in self.files)

    def add_file(self, path: str, rows: int, partition: list[str]) -> FileEntry:
        entry = FileEntry(path=path, rows=rows, partition=list(partition))
        self.files.append(entry)
        return entry

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "format": self.format,
            "partitioning": self.partitioning,
            "created_at": self.created_at,
            "row_count": self.row_count,
            "files": [asdict(entry) for entry in self.files],
        }

    @classmethod
    def from_json_obj(cls, obj: dict[str, Any]) -> DatasetManifest:
        files = [
            FileEntry(
                path=f["path"],
                rows=int(f["rows"]),
                partition=list(f.get("partition") or []),
                created_at=f.get("created_at") or _utc_now_iso(),
            )
            for f in (obj.get("files") or [])
        ]
        return cls(
            format=obj["format"],
            partitioning=dict(obj.get("partitioning") or {}),
            version=int(obj.get("version", 1)),
            created_at=obj.get("created_at") or _utc_now_iso(),
            files=files,
        )


def manifest_path(base_dir: str) -> str:
    return posixpath.join(base_dir, MANIFEST_NAME)


def load_manifest(fs: fsspec.AbstractFileSystem, base_dir: str) -> DatasetManifest | None:
    """
    Load <base_dir>/_manifest.json if present.

    Returns:
        DatasetManifest | None: Parsed manifest, or None if not found.
    """
    mpath = manifest_path(base_dir)
    if not fs.exists(mpath):
        return None
    with fs.open(mpath, "rb") as fh:
        data = json.loads(fh.read().decode("utf-8"))
    return DatasetManifest.from_json_obj(data)


def write_manifest(fs: fsspec.AbstractFileSystem, base_dir: str, manifest: DatasetManifest) -> str:
    """
    Persist the manifest: serialize JSON, write "<final>.tmp", then move over the final path.

    Returns:
        str: Final manifest path.

    Raises:
        OSError: If filesystem operations fail (the writer wraps this in WriteError).
    """
    final_path = manifest_path(base_dir)
    tmp_path = final_path + ".tmp"
    payload = json.dumps(manifest.to_json_obj(), indent=2, sort_keys=False).encode("utf-8")
    with open_output(fs, tmp_path) as fh:
        fh.write(payload)
    replace_atomic(fs, tmp_path, final_path)
    logger.debug("wrote manifest %s (%d files)", final_path, len(manifest.files))
    return final_path
