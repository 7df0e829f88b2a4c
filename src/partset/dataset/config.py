"""
Configuration for the partset.dataset module.

Defines DatasetSettings, a frozen dataclass carrying runtime configuration for
discovery, scanning and writing. Defaults are sourced from partset.core.constants
(the single source of truth).

Source of truth
- partset.core.constants: BATCH_SIZE, FRAGMENT_READAHEAD, IGNORE_PREFIXES,
  BASENAME_TEMPLATE, ROW_GROUP_SIZE, COMPRESSION

Import DAG discipline
- Depends on stdlib, fsspec and partset.core.constants.

Notes
- Precedence when loading: environment (PARTSET_*) > TOML > defaults.
- max_workers sizes the thread pool a Scanner creates when no executor is passed.
"""

from __future__ import annotations

import os
import tomllib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

import fsspec

from partset.core.constants import BASENAME_TEMPLATE as CORE_BASENAME_TEMPLATE
from partset.core.constants import BATCH_SIZE as CORE_BATCH_SIZE
from partset.core.constants import COMPRESSION as CORE_COMPRESSION
from partset.core.constants import FRAGMENT_READAHEAD as CORE_FRAGMENT_READAHEAD
from partset.core.constants import IGNORE_PREFIXES as CORE_IGNORE_PREFIXES
from partset.core.constants import ROW_GROUP_SIZE as CORE_ROW_GROUP_SIZE

Compression = Literal["zstd", "lz4", "snappy", "gzip", "none"]

_COMPRESSIONS = ("zstd", "lz4", "snappy", "gzip", "none")


def _default_max_workers() -> int:
    return os.cpu_count() or 1


@dataclass(frozen=True)
class DatasetSettings:
    """
    Runtime settings for the partset.dataset layer.

    Attributes:
        batch_size (int): Maximum rows per scanned batch.
        use_threads (bool): Run scan tasks on a thread pool.
        max_workers (int): Capacity of the pool a Scanner creates for itself.
        fragment_readahead (int): Fragments scheduled ahead of the consumer.
        ignore_prefixes (tuple[str, ...]): Path components with these prefixes are
            skipped during discovery.
        exclude_invalid_files (bool): Silently drop files the format rejects
            instead of raising UnsupportedFormat.
        strict_partitioning (bool): Partitionings built from settings raise
            PartitionParseError on uncastable segments.
        basename_template (str): File name template for writes; must contain "{i}".
        compression (Compression): Parquet compression codec for writes.
        row_group_size (int): Parquet row group size for writes.
        fs_protocol (str): fsspec protocol ("file", "memory", "s3", ...).
        fs_options (dict[str, Any]): Keyword options for the fsspec filesystem.

    Examples:
        >>> from partset.dataset.config import DatasetSettings
        >>> DatasetSettings(batch_size=1024, use_threads=False)  # doctest: +ELLIPSIS
        DatasetSettings(...)
    """

    batch_size: int = CORE_BATCH_SIZE
    use_threads: bool = True
    max_workers: int = field(default_factory=_default_max_workers)
    fragment_readahead: int = CORE_FRAGMENT_READAHEAD
    ignore_prefixes: tuple[str, ...] = CORE_IGNORE_PREFIXES
    exclude_invalid_files: bool = False
    strict_partitioning: bool = False
    basename_template: str = CORE_BASENAME_TEMPLATE
    compression: Compression = CORE_COMPRESSION  # type: ignore[assignment]
    row_group_size: int = CORE_ROW_GROUP_SIZE
    fs_protocol: str = "file"
    fs_options: dict[str, Any] = field(default_factory=dict)

    def filesystem(self) -> fsspec.AbstractFileSystem:
        """Instantiate the fsspec filesystem described by fs_protocol/fs_options."""
        return fsspec.filesystem(self.fs_protocol, **self.fs_options)

    def make_executor(self) -> ThreadPoolExecutor:
        """Create a thread pool with max_workers threads; the caller shuts it down."""
        return ThreadPoolExecutor(max_workers=max(1, self.max_workers), thread_name_prefix="partset")

    # Configuration loaders (env/TOML) with precedence: env > TOML > defaults.

    @classmethod
    def _apply_mapping(cls, base: DatasetSettings, cfg: dict[str, Any] | None) -> DatasetSettings:
        """Apply a loose config mapping onto DatasetSettings, returning a new instance."""
        if not isinstance(cfg, dict):
            return base

        s = base

        def _bool(v: Any) -> bool:
            if isinstance(v, bool):
                return v
            if isinstance(v, (int, float)):
                return bool(v)
            if isinstance(v, str):
                return v.strip().lower() in {"1", "true", "t", "yes", "y", "on"}
            return False

        for key in ("batch_size", "max_workers", "fragment_readahead", "row_group_size"):
            if key in cfg:
                try:
                    value = int(cfg[key])
                except (TypeError, ValueError):
                    continue
                if value >= 1:
                    s = replace(s, **{key: value})

        for key in ("use_threads", "exclude_invalid_files", "strict_partitioning"):
            if key in cfg:
                s = replace(s, **{key: _bool(cfg[key])})

        if "ignore_prefixes" in cfg:
            raw = cfg["ignore_prefixes"]
            if isinstance(raw, str):
                raw = [p for p in raw.split(",") if p]
            if isinstance(raw, (list, tuple)):
                s = replace(s, ignore_prefixes=tuple(str(p) for p in raw))

        if "basename_template" in cfg and isinstance(cfg["basename_template"], str):
            s = replace(s, basename_template=cfg["basename_template"])

        if "compression" in cfg and isinstance(cfg["compression"], str):
            comp = cfg["compression"].strip().lower()
            if comp in _COMPRESSIONS:
                s = replace(s, compression=comp)  # type: ignore[arg-type]

        if "fs_protocol" in cfg and isinstance(cfg["fs_protocol"], str):
            s = replace(s, fs_protocol=cfg["fs_protocol"])
        if "fs_options" in cfg and isinstance(cfg["fs_options"], dict):
            s = replace(s, fs_options=dict(cfg["fs_options"]))

        return s

    @classmethod
    def from_env(
        cls, base: DatasetSettings | None = None, prefix: str = "PARTSET_"
    ) -> DatasetSettings:
        """
        Build DatasetSettings from environment variables. Precedence is env > base (if provided) > defaults.

        Recognized variables:
            - PARTSET_BATCH_SIZE
            - PARTSET_USE_THREADS (1/0/true/false/yes/no/on/off)
            - PARTSET_MAX_WORKERS
            - PARTSET_FRAGMENT_READAHEAD
            - PARTSET_IGNORE_PREFIXES (comma separated)
            - PARTSET_EXCLUDE_INVALID_FILES
            - PARTSET_STRICT_PARTITIONING
            - PARTSET_BASENAME_TEMPLATE
            - PARTSET_COMPRESSION ("zstd" | "lz4" | "snappy" | "gzip" | "none")
            - PARTSET_ROW_GROUP_SIZE
            - PARTSET_FS_PROTOCOL
        """
        s = base or cls()
        mapping: dict[str, Any] = {}
        for key in (
            "batch_size",
            "use_threads",
            "max_workers",
            "fragment_readahead",
            "ignore_prefixes",
            "exclude_invalid_files",
            "strict_partitioning",
            "basename_template",
            "compression",
            "row_group_size",
            "fs_protocol",
        ):
            v = os.getenv(prefix + key.upper())
            if v:
                mapping[key] = v
        return cls._apply_mapping(s, mapping)

    @classmethod
    def from_toml(cls, path: str | os.PathLike[str] | None = None) -> DatasetSettings:
        """
        Build DatasetSettings from a TOML file.

        Search order when `path` is None:
            1) ./partset.toml (with either a [dataset] table or direct keys)
            2) ./pyproject.toml under [tool.partset]

        Returns defaults if no file is present.
        """
        s = cls()

        def _load_toml(p: Path) -> dict[str, Any] | None:
            try:
                with p.open("rb") as fh:
                    return tomllib.load(fh)
            except (OSError, ValueError):
                return None

        cand: list[Path] = []
        if path is not None:
            cand.append(Path(path))
        else:
            cand.append(Path.cwd() / "partset.toml")
            cand.append(Path.cwd() / "pyproject.toml")

        cfg: dict[str, Any] | None = None
        for p in cand:
            if not p.exists():
                continue
            data = _load_toml(p)
            if not isinstance(data, dict):
                continue
            if p.name == "pyproject.toml":
                tool = data.get("tool", {})
                cfg = tool.get("partset") if isinstance(tool, dict) else None
            elif isinstance(data.get("dataset"), dict):
                cfg = data["dataset"]
            else:
                cfg = data
            if cfg:
                break

        return cls._apply_mapping(s, cfg)

    @classmethod
    def load(cls, path: str | os.PathLike[str] | None = None) -> DatasetSettings:
        """
        Load DatasetSettings applying precedence: environment > TOML > defaults.

        Args:
            path: Optional explicit TOML path. If None, search defaults (partset.toml, pyproject.toml).

        Returns:
            DatasetSettings
        """
        s = cls.from_toml(path)
        s = cls.from_env(base=s)
        return s
