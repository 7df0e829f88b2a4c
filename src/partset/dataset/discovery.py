"""
Dataset discovery: from a filesystem selector (or explicit paths) to a FileSystemDataset.

Flow
1) List files under the selector's base_dir (or take the given paths).
2) Drop files whose path components, relative to the base dir, start with an ignored
   prefix ("." and "_" by default). This happens before any parsing, so segments
   under ignored paths never raise PartitionParseError.
3) Ask the format whether it supports each file; unsupported files raise
   UnsupportedFormat, or are skipped when exclude_invalid_files is set.
4) Parse the directory part of each path (relative to partition_base_dir, file name
   excluded) with the partitioning; a PartitioningFactory first infers the
   partition schema from every file's segments.
5) inspect(): union of every physical schema plus the partition schema, with the
   same-type check (SchemaConflict). Any inspection failure raises DiscoveryError.
6) finish(): FileSystemDataset with one FileFragment per file, in listing order.

Example
    >>> from partset.dataset.discovery import open_dataset
    >>> ds = open_dataset("/data/sales", format="json", partitioning="hive")  # doctest: +SKIP
    >>> ds.schema.names  # doctest: +SKIP
    ['region', 'model', 'sales', 'country', 'year', 'month']
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Sequence
from dataclasses import dataclass

import fsspec
import pyarrow as pa

from partset.core.expression import TRUE, Expression
from partset.core.schema import unify_schemas

from .config import DatasetSettings
from .dataset import FileSystemDataset
from .errors import DiscoveryError, UnsupportedFormat
from .formats import FileFormat, get_format
from .fragment import FileFragment
from .fs import (
    FileSelector,
    FileSource,
    directory_segments,
    is_ignored,
    list_files,
    normalize_path,
    relative_to,
    resolve_filesystem,
)
from .partitioning import (
    DirectoryPartitioning,
    HivePartitioning,
    Partitioning,
    PartitioningFactory,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileSystemFactoryOptions:
    """
    Options of FileSystemDatasetFactory.

    Attributes:
        partitioning (Partitioning | PartitioningFactory | None): Scheme used to parse
            directory segments, or a factory inferring one. None means no partitioning.
        partition_base_dir (str | None): Prefix stripped before parsing; defaults to the
            selector's base_dir.
        exclude_invalid_files (bool | None): Skip unsupported files instead of raising.
            None takes DatasetSettings.exclude_invalid_files.
        selector_ignore_prefixes (tuple[str, ...] | None): Ignored path component
            prefixes. None takes DatasetSettings.ignore_prefixes.
    """

    partitioning: Partitioning | PartitioningFactory | None = None
    partition_base_dir: str | None = None
    exclude_invalid_files: bool | None = None
    selector_ignore_prefixes: tuple[str, ...] | None = None


class FileSystemDatasetFactory:
    """
    Discovers a FileSystemDataset.

    Args:
        filesystem: fsspec filesystem, protocol name, or None (from settings).
        selector_or_paths (FileSelector | Sequence[str]): Where to look.
        format (FileFormat): Format of every file.
        options (FileSystemFactoryOptions | None): Discovery options.
        settings (DatasetSettings | None): Defaults for unset options.

    Raises:
        DiscoveryError: Listing failed or the base dir is missing.
        UnsupportedFormat: A file is rejected by the format (unless excluded).
    """

    def __init__(
        self,
        filesystem: fsspec.AbstractFileSystem | str | None,
        selector_or_paths: FileSelector | Sequence[str],
        format: FileFormat,
        options: FileSystemFactoryOptions | None = None,
        settings: DatasetSettings | None = None,
    ) -> None:
        self.settings = settings or DatasetSettings()
        self.options = options or FileSystemFactoryOptions()
        self.filesystem = resolve_filesystem(filesystem, self.settings)
        self.format = format

        if isinstance(selector_or_paths, FileSelector):
            paths = list_files(self.filesystem, selector_or_paths)
            selector_base = normalize_path(self.filesystem, selector_or_paths.base_dir)
        else:
            paths = [normalize_path(self.filesystem, p) for p in selector_or_paths]
            selector_base = ""

        if self.options.partition_base_dir is not None:
            self.partition_base_dir = normalize_path(self.filesystem, self.options.partition_base_dir)
        else:
            self.partition_base_dir = selector_base

        prefixes = self.options.selector_ignore_prefixes
        if prefixes is None:
            prefixes = self.settings.ignore_prefixes
        exclude_invalid = self.options.exclude_invalid_files
        if exclude_invalid is None:
            exclude_invalid = self.settings.exclude_invalid_files

        self._files: list[tuple[str, list[str]]] = []
        for path in paths:
            ignore_base = selector_base or self.partition_base_dir
            relative = relative_to(path, ignore_base) if ignore_base else posixpath.basename(path)
            if is_ignored(relative, prefixes):
                logger.debug("ignoring %s", path)
                continue
            source = FileSource(path, self.filesystem)
            if not format.is_supported(source):
                if exclude_invalid:
                    logger.debug("excluding unsupported file %s", path)
                    continue
                raise UnsupportedFormat(f"{format.type_name} format does not support file {path!r}")
            segments = directory_segments(relative_to(path, self.partition_base_dir))
            self._files.append((path, segments))
        logger.debug("discovered %d file(s) of %d listed", len(self._files), len(paths))

        self._partitioning: Partitioning | None = None
        self._physical: dict[str, pa.Schema] = {}

    @property
    def files(self) -> list[str]:
        return [path for path, _ in self._files]

    @property
    def partitioning(self) -> Partitioning:
        """The partitioning in use, inferred on first access when a factory was given."""
        if self._partitioning is None:
            configured = self.options.partitioning
            if configured is None:
                self._partitioning = Partitioning.default()
            elif isinstance(configured, PartitioningFactory):
                schema = configured.inspect(segments for _, segments in self._files)
                self._partitioning = configured.finish(schema)
            else:
                self._partitioning = configured
        return self._partitioning

    def _inspect_file(self, path: str) -> pa.Schema:
        schema = self._physical.get(path)
        if schema is None:
            try:
                schema = self.format.inspect(FileSource(path, self.filesystem))
            except (pa.ArrowException, OSError, ValueError) as exc:
                raise DiscoveryError(f"failed to inspect {path!r}: {exc}") from exc
            self._physical[path] = schema
        return schema

    def inspect_schemas(self) -> list[pa.Schema]:
        """Physical schema of every file, followed by the partition schema."""
        schemas = [self._inspect_file(path) for path, _ in self._files]
        schemas.append(self.partitioning.schema)
        return schemas

    def inspect(self) -> pa.Schema:
        """
        Unified dataset schema.

        Raises:
            DiscoveryError: A file could not be inspected.
            SchemaConflict: A field has different types in different files.
        """
        return unify_schemas(self.inspect_schemas())

    def _partition_expression(self, segments: list[str], schema: pa.Schema) -> Expression:
        expr = self.partitioning.parse(segments)
        if expr.fields() <= set(schema.names):
            return expr.bind(schema)
        return expr

    def finish(self, schema: pa.Schema | None = None, root_partition: Expression = TRUE) -> FileSystemDataset:
        """
        Build the dataset.

        Args:
            schema (pa.Schema | None): Dataset schema; inspected when None.
            root_partition (Expression): Predicate true for the whole dataset.
        """
        if schema is None:
            schema = self.inspect()
        fragments: list[FileFragment] = []
        for path, segments in self._files:
            fragments.append(
                self.format.make_fragment(
                    FileSource(path, self.filesystem),
                    self._partition_expression(segments, schema),
                    self._physical.get(path),
                )
            )
        return FileSystemDataset(schema, root_partition, self.format, self.filesystem, fragments)


def _resolve_partitioning(
    partitioning: Partitioning | PartitioningFactory | str | Sequence[str] | None,
    settings: DatasetSettings,
) -> Partitioning | PartitioningFactory | None:
    if partitioning is None or isinstance(partitioning, (Partitioning, PartitioningFactory)):
        return partitioning
    if isinstance(partitioning, str):
        if partitioning != "hive":
            raise ValueError(f"unknown partitioning flavor {partitioning!r}")
        return HivePartitioning.discover(strict=settings.strict_partitioning)
    return DirectoryPartitioning.discover(list(partitioning), strict=settings.strict_partitioning)


def open_dataset(
    source: str | Sequence[str],
    format: FileFormat | str = "parquet",
    partitioning: Partitioning | PartitioningFactory | str | Sequence[str] | None = None,
    filesystem: fsspec.AbstractFileSystem | str | None = None,
    schema: pa.Schema | None = None,
    settings: DatasetSettings | None = None,
) -> FileSystemDataset:
    """
    Discover a dataset in one call.

    Args:
        source: Base directory (listed recursively) or explicit file paths.
        format: FileFormat or registry name.
        partitioning: Partitioning, factory, "hive", or directory field names.
        filesystem: fsspec filesystem or protocol; defaults to DatasetSettings.
        schema: Explicit dataset schema (skips inspection).
        settings: Defaults for batch/ignore/strictness options.

    Returns:
        FileSystemDataset
    """
    settings = settings or DatasetSettings()
    fmt = get_format(format) if isinstance(format, str) else format
    options = FileSystemFactoryOptions(partitioning=_resolve_partitioning(partitioning, settings))
    selector: FileSelector | Sequence[str]
    if isinstance(source, str):
        selector = FileSelector(source, recursive=True)
    else:
        selector = list(source)
    factory = FileSystemDatasetFactory(filesystem, selector, fmt, options, settings)
    return factory.finish(schema)
