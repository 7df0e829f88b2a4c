"""
Custom exceptions for the partset.dataset module.

Purpose
- Provide dataset-layer error types that map cleanly to responsibilities in partset.dataset.
- Keep partset.core as the source of truth for expression/schema errors (see partset.core.errors).

Boundaries
- partset.core.errors.SchemaConflict and ExpressionError are raised by core helpers and
  propagate unchanged through discovery and scanning.
- partset.dataset raises these for filesystem/format/writer concerns:
  - DiscoveryError: selector listing or schema inspection failed.
  - PartitionParseError: a path segment matched a partition field but its value
    could not be cast (strict partitionings only).
  - PartitionFormatError: a predicate cannot be rendered as path segments.
  - UnsupportedFormat: the file format rejected a source.
  - ScanError: a scan task failed mid-stream.
  - WriteError: the partitioned writer failed.

Notes
- These exceptions do not perform any IO and are stdlib-only.
"""

from __future__ import annotations


class DatasetError(Exception):
    """
    Base class for dataset-layer errors.

    Notes:
        Use this as a catch-all for discovery, scan and write failures, distinct
        from partset.core errors.
    """


class DiscoveryError(DatasetError):
    """
    Raised when dataset discovery cannot complete.

    Examples:
        - Selector base directory does not exist (and allow_not_found is False)
        - Filesystem listing fails
        - A file's physical schema cannot be inspected
    """


class PartitionParseError(DatasetError):
    """
    Raised when a path segment matches a partition field but its value cannot be
    cast to the field's type and the partitioning is strict.
    """


class PartitionFormatError(DatasetError):
    """
    Raised when a predicate cannot be formatted into path segments.

    Examples:
        - Directory partitioning with a gap in the known fields
        - Directory partitioning with a null value
    """


class UnsupportedFormat(DatasetError):
    """Raised when a file format rejects a source during discovery."""


class ScanError(DatasetError):
    """
    Raised when a scan task fails while producing batches.

    Notes:
        The original exception is chained; the batch stream stops at the failure.
    """


class WriteError(DatasetError):
    """
    Raised when a partitioned write fails.

    Notes:
        Files already flushed before the failure remain on disk; there is no rollback.
    """
