"""
Filesystem helpers for partset.dataset (fsspec-backed).

Responsibilities
- Resolve an fsspec filesystem from an instance, a protocol name or DatasetSettings.
- List the files under a FileSelector and relate them to the selector's base dir.
- Provide FileSource (read side) and output helpers (write side) for formats.

Layout conventions
- Paths are POSIX strings without protocol, normalized by the filesystem.
- Only the directory part of a path (relative to the partition base dir) is fed to
  a Partitioning; the file name itself is never parsed.

Notes
- Atomic replacement via fs.mv is only atomic on filesystems that implement rename
  natively (local files); object stores copy then delete.
- All helpers are synchronous; concurrency is decided by the scan engine.
"""

from __future__ import annotations

import posixpath
from collections.abc import Sequence
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING

import fsspec

from .errors import DiscoveryError

if TYPE_CHECKING:
    from .config import DatasetSettings


@dataclass(frozen=True, slots=True)
class FileSelector:
    """
    Selection of files beneath a base directory.

    Attributes:
        base_dir (str): Directory to list.
        recursive (bool): Descend into subdirectories.
        allow_not_found (bool): Treat a missing base_dir as empty instead of failing.
    """

    base_dir: str
    recursive: bool = False
    allow_not_found: bool = False


@dataclass(frozen=True, slots=True)
class FileSource:
    """
    One readable file: a (filesystem, path) pair.

    Attributes:
        path (str): Normalized path within filesystem.
        filesystem (fsspec.AbstractFileSystem): Filesystem holding the file.
    """

    path: str
    filesystem: fsspec.AbstractFileSystem

    def open(self) -> IO[bytes]:
        """Open the file for binary reading; the caller closes the handle."""
        return self.filesystem.open(self.path, "rb")

    def size(self) -> int:
        return int(self.filesystem.size(self.path))

    @property
    def basename(self) -> str:
        return posixpath.basename(self.path)


def resolve_filesystem(
    filesystem: fsspec.AbstractFileSystem | str | None,
    settings: DatasetSettings | None = None,
) -> fsspec.AbstractFileSystem:
    """
    Return an fsspec filesystem.

    Args:
        filesystem: An instance (returned as-is), a protocol name, or None.
        settings: Used when filesystem is None (fs_protocol/fs_options).

    Returns:
        fsspec.AbstractFileSystem
    """
    if isinstance(filesystem, fsspec.AbstractFileSystem):
        return filesystem
    if isinstance(filesystem, str):
        return fsspec.filesystem(filesystem)
    if settings is not None:
        return settings.filesystem()
    return fsspec.filesystem("file")


def normalize_path(fs: fsspec.AbstractFileSystem, path: str) -> str:
    """Strip protocol and trailing separators the way fs itself names paths."""
    stripped = fs._strip_protocol(path)
    if isinstance(stripped, list):  # pragma: no cover - only for list inputs
        stripped = stripped[0]
    if len(stripped) > 1:
        stripped = stripped.rstrip("/")
    return stripped


def join_path(*parts: str) -> str:
    """Join non-empty parts with '/'."""
    cleaned = [p for p in parts if p]
    if not cleaned:
        return ""
    return posixpath.join(*cleaned)


def relative_to(path: str, base_dir: str) -> str:
    """
    Return path relative to base_dir, or path unchanged if it is not beneath it.

    Examples:
        >>> relative_to("/data/year=2018/a.json", "/data")
        'year=2018/a.json'
    """
    if not base_dir:
        return path.lstrip("/")
    prefix = base_dir.rstrip("/") + "/"
    if path.startswith(prefix):
        return path[len(prefix):]
    return path


def is_ignored(relative: str, prefixes: Sequence[str]) -> bool:
    """True if any component of a relative path starts with one of prefixes."""
    if not prefixes:
        return False
    return any(part.startswith(tuple(prefixes)) for part in relative.split("/") if part)


def directory_segments(relative: str) -> list[str]:
    """Split the directory part of a relative path into non-empty segments."""
    parts = [p for p in relative.split("/") if p]
    return parts[:-1]


def list_files(fs: fsspec.AbstractFileSystem, selector: FileSelector) -> list[str]:
    """
    List file paths matched by selector, sorted.

    Args:
        fs (fsspec.AbstractFileSystem): Filesystem to list.
        selector (FileSelector): Base dir and recursion flags.

    Returns:
        list[str]: Normalized file paths (directories excluded).

    Raises:
        DiscoveryError: base_dir is missing (unless allow_not_found) or listing failed.
    """
    base = normalize_path(fs, selector.base_dir)
    try:
        if not fs.exists(base):
            if selector.allow_not_found:
                return []
            raise DiscoveryError(f"selector base_dir {selector.base_dir!r} does not exist")
        if not fs.isdir(base):
            raise DiscoveryError(f"selector base_dir {selector.base_dir!r} is not a directory")
        if selector.recursive:
            paths = list(fs.find(base, withdirs=False))
        else:
            paths = [e["name"] for e in fs.ls(base, detail=True) if e.get("type") == "file"]
    except OSError as exc:
        raise DiscoveryError(f"failed to list {selector.base_dir!r}: {exc}") from exc
    return sorted(normalize_path(fs, p) for p in paths)


def open_output(fs: fsspec.AbstractFileSystem, path: str) -> IO[bytes]:
    """
    Create parent directories and open path for binary writing.

    Notes:
        Caller owns the returned handle and must close it.
    """
    parent = posixpath.dirname(path)
    if parent:
        fs.makedirs(parent, exist_ok=True)
    return fs.open(path, "wb")


def replace_atomic(fs: fsspec.AbstractFileSystem, src: str, dst: str) -> None:
    """Move src over dst (atomic on local filesystems)."""
    fs.mv(src, dst)
