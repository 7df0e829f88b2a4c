"""
partset core defaults.

Defines scan, discovery, partitioning and write defaults consumed by the dataset
layer. This module is zero-IO and uses only the Python standard library.

Notes:
    - partset.dataset.config.DatasetSettings sources its defaults from here; change
      them here rather than in the settings class.
    - The counter placeholder is substituted into basename templates by the writer.
"""

from __future__ import annotations

from typing import Final

__all__ = [
    "BATCH_SIZE",
    "FRAGMENT_READAHEAD",
    "IGNORE_PREFIXES",
    "BASENAME_TEMPLATE",
    "COUNTER_PLACEHOLDER",
    "HIVE_NULL_FALLBACK",
    "ROW_GROUP_SIZE",
    "COMPRESSION",
    "MAX_DNF_TERMS",
    "MANIFEST_NAME",
]

# Maximum rows per batch yielded by a scan task.
BATCH_SIZE: Final[int] = 128 * 1024

# Number of fragments whose scan tasks are scheduled ahead of the consumer.
FRAGMENT_READAHEAD: Final[int] = 4

# Path components starting with any of these are skipped during discovery.
IGNORE_PREFIXES: Final[tuple[str, ...]] = (".", "_")

# Placeholder replaced by the per-directory file counter.
COUNTER_PLACEHOLDER: Final[str] = "{i}"

# Basename used for written files when none is configured.
BASENAME_TEMPLATE: Final[str] = "part-" + COUNTER_PLACEHOLDER

# Hive segment value standing for a null partition value.
HIVE_NULL_FALLBACK: Final[str] = "__HIVE_DEFAULT_PARTITION__"

# Parquet writer defaults.
ROW_GROUP_SIZE: Final[int] = 128 * 1024
COMPRESSION: Final[str] = "zstd"

# Upper bound on disjuncts explored by the satisfiability oracle before giving up.
MAX_DNF_TERMS: Final[int] = 64

# Write manifest file name; the leading underscore keeps it out of discovery.
MANIFEST_NAME: Final[str] = "_manifest.json"
