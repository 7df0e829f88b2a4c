from __future__ import annotations

import pyarrow as pa
import pytest

from partset.core.constants import HIVE_NULL_FALLBACK
from partset.core.expression import TRUE, field
from partset.dataset.errors import PartitionFormatError, PartitionParseError
from partset.dataset.partitioning import (
    DirectoryPartitioning,
    HivePartitioning,
    Partitioning,
    PartitioningFactory,
)

YEAR_MONTH = pa.schema([("year", pa.int32()), ("month", pa.int32())])


def test_directory_parse_is_positional_and_ignores_excess_segments():
    p = DirectoryPartitioning(YEAR_MONTH)
    assert p.parse(["2018", "01"]) == (field("year") == 2018) & (field("month") == 1)
    assert p.parse(["2018", "01", "extra", "more"]) == (field("year") == 2018) & (field("month") == 1)
    assert p.parse(["2018"]) == (field("year") == 2018)
    assert p.parse([]) == TRUE


def test_hive_parse_matches_by_name_in_any_order():
    p = HivePartitioning(YEAR_MONTH)
    expr = p.parse(["month=01", "other=x", "plain", "year=2018"])
    assert expr == (field("month") == 1) & (field("year") == 2018)
    assert p.parse(["unknown=1"]) == TRUE


def test_lenient_parse_drops_uncastable_segments():
    p = HivePartitioning(YEAR_MONTH)
    assert p.parse(["year=abc", "month=02"]) == (field("month") == 2)
    d = DirectoryPartitioning(YEAR_MONTH)
    assert d.parse(["abc", "02"]) == (field("month") == 2)


def test_strict_parse_raises_on_uncastable_segments():
    with pytest.raises(PartitionParseError):
        HivePartitioning(YEAR_MONTH, strict=True).parse(["year=abc"])
    with pytest.raises(PartitionParseError):
        DirectoryPartitioning(YEAR_MONTH, strict=True).parse(["2018", "jan"])


def test_format_is_inverse_of_parse():
    expr = (field("year") == 2018) & (field("month") == 1)
    assert DirectoryPartitioning(YEAR_MONTH).format(expr) == ["2018", "1"]
    assert HivePartitioning(YEAR_MONTH).format(expr) == ["year=2018", "month=1"]
    # Hive ignores conjunct order in the predicate; output follows the field order.
    reordered = (field("month") == 1) & (field("year") == 2018)
    assert HivePartitioning(YEAR_MONTH).format_path(reordered) == "year=2018/month=1"


def test_format_omits_fields_outside_the_partitioning():
    expr = (field("year") == 2018) & (field("month") == 1) & (field("country") == "US") & (field("sales") > 3)
    assert DirectoryPartitioning(YEAR_MONTH).format(expr) == ["2018", "1"]
    assert HivePartitioning(YEAR_MONTH).format(expr) == ["year=2018", "month=1"]


def test_empty_partitioning_formats_zero_segments():
    p = Partitioning.default()
    assert p.format((field("year") == 2018) & (field("country") == "US")) == []
    assert p.parse(["2018", "01"]) == TRUE


def test_reserved_characters_are_escaped_and_restored():
    schema = pa.schema([("region", pa.string())])
    hive = HivePartitioning(schema)
    segments = hive.format(field("region") == "a/b c=d")
    assert len(segments) == 1
    assert "/" not in segments[0]
    assert hive.parse(segments) == (field("region") == "a/b c=d")

    directory = DirectoryPartitioning(schema)
    assert directory.parse(directory.format(field("region") == "50%/x")) == (field("region") == "50%/x")


def test_directory_format_requires_a_leading_run_of_fields():
    p = DirectoryPartitioning(YEAR_MONTH)
    assert p.format(field("year") == 2018) == ["2018"]
    with pytest.raises(PartitionFormatError):
        p.format(field("month") == 1)
    with pytest.raises(PartitionFormatError):
        p.format(field("year").is_null() & (field("month") == 1))


def test_hive_null_fallback_round_trips():
    p = HivePartitioning(YEAR_MONTH)
    segments = p.format(field("year").is_null() & (field("month") == 1))
    assert segments == [f"year={HIVE_NULL_FALLBACK}", "month=1"]
    assert p.parse(segments) == field("year").is_null() & (field("month") == 1)


def test_parse_path_splits_on_separator():
    p = HivePartitioning(YEAR_MONTH)
    assert p.parse_path("year=2019/month=01/") == (field("year") == 2019) & (field("month") == 1)


def test_factory_infers_int32_or_string():
    factory = HivePartitioning.discover()
    schema = factory.inspect(
        [
            ["year=2018", "month=01"],
            ["year=2019", "month=jan", "country=US"],
        ]
    )
    assert schema.names == ["year", "month", "country"]
    assert schema.field("year").type == pa.int32()
    assert schema.field("month").type == pa.string()
    assert schema.field("country").type == pa.string()
    assert isinstance(factory.finish(schema), HivePartitioning)


def test_directory_factory_uses_given_names():
    factory = DirectoryPartitioning.discover(["year", "month"])
    schema = factory.inspect([["2018", "01"], ["2019", "12"]])
    assert schema.equals(YEAR_MONTH)
    assert factory.finish(schema).equals(DirectoryPartitioning(YEAR_MONTH))
    with pytest.raises(ValueError):
        PartitioningFactory("range")


def test_directory_format_rejects_values_that_collapse_paths():
    p = DirectoryPartitioning(pa.schema([("region", pa.string())]))
    for value in ("", ".", ".."):
        with pytest.raises(PartitionFormatError):
            p.format(field("region") == value)


def test_hive_value_spelled_like_null_token_stays_a_value():
    p = HivePartitioning(pa.schema([("region", pa.string())]))
    segments = p.format(field("region") == HIVE_NULL_FALLBACK)

    assert segments != [f"region={HIVE_NULL_FALLBACK}"]
    assert p.parse(segments) == (field("region") == HIVE_NULL_FALLBACK)
    assert p.parse(p.format(field("region").is_null())) == field("region").is_null()
