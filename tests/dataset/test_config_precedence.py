from __future__ import annotations

from pathlib import Path

from partset.dataset.config import DatasetSettings

_KEYS = [
    "PARTSET_BATCH_SIZE",
    "PARTSET_USE_THREADS",
    "PARTSET_COMPRESSION",
    "PARTSET_IGNORE_PREFIXES",
    "PARTSET_STRICT_PARTITIONING",
    "PARTSET_BASENAME_TEMPLATE",
]


def _write_partset_toml(tmp: Path, content: str) -> Path:
    p = tmp / "partset.toml"
    p.write_text(content)
    return p


def _clear_env(monkeypatch) -> None:
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)


def test_dataset_settings_precedence_env_over_toml(tmp_path: Path, monkeypatch) -> None:
    # Arrange TOML
    _write_partset_toml(
        tmp_path,
        """
        [dataset]
        batch_size = 256
        compression = "lz4"
        use_threads = true
        """.strip(),
    )
    monkeypatch.chdir(tmp_path)
    _clear_env(monkeypatch)
    # Arrange ENV that should override TOML
    monkeypatch.setenv("PARTSET_BATCH_SIZE", "512")
    monkeypatch.setenv("PARTSET_COMPRESSION", "zstd")
    monkeypatch.setenv("PARTSET_USE_THREADS", "off")

    # Act
    s = DatasetSettings.load()

    # Assert precedence: env > TOML
    assert s.batch_size == 512
    assert s.compression == "zstd"
    assert s.use_threads is False


def test_dataset_settings_from_toml_when_no_env(tmp_path: Path, monkeypatch) -> None:
    _write_partset_toml(
        tmp_path,
        """
        [dataset]
        batch_size = 128
        compression = "snappy"
        strict_partitioning = true
        ignore_prefixes = [".", "_", "~"]
        basename_template = "chunk-{i}"
        """.strip(),
    )
    monkeypatch.chdir(tmp_path)
    _clear_env(monkeypatch)

    s = DatasetSettings.load()

    assert s.batch_size == 128
    assert s.compression == "snappy"
    assert s.strict_partitioning is True
    assert s.ignore_prefixes == (".", "_", "~")
    assert s.basename_template == "chunk-{i}"


def test_dataset_settings_from_pyproject_tool_table(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / "pyproject.toml").write_text(
        """
        [tool.partset]
        fragment_readahead = 2
        exclude_invalid_files = "yes"
        """.strip()
    )
    monkeypatch.chdir(tmp_path)
    _clear_env(monkeypatch)

    s = DatasetSettings.load()

    assert s.fragment_readahead == 2
    assert s.exclude_invalid_files is True


def test_dataset_settings_ignore_invalid_values(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _clear_env(monkeypatch)
    monkeypatch.setenv("PARTSET_BATCH_SIZE", "-3")
    monkeypatch.setenv("PARTSET_COMPRESSION", "brotli")
    monkeypatch.setenv("PARTSET_IGNORE_PREFIXES", ".,~")

    s = DatasetSettings.load()

    assert s.batch_size == DatasetSettings().batch_size
    assert s.compression == DatasetSettings().compression
    assert s.ignore_prefixes == (".", "~")


def test_dataset_settings_defaults_when_no_config(tmp_path: Path, monkeypatch) -> None:
    # No TOML, no env
    monkeypatch.chdir(tmp_path)
    _clear_env(monkeypatch)

    s = DatasetSettings.load()

    # Defaults from DatasetSettings / partset.core.constants
    assert s.ignore_prefixes == (".", "_")
    assert s.basename_template == "part-{i}"
    assert s.use_threads is True
    assert s.compression in {"zstd", "lz4", "snappy", "gzip", "none"}
    assert s.filesystem().protocol in ("file", ("file", "local"))


def test_dataset_settings_explicit_toml_path(tmp_path: Path) -> None:
    good = tmp_path / "custom.toml"
    good.write_text("batch_size = 64\nuse_threads = false\n")
    broken = tmp_path / "broken.toml"
    broken.write_text("batch_size = [unterminated\n")

    s = DatasetSettings.from_toml(good)

    assert s.batch_size == 64
    assert s.use_threads is False
    assert DatasetSettings.from_toml(broken) == DatasetSettings()
