import argparse
from pathlib import Path

import pytest
from pydantic import ValidationError

from hli.config import IndexerSettings, cli_overrides_from_args


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ("HLI_WORKERS", "HLI_LOG_LEVEL", "HLI_DB_PATH", "HLI_LIBRARY_ROOTS", "HLI_ARTWORK_ENABLE"):
        monkeypatch.delenv(key, raising=False)


def test_defaults(tmp_path):
    cfg = IndexerSettings.load(config_path=tmp_path / "missing.toml")
    assert cfg.log_level == "INFO"
    assert cfg.workers is None
    assert cfg.follow_symlinks is True
    assert cfg.scan_conflict_policy == "reject"
    assert "flac" in cfg.extension_set
    assert "dsf" in cfg.extension_set
    assert cfg.config_path == tmp_path / "missing.toml"


def test_extensions_are_normalized():
    cfg = IndexerSettings(extensions=[".FLAC", "Wav", "flac"])
    assert cfg.extensions == ["flac", "wav"]


@pytest.mark.parametrize(
    "field, value",
    [("workers", 0), ("aggregate_batch_size", 0), ("extensions", []), ("scan_conflict_policy", "queue")],
)
def test_invalid_values(field, value):
    with pytest.raises(ValidationError):
        IndexerSettings(**{field: value})


def test_toml_file_and_overrides(tmp_path):
    cp = tmp_path / "config.toml"
    cp.write_text('workers = 3\nlog_level = "DEBUG"\nlibrary_roots = ["/srv/music"]\n', encoding="utf-8")

    cfg = IndexerSettings.load(config_path=cp)
    assert cfg.workers == 3
    assert cfg.log_level == "DEBUG"
    assert cfg.root_paths() == [Path("/srv/music")]

    cfg = IndexerSettings.load(config_path=cp, overrides={"workers": 8, "log_level": None})
    assert cfg.workers == 8
    assert cfg.log_level == "DEBUG"


def test_env_applies_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("HLI_WORKERS", "5")
    cfg = IndexerSettings.load(config_path=tmp_path / "missing.toml")
    assert cfg.workers == 5


def test_write_round_trip(tmp_path):
    cfg = IndexerSettings.load(config_path=tmp_path / "missing.toml", overrides={"workers": 2, "artwork_enable": False})
    target = cfg.write(tmp_path / "out" / "config.toml")
    assert target.exists()
    text = target.read_text(encoding="utf-8")
    assert "config_path" not in text
    # unset optionals are omitted
    assert "log_json" not in text

    again = IndexerSettings.load(config_path=target)
    assert again.workers == 2
    assert again.artwork_enable is False
    assert again.extensions == cfg.extensions


def test_cli_overrides_from_args():
    args = argparse.Namespace(workers=4, log_level=None, library_roots=["/a"], command="scan", quick=True)
    overrides = cli_overrides_from_args(args)
    assert overrides == {"workers": 4, "log_level": None, "library_roots": ["/a"]}
