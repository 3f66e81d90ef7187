from pathlib import Path

import pytest

from bundlr.config import MockResolution, build_config, load_config, python_tag_from_version
from bundlr.paths import CACHE_DIR_NAME
from bundlr.targets import OptimizeLevel


def test_build_config_merges_cli_and_file(tmp_path: Path):
    cfg_path = tmp_path / "config.toml"
    cfg_path.write_text(
        """
[bundlr]
python_version = "3.13"
optimize_level = "size"
mock_resolution = "fallback"
fail_fast = false
stub_compiler = ["clang"]
[bundlr.index]
json_api_url = "https://mirror.example/pypi/"
"""
    )
    cfg = build_config(python_version="3.12", config_file=cfg_path, cache_dir=tmp_path / "cache")
    assert cfg.python_version == "3.12"
    assert cfg.optimize_level is OptimizeLevel.SIZE
    assert cfg.mock_resolution is MockResolution.FALLBACK
    assert cfg.fail_fast is False
    assert cfg.stub_compiler == ["clang"]
    assert cfg.index.json_api_url == "https://mirror.example/pypi"
    assert cfg.index.simple_url == "https://pypi.org/simple"


def test_yaml_config_is_supported(tmp_path: Path):
    cfg_path = tmp_path / "bundlr.yaml"
    cfg_path.write_text("bundlr:\n  extra_stdlib_exclusions: [sqlite3, curses]\n  python_full_versions:\n    '3.14': 3.14.9\n")
    cfg = build_config(config_file=cfg_path, cache_dir=tmp_path)
    assert cfg.extra_stdlib_exclusions == ["sqlite3", "curses"]
    assert cfg.full_python_version("3.14") == "3.14.9"
    assert cfg.full_python_version("3.13") == "3.13.11"


def test_defaults(tmp_path: Path):
    cfg = build_config(cache_dir=tmp_path)
    assert cfg.python_version == "3.14"
    assert cfg.python_tag == "cp314"
    assert cfg.optimize_level is OptimizeLevel.BALANCED
    assert cfg.mock_resolution is MockResolution.OFF
    assert cfg.fail_fast is True
    assert cfg.http_retries == 3


def test_cache_dir_precedence(tmp_path: Path, monkeypatch):
    monkeypatch.setattr("bundlr.paths.system_cache_root", lambda: tmp_path / "xdg")
    assert build_config().cache_dir == tmp_path / "xdg" / CACHE_DIR_NAME

    monkeypatch.setenv("BUNDLR_CACHE_DIR", str(tmp_path / "env"))
    assert build_config().cache_dir == tmp_path / "env"
    assert build_config(cache_dir=tmp_path / "cli").cache_dir == tmp_path / "cli"


def test_cli_flag_overrides_file_bool(tmp_path: Path):
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text('{"bundlr": {"fail_fast": true}}')
    assert build_config(config_file=cfg_path, fail_fast=False, cache_dir=tmp_path).fail_fast is False


def test_invalid_python_version_is_rejected():
    with pytest.raises(ValueError, match="3.14"):
        python_tag_from_version("three")


def test_load_config_errors(tmp_path: Path):
    assert load_config(None) == {}
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.toml")
    ini = tmp_path / "config.ini"
    ini.write_text("[bundlr]\n")
    with pytest.raises(ValueError):
        load_config(ini)
