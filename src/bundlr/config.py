from __future__ import annotations

import json
import os
import re
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .paths import cache_dir as system_cache_dir
from .targets import OptimizeLevel

DEFAULT_PYTHON_VERSION = "3.14"
DEFAULT_PYTHON_BUILD_RELEASE = "20251217"
DEFAULT_FULL_VERSIONS = {
    "3.14": "3.14.2",
    "3.13": "3.13.11",
    "3.12": "3.12.8",
}


class MockResolution(str, Enum):
    """Controls whether the offline mock resolver may stand in for uv."""

    OFF = "off"
    FALLBACK = "fallback"
    ALWAYS = "always"


@dataclass
class IndexSettings:
    json_api_url: str = "https://pypi.org/pypi"
    simple_url: str = "https://pypi.org/simple"
    files_url: str = "https://files.pythonhosted.org/packages/source"


@dataclass
class BuildConfig:
    cache_dir: Path
    python_version: str = DEFAULT_PYTHON_VERSION
    optimize_level: OptimizeLevel = OptimizeLevel.BALANCED
    mock_resolution: MockResolution = MockResolution.OFF
    fail_fast: bool = True
    index: IndexSettings = field(default_factory=IndexSettings)
    stub_compiler: List[str] = field(default_factory=lambda: ["zig", "cc"])
    stub_path: Optional[Path] = None
    extra_stdlib_exclusions: List[str] = field(default_factory=list)
    python_build_release: str = DEFAULT_PYTHON_BUILD_RELEASE
    python_full_versions: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FULL_VERSIONS))
    uv_version: Optional[str] = None
    http_retries: int = 3
    http_timeout: int = 30  # seconds

    @property
    def python_tag(self) -> str:
        """Return PEP 425 python tag (e.g. cp314) from the configured version."""
        return python_tag_from_version(self.python_version)

    def full_python_version(self, version: Optional[str] = None) -> str:
        version = version or self.python_version
        return self.python_full_versions.get(version, version)


def python_tag_from_version(version: str) -> str:
    match = re.fullmatch(r"(\d+)\.(\d+)", version.strip())
    if not match:
        raise ValueError(f"Invalid Python version '{version}'. Use format like 3.14.")
    major, minor = match.groups()
    return f"cp{major}{minor}"


def load_config(path: Optional[Path]) -> Dict:
    """Load a config file from TOML, JSON or YAML."""
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file {path} was not found.")
    if path.suffix in {".toml", ".tml"}:
        return tomllib.loads(path.read_text())
    if path.suffix in {".json"}:
        return json.loads(path.read_text())
    if path.suffix in {".yaml", ".yml"}:
        return yaml.safe_load(path.read_text()) or {}
    raise ValueError(f"Unsupported config format for {path}. Use TOML, JSON or YAML.")


def build_config(
    *,
    python_version: Optional[str] = None,
    cache_dir: Optional[Path] = None,
    config_file: Optional[Path] = None,
    optimize_level: Optional[str] = None,
    mock_resolution: Optional[str] = None,
    fail_fast: Optional[bool] = None,
    json_api_url: Optional[str] = None,
    simple_url: Optional[str] = None,
    stub_compiler: Optional[List[str]] = None,
    stub_path: Optional[Path] = None,
    extra_stdlib_exclusions: Optional[List[str]] = None,
    uv_version: Optional[str] = None,
    http_retries: Optional[int] = None,
    http_timeout: Optional[int] = None,
) -> BuildConfig:
    """Merge CLI inputs with any file-based configuration."""
    file_data = load_config(config_file)
    cfg = file_data.get("bundlr", {}) if isinstance(file_data, dict) else {}

    index_section = cfg.get("index", {})
    defaults = IndexSettings()
    index = IndexSettings(
        json_api_url=(json_api_url or index_section.get("json_api_url") or defaults.json_api_url).rstrip("/"),
        simple_url=(simple_url or index_section.get("simple_url") or defaults.simple_url).rstrip("/"),
        files_url=(index_section.get("files_url") or defaults.files_url).rstrip("/"),
    )

    final_python = python_version or cfg.get("python_version", DEFAULT_PYTHON_VERSION)
    python_tag_from_version(final_python)

    env_cache = os.environ.get("BUNDLR_CACHE_DIR")
    final_cache = cache_dir or (Path(env_cache) if env_cache else None)
    if final_cache is None and cfg.get("cache_dir"):
        final_cache = Path(cfg["cache_dir"]).expanduser()
    if final_cache is None:
        final_cache = system_cache_dir()

    cfg_stub_path = stub_path or cfg.get("stub_path")
    full_versions = dict(DEFAULT_FULL_VERSIONS)
    full_versions.update(cfg.get("python_full_versions", {}))

    return BuildConfig(
        cache_dir=Path(final_cache),
        python_version=final_python,
        optimize_level=OptimizeLevel(optimize_level or cfg.get("optimize_level", OptimizeLevel.BALANCED.value)),
        mock_resolution=MockResolution(mock_resolution or cfg.get("mock_resolution", MockResolution.OFF.value)),
        fail_fast=_maybe_bool(fail_fast, cfg.get("fail_fast", True)),
        index=index,
        stub_compiler=stub_compiler or cfg.get("stub_compiler", ["zig", "cc"]),
        stub_path=Path(cfg_stub_path) if cfg_stub_path else None,
        extra_stdlib_exclusions=extra_stdlib_exclusions or cfg.get("extra_stdlib_exclusions", []),
        python_build_release=cfg.get("python_build_release", DEFAULT_PYTHON_BUILD_RELEASE),
        python_full_versions=full_versions,
        uv_version=uv_version or cfg.get("uv_version"),
        http_retries=http_retries or cfg.get("http_retries", 3),
        http_timeout=http_timeout or cfg.get("http_timeout", 30),
    )


def _maybe_bool(cli_value: Optional[bool], cfg_value: Optional[bool]) -> bool:
    if cli_value is not None:
        return cli_value
    return bool(cfg_value) if cfg_value is not None else False
