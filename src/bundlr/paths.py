from __future__ import annotations

import os
import secrets
import sys
import time
from pathlib import Path

CACHE_DIR_NAME = "bundlr_cache"
_MAX_TEMP_ATTEMPTS = 100


def system_cache_root() -> Path:
    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA") or os.environ.get("TEMP")
        return Path(base) if base else Path.home() / "AppData" / "Local"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches"
    xdg = os.environ.get("XDG_CACHE_HOME")
    return Path(xdg) if xdg else Path.home() / ".cache"


def cache_dir() -> Path:
    """Cache root: ``BUNDLR_CACHE_DIR`` if set, else the platform cache dir."""
    override = os.environ.get("BUNDLR_CACHE_DIR")
    if override:
        return Path(override)
    return system_cache_root() / CACHE_DIR_NAME


def temp_root() -> Path:
    names = ("TMP", "TEMP") if sys.platform == "win32" else ("TMPDIR", "TMP")
    for name in names:
        value = os.environ.get(name)
        if value:
            return Path(value)
    return Path("C:\\Temp") if sys.platform == "win32" else Path("/tmp")


def make_temp_dir(purpose: str, *, root: Path | None = None) -> Path:
    """Create a fresh ``bundlr_<purpose>_<ts>_<rand>`` directory, retrying on collision."""
    base = root or temp_root()
    base.mkdir(parents=True, exist_ok=True)
    for _ in range(_MAX_TEMP_ATTEMPTS):
        candidate = base / f"bundlr_{purpose}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        try:
            candidate.mkdir()
        except FileExistsError:
            continue
        return candidate
    raise FileExistsError(f"Could not allocate a temporary directory under {base}")


def directory_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    total = 0
    for entry in path.rglob("*"):
        if entry.is_file() and not entry.is_symlink():
            total += entry.stat().st_size
    return total
