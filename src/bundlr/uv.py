from __future__ import annotations

import json
import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Optional

from .archive import extract, flatten_single_root
from .config import BuildConfig
from .errors import HttpError, ResolutionError
from .http_client import HttpClient
from .targets import distribution_triple, host_target

LOG = logging.getLogger(__name__)

FALLBACK_UV_VERSION = "0.9.18"
LATEST_RELEASE_API = "https://api.github.com/repos/astral-sh/uv/releases/latest"
RELEASE_BASE_URL = "https://github.com/astral-sh/uv/releases/download"


class UvManager:
    """Locates ``uv`` on PATH or downloads a release build into the cache."""

    def __init__(self, config: BuildConfig, *, http: Optional[HttpClient] = None):
        self.config = config
        self.http = http or HttpClient(max_retries=config.http_retries, timeout=config.http_timeout)
        self.root = config.cache_dir / "uv"
        self._resolved: Optional[Path] = None

    def ensure_uv(self) -> Path:
        if self._resolved:
            return self._resolved
        on_path = shutil.which("uv")
        if on_path:
            self._resolved = Path(on_path)
            return self._resolved

        version = self.config.uv_version or self.latest_version()
        host = host_target()
        if host is None:
            raise ResolutionError("uv is not on PATH and no prebuilt uv exists for this host")
        exe_name = "uv.exe" if host.is_windows else "uv"
        install_dir = self.root / version
        exe = install_dir / exe_name
        if exe.exists():
            self._resolved = exe
            return exe

        triple = distribution_triple(host)
        suffix = "zip" if host.is_windows else "tar.gz"
        asset = f"uv-{triple}.{suffix}"
        archive = self.root / asset
        LOG.info("Downloading uv %s (%s)", version, triple)
        try:
            self.http.download_file(f"{RELEASE_BASE_URL}/{version}/{asset}", archive)
            extract(archive, install_dir)
        except HttpError as exc:
            raise ResolutionError(f"Could not download uv {version}: {exc}") from exc
        finally:
            archive.unlink(missing_ok=True)
        flatten_single_root(install_dir)
        if not exe.exists():
            raise ResolutionError(f"uv archive {asset} did not contain {exe_name}")
        if os.name != "nt":
            exe.chmod(exe.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        self._resolved = exe
        return exe

    def latest_version(self) -> str:
        try:
            payload = json.loads(self.http.get(LATEST_RELEASE_API))
            tag = str(payload.get("tag_name", "")).lstrip("v")
        except (HttpError, ValueError) as exc:
            LOG.debug("Could not look up latest uv release: %s", exc)
            return FALLBACK_UV_VERSION
        return tag or FALLBACK_UV_VERSION
