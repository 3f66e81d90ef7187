from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from .archive import extract, flatten_single_root
from .config import BuildConfig
from .errors import DistributionError, HttpError
from .http_client import HttpClient
from .targets import TargetPlatform, distribution_triple

LOG = logging.getLogger(__name__)

RELEASE_BASE_URL = "https://github.com/astral-sh/python-build-standalone/releases/download"
DOWNLOAD_TIMEOUT = 60  # seconds
_COMPLETE_MARKER = ".bundlr-complete"


def distribution_url(full_version: str, release: str, target: TargetPlatform) -> str:
    triple = distribution_triple(target)
    filename = f"cpython-{full_version}+{release}-{triple}-install_only.tar.gz"
    return f"{RELEASE_BASE_URL}/{release}/{filename}"


class DistributionManager:
    """Fetches python-build-standalone install trees for a target platform."""

    def __init__(self, config: BuildConfig, *, http: Optional[HttpClient] = None):
        self.config = config
        self.http = http or HttpClient(max_retries=config.http_retries, timeout=DOWNLOAD_TIMEOUT)
        self.root = config.cache_dir / "python"

    def install_dir(self, python_version: str, target: TargetPlatform) -> Path:
        return self.root / target.value / python_version

    def ensure_distribution(self, python_version: str, target: TargetPlatform) -> Path:
        dest = self.install_dir(python_version, target)
        if (dest / _COMPLETE_MARKER).exists():
            LOG.debug("Using cached Python %s for %s at %s", python_version, target.value, dest)
            return dest

        full_version = self.config.full_python_version(python_version)
        url = distribution_url(full_version, self.config.python_build_release, target)
        LOG.info("Downloading Python %s for %s", full_version, target.value)
        archive = dest.parent / f"{python_version}.download.tar.gz"
        staging = dest.parent / f"{python_version}.extracting"
        try:
            self.http.download_file(url, archive, timeout=DOWNLOAD_TIMEOUT)
            if staging.exists():
                shutil.rmtree(staging)
            extract(archive, staging)
            flatten_single_root(staging)
            if dest.exists():
                shutil.rmtree(dest)
            staging.rename(dest)
            (dest / _COMPLETE_MARKER).write_text(url)
        except HttpError as exc:
            raise DistributionError(f"Could not download Python {full_version} for {target.value}: {exc}") from exc
        finally:
            archive.unlink(missing_ok=True)
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        return dest
