from __future__ import annotations

import logging
import shutil
import sys
import tarfile
from pathlib import Path
from typing import Optional
from zipfile import ZipFile

from .errors import ArchiveError
from .process import ProcessRunner

LOG = logging.getLogger(__name__)

_TAR_SUFFIXES = (".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tar")


def extract(archive_path: Path, dest_dir: Path) -> None:
    """Extract an archive into ``dest_dir``; the format is chosen from the filename suffix."""
    name = archive_path.name.lower()
    dest_dir.mkdir(parents=True, exist_ok=True)
    if name.endswith(".zip"):
        with ZipFile(archive_path) as zf:
            zf.extractall(dest_dir)
        return
    if name.endswith(_TAR_SUFFIXES):
        with tarfile.open(archive_path) as tf:
            tf.extractall(dest_dir, filter="data")
        return
    raise ArchiveError(f"Unsupported archive format: {archive_path}")


def flatten_single_root(dest_dir: Path) -> Path:
    """If ``dest_dir`` holds exactly one directory, move its children up a level."""
    entries = list(dest_dir.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        return dest_dir
    wrapper = entries[0]
    staging = dest_dir.with_name(dest_dir.name + ".flatten")
    wrapper.rename(staging)
    for child in staging.iterdir():
        child.rename(dest_dir / child.name)
    staging.rmdir()
    return dest_dir


class Archiver:
    """Creates ``.tar.gz`` archives by shelling out to the host's archiver."""

    def __init__(self, runner: Optional[ProcessRunner] = None, *, use_powershell: Optional[bool] = None):
        self.runner = runner or ProcessRunner()
        self.use_powershell = sys.platform == "win32" if use_powershell is None else use_powershell

    def create(self, source_dir: Path, archive_path: Path) -> Path:
        """Archive ``source_dir`` (as a single top-level entry) into ``archive_path``."""
        if not source_dir.exists():
            raise ArchiveError(f"Nothing to archive at {source_dir}")
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        archive_path.unlink(missing_ok=True)
        if self.use_powershell and self._compress_archive(source_dir, archive_path):
            return archive_path
        return self._tar(source_dir, archive_path)

    def _tar(self, source_dir: Path, archive_path: Path) -> Path:
        code = self.runner.run(["tar", "-C", str(source_dir.parent), "-czf", str(archive_path), source_dir.name])
        if code != 0 or not archive_path.exists():
            archive_path.unlink(missing_ok=True)
            raise ArchiveError(f"tar failed with exit code {code} while archiving {source_dir}")
        return archive_path

    def _compress_archive(self, source_dir: Path, archive_path: Path) -> bool:
        if shutil.which("powershell") is None:
            LOG.debug("powershell not found; falling back to tar")
            return False
        zip_path = archive_path.with_suffix(".zip")
        command = (
            f"& {{Compress-Archive -LiteralPath '{source_dir}' -DestinationPath '{zip_path}' "
            "-CompressionLevel Fastest -Force}"
        )
        code = self.runner.run(["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command", command])
        if code != 0 or not zip_path.exists():
            zip_path.unlink(missing_ok=True)
            LOG.warning("Compress-Archive failed (exit %s); falling back to tar", code)
            return False
        # The bundled bsdtar on Windows detects zip content regardless of the name.
        zip_path.replace(archive_path)
        return True
