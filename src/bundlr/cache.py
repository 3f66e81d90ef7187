from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Dict, Optional, Protocol

LOG = logging.getLogger(__name__)


class ArtifactCache(Protocol):
    def get(self, key: str) -> Optional[Path]:
        ...

    def put(self, key: str, source: Path) -> Path:
        ...


class FileArtifactCache:
    """Stores artifacts as ``<root>/<key>``; zero-length entries count as misses."""

    def __init__(self, root: Path):
        self.root = root

    def get(self, key: str) -> Optional[Path]:
        path = self.root / key
        try:
            if path.is_file() and path.stat().st_size > 0:
                return path
        except OSError as exc:
            LOG.debug("Cache lookup for %s failed: %s", key, exc)
        return None

    def put(self, key: str, source: Path) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        dest = self.root / key
        if source.resolve() != dest.resolve():
            tmp = dest.with_name(dest.name + ".tmp")
            shutil.copyfile(source, tmp)
            tmp.replace(dest)
        return dest


class MemoryArtifactCache:
    """Keeps key -> path references without copying; handy in tests."""

    def __init__(self):
        self.entries: Dict[str, Path] = {}

    def get(self, key: str) -> Optional[Path]:
        path = self.entries.get(key)
        if path is not None and path.exists():
            return path
        return None

    def put(self, key: str, source: Path) -> Path:
        self.entries[key] = source
        return source
