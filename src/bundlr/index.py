from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from html.parser import HTMLParser
from typing import List, Optional, Tuple
from urllib.parse import urljoin

from packaging.utils import canonicalize_name

from .config import IndexSettings
from .errors import HttpError
from .http_client import HttpClient

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseFile:
    filename: str
    url: str
    packagetype: str
    sha256: Optional[str] = None
    size: int = 0


class _AnchorCollector(HTMLParser):
    def __init__(self):
        super().__init__()
        self.hrefs: List[str] = []

    def handle_starttag(self, tag, attrs):
        if tag != "a":
            return
        for key, value in attrs:
            if key == "href" and value:
                self.hrefs.append(value)


class IndexClient:
    """Reads release metadata from the PyPI JSON API and simple index pages."""

    def __init__(self, index: IndexSettings, http: Optional[HttpClient] = None):
        self.index = index
        self.http = http or HttpClient()

    @lru_cache(maxsize=None)
    def release_files(self, project: str, version: str) -> Tuple[ReleaseFile, ...]:
        url = f"{self.index.json_api_url}/{project}/{version}/json"
        try:
            payload = json.loads(self.http.get(url))
        except (HttpError, ValueError) as exc:
            LOG.debug("Failed to query release files for %s==%s: %s", project, version, exc)
            return ()

        files = []
        for entry in payload.get("urls", []):
            if not entry.get("filename") or not entry.get("url"):
                continue
            digests = entry.get("digests") or {}
            files.append(
                ReleaseFile(
                    filename=entry["filename"],
                    url=entry["url"],
                    packagetype=entry.get("packagetype", ""),
                    sha256=digests.get("sha256"),
                    size=int(entry.get("size") or 0),
                )
            )
        return tuple(files)

    def wheels(self, project: str, version: str) -> List[ReleaseFile]:
        return [f for f in self.release_files(project, version) if f.packagetype == "bdist_wheel"]

    def find_sdist_link(self, project: str, version: str) -> Optional[str]:
        """Scan the simple index page for the expected ``.tar.gz`` anchor."""
        page_url = f"{self.index.simple_url}/{canonicalize_name(project)}/"
        try:
            html = self.http.get(page_url).decode("utf-8", errors="replace")
        except HttpError as exc:
            LOG.debug("Failed to read index page %s: %s", page_url, exc)
            return None

        parser = _AnchorCollector()
        parser.feed(html)
        expected = {f"{name}-{version}.tar.gz" for name in _sdist_name_variants(project)}
        for href in parser.hrefs:
            link = href.split("#", 1)[0]
            if link.rsplit("/", 1)[-1] in expected:
                return urljoin(page_url, link)
        return None

    def conventional_sdist_url(self, project: str, version: str) -> str:
        return f"{self.index.files_url}/{project[0]}/{project}/{project}-{version}.tar.gz"


def _sdist_name_variants(project: str) -> List[str]:
    normalized = canonicalize_name(project).replace("-", "_")
    return list(dict.fromkeys([project, normalized]))
