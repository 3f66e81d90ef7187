from __future__ import annotations

import logging
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

from . import __version__
from .errors import HttpError, InvalidUrlError, NetworkError, ServerError, TooManyRetriesError

LOG = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[int]], None]

_CHUNK_SIZE = 1024 * 64


class HttpClient:
    """urllib-based client with exponential backoff between attempts."""

    def __init__(
        self,
        *,
        max_retries: int = 3,
        timeout: int = 30,
        backoff_base: float = 1.0,
        user_agent: str = f"bundlr/{__version__}",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.user_agent = user_agent
        self._sleep = sleep

    def get(self, url: str, *, timeout: Optional[int] = None) -> bytes:
        return self._with_retries(url, lambda: self._read(url, timeout or self.timeout))

    def download_file(
        self,
        url: str,
        dest: Path,
        progress: Optional[ProgressCallback] = None,
        *,
        timeout: Optional[int] = None,
    ) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = dest.with_name(dest.name + ".part")

        def _attempt() -> Path:
            try:
                self._stream(url, partial, progress, timeout or self.timeout)
            except Exception:
                partial.unlink(missing_ok=True)
                raise
            partial.replace(dest)
            return dest

        return self._with_retries(url, _attempt)

    def _with_retries(self, url: str, call):
        _validate_url(url)
        last_error: Optional[HttpError] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return call()
            except ServerError as exc:
                # 4xx other than 429 is final
                if exc.status < 500 and exc.status != 429:
                    raise
                last_error = exc
            except NetworkError as exc:
                last_error = exc
            LOG.debug("Attempt %s/%s for %s failed: %s", attempt, self.max_retries, url, last_error)
            if attempt < self.max_retries:
                self._sleep(self.backoff_base * (2 ** (attempt - 1)))
        raise TooManyRetriesError(
            f"Giving up on {url} after {self.max_retries} attempts: {last_error}",
            url,
            attempts=self.max_retries,
            last_error=last_error,
        )

    def _request(self, url: str) -> urllib.request.Request:
        return urllib.request.Request(url, headers={"User-Agent": self.user_agent})

    def _read(self, url: str, timeout: int) -> bytes:
        try:
            with urllib.request.urlopen(self._request(url), timeout=timeout) as resp:  # noqa: S310
                return resp.read()
        except urllib.error.HTTPError as exc:
            raise ServerError(f"{url} responded {exc.code}", url, exc.code) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise NetworkError(f"Request to {url} failed: {exc}", url) from exc

    def _stream(self, url: str, dest: Path, progress: Optional[ProgressCallback], timeout: int) -> None:
        try:
            with urllib.request.urlopen(self._request(url), timeout=timeout) as resp, dest.open("wb") as fh:  # noqa: S310
                length = resp.headers.get("Content-Length")
                total = int(length) if length and length.isdigit() else None
                done = 0
                while True:
                    chunk = resp.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    fh.write(chunk)
                    done += len(chunk)
                    if progress:
                        progress(done, total)
        except urllib.error.HTTPError as exc:
            raise ServerError(f"{url} responded {exc.code}", url, exc.code) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise NetworkError(f"Download of {url} failed: {exc}", url) from exc


def _validate_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https", "file"} or (parsed.scheme != "file" and not parsed.netloc):
        raise InvalidUrlError(f"Invalid URL: {url!r}", url)

