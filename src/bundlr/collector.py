from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from packaging.utils import InvalidWheelFilename, parse_wheel_filename

from .config import BuildConfig, python_tag_from_version
from .errors import AssetError, DownloadError, HashMismatchError, HttpError, NoCompatibleWheelError
from .http_client import HttpClient
from .index import IndexClient, ReleaseFile
from .models import Asset, AssetBundle, AssetType, CollectionMetadata, PackageInfo
from .resolver import git_ref, github_archive_url, is_commit_sha
from .targets import TargetPlatform, platform_tags, primary_platform_tag

LOG = logging.getLogger(__name__)

PY3_BONUS = 10
NO_ABI_BONUS = 5


def score_wheel(filename: str, target_tags: Sequence[str]) -> int:
    """Score a wheel filename against ordered target platform tags (higher is better)."""
    parts = filename.split("-")
    if len(parts) < 4:
        return 0
    python_tag, abi_tag = parts[2], parts[3]
    platform_part = "-".join(parts[4:])
    if platform_part.endswith(".whl"):
        platform_part = platform_part[: -len(".whl")]

    score = 0
    for index, tag in enumerate(target_tags):
        if tag in platform_part:
            score += len(target_tags) - index
    if "py3" in python_tag:
        score += PY3_BONUS
    if abi_tag == "none":
        score += NO_ABI_BONUS
    return score


def matches_platform(filename: str, target_tags: Sequence[str]) -> bool:
    """True when one of the wheel's compressed platform tags is exactly a target tag."""
    stem = filename[: -len(".whl")] if filename.endswith(".whl") else filename
    parts = stem.split("-")
    if len(parts) < 5:
        return False
    wheel_tags = set(parts[-1].split("."))
    return any(tag in wheel_tags for tag in target_tags)


def interpreter_compatible(filename: str, python_tag: str) -> bool:
    try:
        _, _, _, tags = parse_wheel_filename(filename)
    except InvalidWheelFilename:
        return False
    minor = int(python_tag[3:]) if python_tag[3:].isdigit() else 0
    for tag in tags:
        interp = tag.interpreter
        if interp == python_tag or interp in {"py3", "py2.py3"}:
            return True
        if interp.startswith("py3") and interp[3:].isdigit() and int(interp[3:]) <= minor:
            return True
        if tag.abi == "abi3" and interp.startswith("cp3") and interp[3:].isdigit() and int(interp[3:]) <= minor:
            return True
    return False


def select_best_wheel(
    candidates: Iterable[ReleaseFile],
    target_tags: Sequence[str],
    python_tag: Optional[str] = None,
) -> ReleaseFile:
    best: Optional[ReleaseFile] = None
    best_score = -1
    for candidate in candidates:
        if not matches_platform(candidate.filename, target_tags):
            continue
        if python_tag and not interpreter_compatible(candidate.filename, python_tag):
            continue
        score = score_wheel(candidate.filename, target_tags)
        if score > best_score:
            best, best_score = candidate, score
    if best is None:
        raise NoCompatibleWheelError("No compatible binary artifact")
    return best


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return f"sha256:{digest.hexdigest()}"


def _normalize_hash(value: str) -> str:
    return value.lower() if value.lower().startswith("sha256:") else f"sha256:{value.lower()}"


class AssetCollector:
    def __init__(
        self,
        config: BuildConfig,
        *,
        index: Optional[IndexClient] = None,
        http: Optional[HttpClient] = None,
        fail_fast: Optional[bool] = None,
    ):
        self.config = config
        self.http = http or HttpClient(max_retries=config.http_retries, timeout=config.http_timeout)
        self.index = index or IndexClient(config.index, self.http)
        self.fail_fast = config.fail_fast if fail_fast is None else fail_fast
        self.download_root = config.cache_dir / "assets"

    def collect_assets(
        self,
        packages: List[PackageInfo],
        target: TargetPlatform,
        python_version: Optional[str] = None,
    ) -> AssetBundle:
        started = time.monotonic()
        python_tag = python_tag_from_version(python_version or self.config.python_version)
        dest_dir = self.download_root / target.value
        assets: List[Asset] = []
        errors: List[AssetError] = []
        hits = 0

        for package in packages:
            try:
                asset = self.locate_asset(package, target, python_tag)
                if self.fetch(asset, package, dest_dir):
                    hits += 1
            except AssetError as exc:
                if self.fail_fast:
                    raise
                LOG.error("Skipping %s: %s", package.pin, exc)
                errors.append(exc)
                continue
            assets.append(asset)

        if errors and not assets:
            raise errors[0]
        elapsed_ms = int((time.monotonic() - started) * 1000)
        return AssetBundle(
            assets=assets,
            total_size=sum(a.size_bytes for a in assets),
            target_platform=target,
            collection_metadata=CollectionMetadata(
                total_assets=len(assets),
                cache_hit_rate=hits / len(assets) if assets else 0.0,
                collection_time_ms=elapsed_ms,
            ),
        )

    def locate_asset(self, package: PackageInfo, target: TargetPlatform, python_tag: str) -> Asset:
        tags = [primary_platform_tag(target)]
        if package.wheel_url:
            return Asset(
                asset_type=_wheel_type(package.wheel_url.rsplit("/", 1)[-1]),
                package_name=package.name,
                remote_path=package.wheel_url,
                hash=package.wheel_hash,
                platform_tags=tags,
            )
        if package.source_url:
            return self._source_url_asset(package, tags)

        wheels = self.index.wheels(package.name, package.version)
        try:
            best = select_best_wheel(wheels, platform_tags(target), python_tag)
        except NoCompatibleWheelError:
            LOG.debug("No compatible wheel for %s on %s; looking for an sdist", package.pin, target.value)
        else:
            return Asset(
                asset_type=_wheel_type(best.filename),
                package_name=package.name,
                remote_path=best.url,
                size_bytes=best.size,
                hash=f"sha256:{best.sha256}" if best.sha256 else package.wheel_hash,
                platform_tags=tags,
            )

        sdist = self._sdist_release_file(package)
        if sdist is not None:
            return Asset(
                asset_type=AssetType.SOURCE,
                package_name=package.name,
                remote_path=sdist.url,
                size_bytes=sdist.size,
                hash=f"sha256:{sdist.sha256}" if sdist.sha256 else None,
                platform_tags=tags,
            )
        link = self.index.find_sdist_link(package.name, package.version)
        return Asset(
            asset_type=AssetType.SOURCE,
            package_name=package.name,
            remote_path=link or self.index.conventional_sdist_url(package.name, package.version),
            platform_tags=tags,
        )

    def _sdist_release_file(self, package: PackageInfo) -> Optional[ReleaseFile]:
        for release in self.index.release_files(package.name, package.version):
            if release.packagetype == "sdist" and release.filename.endswith(".tar.gz"):
                return release
        return None

    def _source_url_asset(self, package: PackageInfo, tags: List[str]) -> Asset:
        url = package.source_url or ""
        if url.startswith("git+"):
            repo_url = url[len("git+"):]
            archive = github_archive_url(repo_url)
            if archive is None:
                raise AssetError(f"Cannot fetch git source {url} without a GitHub archive URL", package=package.name)
            ref = git_ref(repo_url)
            pinned = is_commit_sha(ref)
            label = ref[:12].lower() if pinned else package.version
            return Asset(
                asset_type=AssetType.SOURCE,
                package_name=package.name,
                remote_path=f"{archive}#{package.name}-{label}.tar.gz",
                platform_tags=tags,
                reusable=pinned,
            )
        filename = url.rsplit("/", 1)[-1]
        asset_type = _wheel_type(filename) if filename.endswith(".whl") else AssetType.SOURCE
        return Asset(asset_type=asset_type, package_name=package.name, remote_path=url, platform_tags=tags)

    def fetch(self, asset: Asset, package: PackageInfo, dest_dir: Path) -> bool:
        """Download and verify ``asset``; returns True when a verified copy was already cached."""
        url, _, fragment = asset.remote_path.partition("#")
        local = dest_dir / (fragment or asset.filename)
        if local.exists() and not asset.reusable:
            LOG.debug("%s is not pinned to a commit; downloading again", local.name)
        elif local.exists():
            try:
                self._verify(asset, package, local)
            except HashMismatchError:
                LOG.debug("Cached %s failed verification; downloading again", local.name)
                local.unlink()
            else:
                self._mark_downloaded(asset, local)
                return True

        try:
            self.http.download_file(url, local)
        except HttpError as exc:
            raise DownloadError(f"Failed to download {url}: {exc}", package=package.name) from exc
        try:
            self._verify(asset, package, local)
        except HashMismatchError:
            local.unlink(missing_ok=True)
            raise
        self._mark_downloaded(asset, local)
        return False

    def _verify(self, asset: Asset, package: PackageInfo, path: Path) -> None:
        if not asset.hash and not package.hashes:
            return
        actual = sha256_file(path)
        if asset.hash and _normalize_hash(asset.hash) != actual:
            raise HashMismatchError(package.name, _normalize_hash(asset.hash), actual)
        allowed = {_normalize_hash(h) for h in package.hashes}
        if allowed and actual not in allowed:
            raise HashMismatchError(package.name, ", ".join(sorted(allowed)), actual)
        asset.hash = actual

    def _mark_downloaded(self, asset: Asset, path: Path) -> None:
        asset.local_path = path
        asset.size_bytes = path.stat().st_size


def _wheel_type(filename: str) -> AssetType:
    parts = filename.split("-")
    if len(parts) >= 4 and parts[3] != "none":
        return AssetType.COMPILED_EXTENSION
    return AssetType.WHEEL
