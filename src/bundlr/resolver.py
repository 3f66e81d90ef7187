from __future__ import annotations

import logging
import re
import shutil
import time
from typing import Dict, List, Optional, Tuple

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name

from .config import BuildConfig, MockResolution
from .errors import ResolutionError
from .models import DependencyTree, PackageInfo, ResolutionMetadata
from .paths import make_temp_dir
from .process import ProcessRunner
from .targets import TargetPlatform, uv_platform
from .uv import UvManager

LOG = logging.getLogger(__name__)

PLACEHOLDER_VERSION = "1.0.0"
MOCK_DEPENDENCY_VERSION = "2.0.0"
MOCK_DEPENDENCIES: Dict[str, Tuple[str, ...]] = {
    "httpie": ("requests", "urllib3", "certifi", "charset-normalizer"),
    "requests": ("urllib3", "certifi", "charset-normalizer"),
}

_HASH_RE = re.compile(r"--hash=sha256:([0-9a-fA-F]{64})")
_SCP_GIT_RE = re.compile(r"^git@(?P<host>[^:]+):(?P<path>.+)$")
_COMMIT_RE = re.compile(r"^[0-9a-fA-F]{40}$")
_GITHUB_RE = re.compile(r"github\.com[/:](?P<owner>[^/]+)/(?P<repo>[^/#@]+?)(?:\.git)?(?:@(?P<ref>[^#]+))?(?:#.*)?$")


def is_git_reference(package_ref: str) -> bool:
    ref = package_ref.strip()
    if ref.startswith(("http://", "https://", "git@", "git+")):
        return True
    return "github.com" in ref or "gitlab.com" in ref


def derive_package_name(package_ref: str) -> str:
    """Project name for a registry name or the repository name of a URL."""
    ref = package_ref.strip()
    if "://" not in ref and not ref.startswith("git@"):
        return ref
    tail = ref.rstrip("/").split("#", 1)[0]
    tail = tail.rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    tail = tail.split("@", 1)[0]
    return tail[: -len(".git")] if tail.endswith(".git") else tail


def requirement_line(package_ref: str) -> str:
    ref = package_ref.strip()
    if not is_git_reference(ref):
        return ref
    if ref.startswith("git+"):
        return ref
    scp = _SCP_GIT_RE.match(ref)
    if scp:
        return f"git+ssh://git@{scp.group('host')}/{scp.group('path')}"
    if "://" not in ref:
        ref = f"https://{ref}"
    return f"git+{ref}"


def github_archive_url(package_ref: str) -> Optional[str]:
    match = _GITHUB_RE.search(package_ref.strip().rstrip("/"))
    if not match:
        return None
    # archive/<ref> accepts a commit, branch or tag; HEAD is the default branch
    ref = match.group("ref") or "HEAD"
    return f"https://github.com/{match.group('owner')}/{match.group('repo')}/archive/{ref}.tar.gz"


def git_ref(package_ref: str) -> Optional[str]:
    """The ``@ref`` pinned on a GitHub URL, usually the commit sha ``uv pip compile`` locked."""
    match = _GITHUB_RE.search(package_ref.strip().rstrip("/"))
    return match.group("ref") if match else None


def is_commit_sha(ref: Optional[str]) -> bool:
    return bool(ref and _COMMIT_RE.match(ref))


def _repo_key(url: str) -> str:
    """Host and path of a git URL without scheme, user, ref, fragment or ``.git``."""
    url = requirement_line(url).removeprefix("git+")
    url = url.split("#", 1)[0].rstrip("/").split("://", 1)[-1]
    host, _, path = url.partition("/")
    host = host.rsplit("@", 1)[-1]
    path = path.partition("@")[0].removesuffix(".git")
    return f"{host}/{path}".lower()


def parse_lock(text: str) -> List[PackageInfo]:
    """Parse a hash-pinned requirements file as written by ``uv pip compile``."""
    packages: List[PackageInfo] = []
    for line in _logical_lines(text):
        requirement_text, _, _ = line.partition(" --")
        try:
            req = Requirement(requirement_text.strip())
        except InvalidRequirement:
            LOG.debug("Skipping unparsable lock line: %s", line)
            continue
        pins = [s.version for s in req.specifier if s.operator in {"==", "==="}]
        hashes = [f"sha256:{h.lower()}" for h in _HASH_RE.findall(line)]
        packages.append(
            PackageInfo(
                name=req.name,
                version=pins[0] if pins else "",
                hashes=hashes,
                source_url=req.url,
            )
        )
    return packages


def _logical_lines(text: str) -> List[str]:
    lines: List[str] = []
    current = ""
    for raw in text.splitlines():
        stripped = raw.split(" #", 1)[0].strip() if not raw.lstrip().startswith("#") else ""
        if not stripped:
            if current:
                lines.append(current.strip())
                current = ""
            continue
        if stripped.endswith("\\"):
            current += stripped[:-1].strip() + " "
            continue
        current += stripped
        lines.append(current.strip())
        current = ""
    if current:
        lines.append(current.strip())
    return lines


def _pin_for_repository(pinned: List[PackageInfo], package_ref: str) -> Optional[PackageInfo]:
    """The lock entry installed from ``package_ref``'s repository, whatever the project calls itself."""
    key = _repo_key(package_ref)
    from_git = [p for p in pinned if p.source_url and p.source_url.startswith("git+")]
    for pkg in from_git:
        if _repo_key(pkg.source_url) == key:
            return pkg
    return from_git[0] if len(from_git) == 1 else None


class DependencyResolver:
    def __init__(
        self,
        config: BuildConfig,
        *,
        uv: Optional[UvManager] = None,
        runner: Optional[ProcessRunner] = None,
    ):
        self.config = config
        self.uv = uv or UvManager(config)
        self.runner = runner or ProcessRunner()

    def resolve_dependencies(
        self,
        package_ref: str,
        target: TargetPlatform,
        python_version: Optional[str] = None,
        exclude_dev: bool = False,
    ) -> DependencyTree:
        python_version = python_version or self.config.python_version
        mode = self.config.mock_resolution
        if mode is MockResolution.ALWAYS:
            return self.mock_resolution(package_ref, target, python_version, exclude_dev)
        try:
            return self._resolve_with_uv(package_ref, target, python_version, exclude_dev)
        except ResolutionError as exc:
            if mode is MockResolution.FALLBACK:
                LOG.warning("uv resolution failed for %s (%s); falling back to mock data", package_ref, exc)
                return self.mock_resolution(package_ref, target, python_version, exclude_dev)
            raise

    def _resolve_with_uv(
        self,
        package_ref: str,
        target: TargetPlatform,
        python_version: str,
        exclude_dev: bool,
    ) -> DependencyTree:
        uv_exe = self.uv.ensure_uv()
        root_name = derive_package_name(package_ref)
        work_dir = make_temp_dir("resolve")
        try:
            (work_dir / "requirements.in").write_text(requirement_line(package_ref) + "\n")
            cmd = [
                str(uv_exe),
                "pip",
                "compile",
                "requirements.in",
                "--output-file",
                "requirements.txt",
                "--python-version",
                python_version,
            ]
            platform = uv_platform(target)
            if platform:
                cmd.extend(["--python-platform", platform])
            if exclude_dev:
                cmd.append("--no-deps")
            cmd.append("--generate-hashes")
            result = self.runner.capture(cmd, cwd=work_dir)
            if result.exit_code != 0:
                raise ResolutionError(
                    f"uv pip compile exited {result.exit_code}: {result.stderr.strip() or 'no output'}"
                )
            lock_path = work_dir / "requirements.txt"
            if not lock_path.exists():
                raise ResolutionError("uv pip compile did not write requirements.txt")
            lock_text = lock_path.read_text()
        except OSError as exc:
            raise ResolutionError(f"Could not run resolver for {package_ref}: {exc}") from exc
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        packages = self._order_with_root(root_name, parse_lock(lock_text), package_ref)
        LOG.debug("Resolved %s to %s", package_ref, ", ".join(p.pin for p in packages))
        if canonicalize_name(packages[0].name) != canonicalize_name(root_name):
            # a repository named differently from the project it installs
            root_name = packages[0].name
        return DependencyTree(
            root_package=root_name,
            packages=packages,
            resolution_metadata=ResolutionMetadata(
                python_version=python_version,
                target_platform=target,
                resolution_time=int(time.time()),
                exclude_dev_deps=exclude_dev,
            ),
        )

    def _order_with_root(self, root_name: str, pinned: List[PackageInfo], package_ref: str) -> List[PackageInfo]:
        key = canonicalize_name(root_name)
        root: Optional[PackageInfo] = None
        others: List[PackageInfo] = []
        for pkg in pinned:
            if root is None and canonicalize_name(pkg.name) == key:
                root = pkg
            else:
                others.append(pkg)
        if root is None and is_git_reference(package_ref):
            root = _pin_for_repository(others, package_ref)
            if root is not None:
                LOG.info("Repository %s provides project %s", root_name, root.name)
                others.remove(root)
        if root is None:
            LOG.warning("Lock output has no pin for %s; using version %s", root_name, PLACEHOLDER_VERSION)
            root = PackageInfo(name=root_name, version=PLACEHOLDER_VERSION)
        elif not root.version:
            LOG.warning("Malformed lock entry for %s; using version %s", root_name, PLACEHOLDER_VERSION)
            root.version = PLACEHOLDER_VERSION
        if is_git_reference(package_ref) and root.source_url is None:
            root.source_url = requirement_line(package_ref)
        root.dependencies = [p for p in others if p.version]
        return [root, *root.dependencies]

    def mock_resolution(
        self,
        package_ref: str,
        target: TargetPlatform,
        python_version: str,
        exclude_dev: bool = False,
    ) -> DependencyTree:
        """Deterministic stand-in tree for offline runs; never a real resolution."""
        name = derive_package_name(package_ref)
        deps = [
            PackageInfo(name=dep, version=MOCK_DEPENDENCY_VERSION)
            for dep in MOCK_DEPENDENCIES.get(canonicalize_name(name), ())
        ]
        root = PackageInfo(name=name, version=PLACEHOLDER_VERSION, dependencies=deps)
        LOG.warning("MOCK resolution for %s on %s: %s synthetic package(s)", name, target.value, 1 + len(deps))
        return DependencyTree(
            root_package=name,
            packages=[root, *deps],
            resolution_metadata=ResolutionMetadata(
                python_version=python_version,
                target_platform=target,
                resolution_time=int(time.time()),
                exclude_dev_deps=exclude_dev,
                mocked=True,
            ),
        )
