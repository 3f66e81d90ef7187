from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .archive import Archiver
from .cache import ArtifactCache, FileArtifactCache
from .config import BuildConfig
from .distribution import DistributionManager
from .models import RuntimeBundle, RuntimeMetadata
from .paths import directory_size, make_temp_dir
from .process import ProcessRunner
from .targets import (
    OptimizeLevel,
    TargetPlatform,
    host_target,
    python_executable_path,
    site_packages_path,
    stdlib_path,
)

LOG = logging.getLogger(__name__)

COMMON_EXCLUSIONS = ("tkinter", "turtle", "turtledemo", "idlelib", "lib2to3", "test", "tests")
SIZE_EXCLUSIONS = ("pydoc", "pydoc_data", "doctest", "unittest", "distutils", "ensurepip")
CLEANUP_DIRS = ("__pycache__", "test", "tests", "include")
CLEANUP_FILES = ("*.pyc", "*.pdb", "*.a")
# relative to the runtime root
DOC_DIRS = ("share/man", "share/doc", "share/info", "Doc")


def runtime_cache_key(python_version: str, target: TargetPlatform, level: OptimizeLevel) -> str:
    return f"runtime_{python_version}_{target.value}_{level.value}.tar.gz"


def compression_ratio(original_size: int, optimized_size: int) -> float:
    if original_size <= 0:
        return 0.0
    return (1 - optimized_size / original_size) * 100


@dataclass
class OptimizationContext:
    root: Path
    target: TargetPlatform
    python_version: str
    excluded_modules: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def stdlib(self) -> Path:
        return self.root / stdlib_path(self.target, self.python_version)

    @property
    def interpreter(self) -> Path:
        return self.root / python_executable_path(self.target)


class RuntimeEmbedder:
    def __init__(
        self,
        config: BuildConfig,
        *,
        cache: Optional[ArtifactCache] = None,
        distributions: Optional[DistributionManager] = None,
        archiver: Optional[Archiver] = None,
        runner: Optional[ProcessRunner] = None,
    ):
        self.config = config
        self.archive_dir = config.cache_dir / "runtimes"
        self.cache = cache or FileArtifactCache(self.archive_dir)
        self.distributions = distributions or DistributionManager(config)
        self.runner = runner or ProcessRunner()
        self.archiver = archiver or Archiver(self.runner)
        self.strategies: Dict[OptimizeLevel, List[Callable[[OptimizationContext], None]]] = {
            OptimizeLevel.SIZE: [self._strip_artifacts, self._remove_modules, self._compile_bytecode],
            OptimizeLevel.SPEED: [self._precompile_optimized],
            OptimizeLevel.COMPATIBILITY: [],
            OptimizeLevel.BALANCED: [
                self._strip_artifacts,
                self._remove_modules,
                self._compile_bytecode,
                self._precompile_optimized,
            ],
        }

    def excluded_modules(self, level: OptimizeLevel) -> List[str]:
        modules = list(COMMON_EXCLUSIONS)
        if level is OptimizeLevel.SIZE:
            modules.extend(SIZE_EXCLUSIONS)
        modules.extend(m for m in self.config.extra_stdlib_exclusions if m not in modules)
        return modules

    def create_runtime_bundle(
        self,
        python_version: str,
        target: TargetPlatform,
        optimize_level: OptimizeLevel = OptimizeLevel.BALANCED,
    ) -> RuntimeBundle:
        key = runtime_cache_key(python_version, target, optimize_level)
        cached = self.cache.get(key)
        if cached is not None:
            LOG.info("Using cached runtime %s", key)
            size = cached.stat().st_size
            return self._bundle(cached, python_version, target, optimize_level, size, size, cached=True)

        base = self.distributions.ensure_distribution(python_version, target)
        original_size = directory_size(base)
        scratch = make_temp_dir("runtime")
        try:
            work = scratch / "python"
            shutil.copytree(base, work, symlinks=True)
            ctx = OptimizationContext(
                root=work,
                target=target,
                python_version=python_version,
                excluded_modules=self.excluded_modules(optimize_level),
            )
            for step in self.strategies[optimize_level]:
                step(ctx)
            if ctx.removed:
                LOG.debug("Removed %s paths from runtime", len(ctx.removed))

            partial = self.archive_dir / f"{key}.partial"
            try:
                archive = self.archiver.create(work, partial)
            except Exception:
                partial.unlink(missing_ok=True)
                raise
            stored = self.cache.put(key, archive.replace(self.archive_dir / key))
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        optimized_size = stored.stat().st_size
        LOG.info(
            "Runtime %s for %s: %s -> %s bytes (%.1f%% smaller)",
            python_version,
            target.value,
            original_size,
            optimized_size,
            compression_ratio(original_size, optimized_size),
        )
        return self._bundle(stored, python_version, target, optimize_level, original_size, optimized_size)

    def _bundle(
        self,
        path: Path,
        python_version: str,
        target: TargetPlatform,
        level: OptimizeLevel,
        original_size: int,
        optimized_size: int,
        *,
        cached: bool = False,
    ) -> RuntimeBundle:
        return RuntimeBundle(
            runtime_path=path,
            size_bytes=optimized_size,
            python_exe_path=python_executable_path(target),
            site_packages_path=site_packages_path(target, python_version),
            metadata=RuntimeMetadata(
                python_version=python_version,
                target_platform=target,
                optimize_level=level,
                original_size=original_size,
                optimized_size=optimized_size,
                compression_ratio=compression_ratio(original_size, optimized_size),
            ),
            cached=cached,
        )

    def _strip_artifacts(self, ctx: OptimizationContext) -> None:
        for relative in DOC_DIRS:
            docs = ctx.root / relative
            if docs.is_dir() and not docs.is_symlink():
                shutil.rmtree(docs, ignore_errors=True)
                ctx.removed.append(str(docs))
        for name in CLEANUP_DIRS:
            for path in list(ctx.root.rglob(name)):
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path, ignore_errors=True)
                    ctx.removed.append(str(path))
        patterns: Iterable[str] = CLEANUP_FILES if ctx.target.is_windows else (*CLEANUP_FILES, "*.exe")
        for pattern in patterns:
            for path in list(ctx.root.rglob(pattern)):
                if path.is_file():
                    path.unlink()
                    ctx.removed.append(str(path))

    def _remove_modules(self, ctx: OptimizationContext) -> None:
        stdlib = ctx.stdlib
        if not stdlib.is_dir():
            LOG.debug("No stdlib directory at %s; skipping module removal", stdlib)
            return
        for module in ctx.excluded_modules:
            for candidate in (stdlib / module, stdlib / f"{module}.py"):
                if candidate.is_dir():
                    shutil.rmtree(candidate, ignore_errors=True)
                    ctx.removed.append(str(candidate))
                elif candidate.is_file():
                    candidate.unlink()
                    ctx.removed.append(str(candidate))

    def _compile_bytecode(self, ctx: OptimizationContext) -> None:
        self._compileall(ctx, [])

    def _precompile_optimized(self, ctx: OptimizationContext) -> None:
        # unchecked-hash pycs skip the source stat on import
        self._compileall(ctx, ["-o", "1", "--invalidation-mode", "unchecked-hash"])
        LOG.debug(
            "Import-resolution cache for %s: no path index is written; unchecked-hash bytecode is the only cache",
            ctx.target.value,
        )

    def _compileall(self, ctx: OptimizationContext, extra: List[str]) -> None:
        if host_target() is not ctx.target or not ctx.interpreter.exists():
            LOG.debug("Cannot run the %s interpreter on this host; skipping bytecode compilation", ctx.target.value)
            return
        cmd = [str(ctx.interpreter), "-m", "compileall", "-q", "-j", "0", *extra, str(ctx.stdlib)]
        code = self.runner.run(cmd)
        if code != 0:
            LOG.warning("compileall exited %s for %s; continuing without precompiled bytecode", code, ctx.stdlib)

