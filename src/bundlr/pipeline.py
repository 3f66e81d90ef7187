from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, TypeVar
from uuid import uuid4

from . import __version__
from .bundle import BundleGenerator
from .collector import AssetCollector
from .config import BuildConfig
from .embedder import RuntimeEmbedder
from .history import BuildHistory
from .models import (
    BuildFailure,
    BuildMetadata,
    BuildResult,
    BundleOptions,
    FailureKind,
)
from .resolver import DependencyResolver, derive_package_name
from .targets import OptimizeLevel, TargetPlatform

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BuildOptions:
    package: str
    target: TargetPlatform = TargetPlatform.LINUX_X86_64
    output_path: Optional[Path] = None
    output_dir: Optional[Path] = None
    python_version: Optional[str] = None
    optimize_level: Optional[OptimizeLevel] = None
    exclude_dev_deps: bool = False
    entry_point: Optional[str] = None

    @property
    def targets(self) -> List[TargetPlatform]:
        return self.target.get_target_list()

    @property
    def package_name(self) -> str:
        return derive_package_name(self.package)

    def validate(self) -> None:
        if not self.package or not self.package.strip():
            raise ValueError("A package name or repository URL is required.")
        if self.output_path is not None and len(self.targets) > 1:
            raise ValueError("--output names a single file; use --output-dir when building for several targets.")


class StageFailed(Exception):
    """Raised inside the pipeline once a stage failure has been recorded."""

    def __init__(self, failure: BuildFailure):
        super().__init__(failure.message)
        self.failure = failure


class BuildPipeline:
    def __init__(
        self,
        options: BuildOptions,
        config: BuildConfig,
        *,
        resolver: Optional[DependencyResolver] = None,
        collector: Optional[AssetCollector] = None,
        embedder: Optional[RuntimeEmbedder] = None,
        generator: Optional[BundleGenerator] = None,
        history: Optional[BuildHistory] = None,
        run_id: Optional[str] = None,
    ):
        options.validate()
        self.options = options
        self.config = config
        self.python_version = options.python_version or config.python_version
        self.optimize_level = options.optimize_level or config.optimize_level
        self.resolver = resolver or DependencyResolver(config)
        self.collector = collector or AssetCollector(config)
        self.embedder = embedder or RuntimeEmbedder(config)
        self.generator = generator or BundleGenerator(config)
        self.history = history
        self.run_id = run_id or uuid4().hex

    def output_path_for(self, target: TargetPlatform) -> Path:
        if self.options.output_path is not None:
            return self.options.output_path
        name = f"{self.options.package_name}-{target.value}{target.executable_extension}"
        if self.options.output_dir is not None:
            return self.options.output_dir / name
        return Path.cwd() / name

    def execute(self) -> List[BuildResult]:
        started = time.monotonic()
        targets = self.options.targets
        LOG.info(
            "Building %s for %s (Python %s, %s)",
            self.options.package,
            ", ".join(t.value for t in targets),
            self.python_version,
            self.optimize_level.value,
        )
        results = []
        for target in targets:
            result = self.build_target(target)
            self._record(result)
            results.append(result)

        failed = sum(1 for r in results if not r.ok)
        LOG.info(
            "Build finished: %s succeeded, %s failed in %.1fs",
            len(results) - failed,
            failed,
            time.monotonic() - started,
        )
        return results

    def build_target(self, target: TargetPlatform) -> BuildResult:
        LOG.info("Building for %s", target.value)
        started = time.monotonic()
        try:
            return self._build(target, started)
        except StageFailed as exc:
            failure = exc.failure
            LOG.error("%s failed for %s: %s", failure.stage, target.value, failure.message)
            return BuildResult(
                executable_path=f"{self.options.package_name}-{target.value}-FAILED",
                target=target,
                size_bytes=0,
                metadata=self._metadata(),
                build_duration_ms=_elapsed_ms(started),
                failure=failure,
            )

    def _build(self, target: TargetPlatform, started: float) -> BuildResult:
        tree = self._run_stage(
            FailureKind.RESOLUTION,
            "resolve dependencies",
            lambda: self.resolver.resolve_dependencies(
                self.options.package, target, self.python_version, self.options.exclude_dev_deps
            ),
        )
        LOG.info(
            "Resolved %s package(s)%s",
            tree.package_count,
            " [MOCK]" if tree.resolution_metadata.mocked else "",
        )

        assets = self._run_stage(
            FailureKind.ASSETS,
            "collect assets",
            lambda: self.collector.collect_assets(tree.packages, target, self.python_version),
        )
        LOG.info(
            "Collected %s asset(s), %s bytes (%.0f%% from cache)",
            assets.collection_metadata.total_assets,
            assets.total_size,
            assets.collection_metadata.cache_hit_rate * 100,
        )

        runtime = self._run_stage(
            FailureKind.RUNTIME,
            "embed runtime",
            lambda: self.embedder.create_runtime_bundle(self.python_version, target, self.optimize_level),
        )
        LOG.info(
            "Runtime ready: %s bytes (%.1f%% smaller)",
            runtime.size_bytes,
            runtime.metadata.compression_ratio,
        )

        bundle_options = BundleOptions(
            output_path=self.output_path_for(target),
            target_platform=target,
            python_version=self.python_version,
            package_name=tree.root_package,
            dependencies=tree,
            assets=assets,
            runtime_bundle=runtime,
            entry_point=self.options.entry_point,
        )
        info = self._run_stage(
            FailureKind.ASSEMBLY,
            "generate bundle",
            lambda: self.generator.generate_bundle(bundle_options),
        )
        LOG.info("Executable %s is %s bytes", info.executable_path, info.size_bytes)

        root = tree.root
        return BuildResult(
            executable_path=str(info.executable_path),
            target=target,
            size_bytes=info.size_bytes,
            metadata=self._metadata(),
            build_duration_ms=_elapsed_ms(started),
            package_version=root.version if root else None,
        )

    def _run_stage(self, kind: FailureKind, stage: str, call: Callable[[], T]) -> T:
        LOG.debug("Stage: %s", stage)
        try:
            return call()
        except Exception as exc:  # noqa: BLE001
            LOG.debug("Stage %s raised", stage, exc_info=True)
            raise StageFailed(BuildFailure(kind=kind, stage=stage, message=str(exc) or type(exc).__name__)) from exc

    def _metadata(self) -> BuildMetadata:
        return BuildMetadata(
            bundlr_version=__version__,
            build_timestamp=int(time.time()),
            python_version=self.python_version,
            optimization_level=self.optimize_level,
        )

    def _record(self, result: BuildResult) -> None:
        if self.history is None:
            return
        self.history.record_result(
            run_id=self.run_id,
            package=self.options.package_name,
            result=result,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
