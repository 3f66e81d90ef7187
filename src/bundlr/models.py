from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .targets import OptimizeLevel, TargetPlatform


@dataclass
class PackageInfo:
    name: str
    version: str
    wheel_url: Optional[str] = None
    wheel_hash: Optional[str] = None
    dependencies: list["PackageInfo"] = field(default_factory=list)
    hashes: list[str] = field(default_factory=list)  # every sha256 the lock file allows
    source_url: Optional[str] = None

    @property
    def pin(self) -> str:
        return f"{self.name}=={self.version}"


@dataclass
class ResolutionMetadata:
    python_version: str
    target_platform: TargetPlatform
    resolution_time: int
    exclude_dev_deps: bool = False
    mocked: bool = False


@dataclass
class DependencyTree:
    root_package: str
    packages: List[PackageInfo]
    resolution_metadata: ResolutionMetadata

    @property
    def package_count(self) -> int:
        return len(self.packages)

    @property
    def root(self) -> Optional[PackageInfo]:
        return self.packages[0] if self.packages else None


class AssetType(str, Enum):
    WHEEL = "wheel"
    SOURCE = "source"
    COMPILED_EXTENSION = "compiled_extension"
    DATA_FILE = "data_file"


@dataclass
class Asset:
    asset_type: AssetType
    package_name: str
    remote_path: str
    local_path: Optional[Path] = None
    size_bytes: int = 0
    hash: Optional[str] = None
    platform_tags: List[str] = field(default_factory=list)
    reusable: bool = True  # False when the remote content can change under the same name

    @property
    def downloaded(self) -> bool:
        return self.local_path is not None

    @property
    def filename(self) -> str:
        return self.remote_path.rsplit("/", 1)[-1].split("#", 1)[0]


@dataclass
class CollectionMetadata:
    total_assets: int
    cache_hit_rate: float
    collection_time_ms: int


@dataclass
class AssetBundle:
    assets: List[Asset]
    total_size: int
    target_platform: TargetPlatform
    collection_metadata: CollectionMetadata


@dataclass
class RuntimeMetadata:
    python_version: str
    target_platform: TargetPlatform
    optimize_level: OptimizeLevel
    original_size: int
    optimized_size: int
    compression_ratio: float


@dataclass
class RuntimeBundle:
    runtime_path: Path
    size_bytes: int
    python_exe_path: str
    site_packages_path: str
    metadata: RuntimeMetadata
    cached: bool = False


@dataclass
class BundleOptions:
    output_path: Path
    target_platform: TargetPlatform
    python_version: str
    package_name: str
    dependencies: DependencyTree
    assets: AssetBundle
    runtime_bundle: RuntimeBundle
    entry_point: Optional[str] = None


@dataclass
class ComponentSizes:
    stub_size: int
    runtime_size: int
    assets_size: int
    metadata_size: int
    total_size: int


@dataclass
class BundleMetadata:
    bundle_version: str
    package_name: str
    package_version: str
    python_version: str
    build_timestamp: int
    bundlr_version: str
    compression: str = "gzip"
    included_packages: List[str] = field(default_factory=list)


@dataclass
class BundleInfo:
    executable_path: Path
    size_bytes: int
    target_platform: TargetPlatform
    components: ComponentSizes
    metadata: BundleMetadata


@dataclass
class BuildMetadata:
    bundlr_version: str
    build_timestamp: int
    python_version: str
    optimization_level: OptimizeLevel


class FailureKind(str, Enum):
    RESOLUTION = "resolution"
    ASSETS = "assets"
    RUNTIME = "runtime"
    ASSEMBLY = "assembly"


@dataclass
class BuildFailure:
    kind: FailureKind
    stage: str
    message: str


@dataclass
class BuildResult:
    executable_path: str
    target: TargetPlatform
    size_bytes: int
    metadata: BuildMetadata
    build_duration_ms: int
    failure: Optional[BuildFailure] = None
    package_version: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class ManifestEntry:
    target: str
    status: str  # built or failed
    path: str
    size_bytes: int = 0
    duration_ms: int = 0
    detail: Optional[str] = None
    metadata: Optional[dict] = None


@dataclass
class Manifest:
    package: str
    python_version: str
    entries: List[ManifestEntry]
