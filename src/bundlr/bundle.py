from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import time
from pathlib import Path
from typing import Optional

from . import __version__
from .archive import Archiver
from .config import BuildConfig
from .errors import AssemblyError, BundleMismatchError, PayloadError
from .models import BundleInfo, BundleMetadata, BundleOptions, ComponentSizes
from .paths import directory_size, make_temp_dir
from .payload import append_payload, copy_stub
from .stub import StubBuilder

LOG = logging.getLogger(__name__)

BUNDLE_FORMAT_VERSION = "1.0"
RUNTIME_ARCHIVE_NAME = "python_runtime.tar.gz"


def shell_single_quote(value: str) -> str:
    return "'" + value.replace("'", "'\"'\"'") + "'"


def render_launcher(package_name: str, python_exe_path: str, entry_point: Optional[str]) -> str:
    if entry_point:
        invoke = f'"$PYTHON_RUNTIME/{python_exe_path}" -c {shell_single_quote(entry_point)} "$@"'
    else:
        invoke = f'"$PYTHON_RUNTIME/{python_exe_path}" -m {shell_single_quote(package_name.replace("-", "_"))} "$@"'
    return "\n".join(
        [
            "#!/bin/bash",
            "# Manual launcher for an extracted bundlr payload.",
            'BUNDLE_DIR="$( cd "$( dirname "${BASH_SOURCE[0]}" )" && pwd )"',
            'PYTHON_RUNTIME="$BUNDLE_DIR/python_runtime"',
            'ASSETS_DIR="$BUNDLE_DIR/assets"',
            'if [ ! -d "$PYTHON_RUNTIME" ]; then',
            '    mkdir -p "$PYTHON_RUNTIME"',
            f'    tar -xzf "$BUNDLE_DIR/{RUNTIME_ARCHIVE_NAME}" -C "$PYTHON_RUNTIME" --strip-components=1',
            "fi",
            'export PYTHONHOME="$PYTHON_RUNTIME"',
            'export PYTHONPATH="$ASSETS_DIR:$PYTHONPATH"',
            invoke,
            "",
        ]
    )


def check_bundle_key(options: BundleOptions) -> None:
    """Refuse to combine inputs produced for different (package, target, python) keys."""
    target = options.target_platform
    resolution = options.dependencies.resolution_metadata
    runtime = options.runtime_bundle.metadata
    problems = []
    if resolution.target_platform is not target:
        problems.append(f"dependencies were resolved for {resolution.target_platform.value}")
    if options.assets.target_platform is not target:
        problems.append(f"assets were collected for {options.assets.target_platform.value}")
    if runtime.target_platform is not target:
        problems.append(f"runtime was built for {runtime.target_platform.value}")
    if resolution.python_version != options.python_version:
        problems.append(f"dependencies were resolved for Python {resolution.python_version}")
    if runtime.python_version != options.python_version:
        problems.append(f"runtime is Python {runtime.python_version}")
    if options.dependencies.root_package != options.package_name:
        problems.append(f"dependency tree is for {options.dependencies.root_package}")
    if problems:
        raise BundleMismatchError(
            f"Cannot bundle {options.package_name} for {target.value}/{options.python_version}: " + "; ".join(problems)
        )


class BundleGenerator:
    def __init__(
        self,
        config: BuildConfig,
        *,
        stub_builder: Optional[StubBuilder] = None,
        archiver: Optional[Archiver] = None,
    ):
        self.config = config
        self.stub_builder = stub_builder or StubBuilder(config)
        # the payload must stay gzip so the stub can find and unpack it anywhere
        self.archiver = archiver or Archiver(use_powershell=False)

    def metadata_document(self, options: BundleOptions, timestamp: int) -> dict:
        root = options.dependencies.root
        return {
            "bundle_version": BUNDLE_FORMAT_VERSION,
            "package_name": options.package_name,
            "package_version": root.version if root else None,
            "python_version": options.python_version,
            "target_platform": options.target_platform.value,
            "build_timestamp": timestamp,
            "bundlr_version": __version__,
            "entry_point": options.entry_point,
            "included_packages": [p.pin for p in options.dependencies.packages],
        }

    def generate_bundle(self, options: BundleOptions) -> BundleInfo:
        check_bundle_key(options)
        target = options.target_platform
        timestamp = int(time.time())
        scratch = make_temp_dir("bundle")
        output = options.output_path
        try:
            stub = self.stub_builder.build(target, scratch)
            stub_size = stub.stat().st_size

            bundle_dir = scratch / "bundle"
            assets_dir = bundle_dir / "assets"
            assets_dir.mkdir(parents=True)
            shutil.copyfile(options.runtime_bundle.runtime_path, bundle_dir / RUNTIME_ARCHIVE_NAME)
            for asset in options.assets.assets:
                if not asset.downloaded:
                    raise AssemblyError(f"Asset for {asset.package_name} was never downloaded")
                shutil.copyfile(asset.local_path, assets_dir / asset.local_path.name)
            assets_size = directory_size(assets_dir)

            metadata = self.metadata_document(options, timestamp)
            metadata_path = bundle_dir / "metadata.json"
            metadata_path.write_text(json.dumps(metadata, indent=2))
            metadata_size = metadata_path.stat().st_size
            launcher = bundle_dir / "launcher.sh"
            launcher.write_text(
                render_launcher(options.package_name, options.runtime_bundle.python_exe_path, options.entry_point)
            )
            launcher.chmod(0o755)

            payload = self.archiver.create(bundle_dir, scratch / "bundle.tar.gz")
            copy_stub(stub, output)
            try:
                append_payload(output, payload)
                _make_executable(output)
            except OSError as exc:
                raise PayloadError(f"Could not write bundle {output}: {exc}") from exc
        except Exception:
            output.unlink(missing_ok=True)
            raise
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        total = output.stat().st_size
        components = ComponentSizes(
            stub_size=stub_size,
            runtime_size=options.runtime_bundle.size_bytes,
            assets_size=assets_size,
            metadata_size=metadata_size,
            total_size=total,
        )
        LOG.info("Bundle written to %s (%s bytes)", output, total)
        return BundleInfo(
            executable_path=output,
            size_bytes=total,
            target_platform=target,
            components=components,
            metadata=BundleMetadata(
                bundle_version=BUNDLE_FORMAT_VERSION,
                package_name=options.package_name,
                package_version=metadata["package_version"] or "",
                python_version=options.python_version,
                build_timestamp=timestamp,
                bundlr_version=__version__,
                included_packages=metadata["included_packages"],
            ),
        )


def _make_executable(path: Path) -> None:
    if os.name == "nt":
        return
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
