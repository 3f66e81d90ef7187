from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable

from .models import BuildResult, Manifest, ManifestEntry

MANIFEST_NAME = "bundlr-manifest.json"


def manifest_from_results(package: str, python_version: str, results: Iterable[BuildResult]) -> Manifest:
    entries = []
    for result in results:
        failure = result.failure
        entries.append(
            ManifestEntry(
                target=result.target.value,
                status="built" if failure is None else "failed",
                path=result.executable_path,
                size_bytes=result.size_bytes,
                duration_ms=result.build_duration_ms,
                detail=failure.message if failure else None,
                metadata={"stage": failure.stage, "kind": failure.kind.value} if failure else None,
            )
        )
    return Manifest(package=package, python_version=python_version, entries=entries)


def write_manifest(manifest: Manifest, path: Path) -> None:
    payload = {
        "package": manifest.package,
        "python_version": manifest.python_version,
        "entries": [
            {
                "target": entry.target,
                "status": entry.status,
                "path": entry.path,
                "size_bytes": entry.size_bytes,
                "duration_ms": entry.duration_ms,
                "detail": entry.detail,
                "metadata": entry.metadata,
            }
            for entry in manifest.entries
        ],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))
