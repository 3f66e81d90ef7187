from __future__ import annotations

import argparse
import io
import json
import logging
import sys
import tarfile
from dataclasses import asdict
from pathlib import Path
from typing import List
from uuid import uuid4

import uvicorn

from .config import MockResolution, build_config
from .errors import PayloadError
from .history import BuildHistory
from .manifest import MANIFEST_NAME, manifest_from_results, write_manifest
from .payload import locate_payload, read_payload
from .pipeline import BuildOptions, BuildPipeline
from .targets import OptimizeLevel, TargetPlatform
from .web import create_app

LOG = logging.getLogger("bundlr")


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    argv = list(argv) if argv is not None else sys.argv[1:]
    if argv and argv[0] == "history":
        return _parse_history_args(argv[1:])
    if argv and argv[0] == "serve":
        return _parse_serve_args(argv[1:])
    if argv and argv[0] == "inspect":
        return _parse_inspect_args(argv[1:])
    if argv and argv[0] == "build":
        argv = argv[1:]
    return _parse_build_args(argv)


def _parse_build_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bundlr build",
        description="Build a portable self-extracting executable from a Python package.",
    )
    parser.add_argument("package", help="Package name or source repository URL.")
    parser.add_argument(
        "--target",
        type=TargetPlatform.parse,
        default=TargetPlatform.LINUX_X86_64,
        help="Target platform: " + ", ".join(t.value for t in TargetPlatform) + " (default: linux-x86_64).",
    )
    parser.add_argument("--output", type=Path, help="Output file (single target only).")
    parser.add_argument("--output-dir", type=Path, help="Directory for per-target executables.")
    parser.add_argument("--python-version", help="Python version to embed (e.g. 3.14).")
    optimize = parser.add_mutually_exclusive_group()
    optimize.add_argument(
        "--optimize-size", dest="optimize_level", action="store_const", const=OptimizeLevel.SIZE.value,
        help="Strip the runtime down to the smallest size.",
    )
    optimize.add_argument(
        "--optimize-speed", dest="optimize_level", action="store_const", const=OptimizeLevel.SPEED.value,
        help="Precompile optimized bytecode for faster start-up.",
    )
    optimize.add_argument(
        "--optimize-compatibility", dest="optimize_level", action="store_const",
        const=OptimizeLevel.COMPATIBILITY.value, help="Ship the runtime unmodified.",
    )
    parser.add_argument("--exclude-dev-deps", action="store_true", help="Bundle the package without its dependencies.")
    parser.add_argument("--entry-point", help="Python code to run instead of `python -m <package>`.")
    parser.add_argument("--config", type=Path, help="Optional TOML/JSON/YAML config file.")
    parser.add_argument("--cache-dir", type=Path, help="Cache root (defaults to BUNDLR_CACHE_DIR or the user cache).")
    parser.add_argument(
        "--mock-resolution",
        choices=[m.value for m in MockResolution],
        help="Allow synthetic dependency data when uv is unavailable (default: off).",
    )
    parser.add_argument("--no-fail-fast", action="store_true", help="Skip packages whose assets cannot be collected.")
    parser.add_argument("--history-db", type=Path, help="Path to history database (defaults to <cache>/history.db).")
    parser.add_argument("--manifest", type=Path, help=f"Manifest output path (defaults to <output dir>/{MANIFEST_NAME}).")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    ns = parser.parse_args(argv)
    if ns.output and len(ns.target.get_target_list()) > 1:
        parser.error("--output names a single file; use --output-dir with --target all")
    ns.command = "build"
    return ns


def _parse_history_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="bundlr history", description="Inspect build history.")
    parser.add_argument("--history-db", "--db", dest="history_db", type=Path, default=Path("history.db"), help="Path to history database.")
    parser.add_argument("--recent", type=int, default=20, help="Number of recent events to show.")
    parser.add_argument("--status", help="Filter recent events by status (built or failed).")
    parser.add_argument("--top-failures", type=int, default=5, help="Show top N failing packages.")
    parser.add_argument("--package", help="Show summary for a specific package.")
    parser.add_argument("--targets", action="store_true", help="Show per-target build counts.")
    parser.add_argument("--export-csv", type=Path, help="Export events to CSV at the given path.")
    parser.add_argument("--export-limit", type=int, default=0, help="Limit rows when exporting CSV (0 = all).")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of text.")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="history"))


def _parse_serve_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="bundlr serve", description="Serve the build history API.")
    parser.add_argument("--history-db", "--db", dest="history_db", type=Path, default=Path("history.db"), help="Path to history database.")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind.")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind.")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="serve"))


def _parse_inspect_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="bundlr inspect", description="Show the metadata embedded in a bundle.")
    parser.add_argument("executable", type=Path, help="Executable produced by bundlr build.")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="inspect"))


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    if args.command == "history":
        return _run_history(args)
    if args.command == "serve":
        return _run_server(args)
    if args.command == "inspect":
        return _run_inspect(args)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(message)s")

    config = build_config(
        python_version=args.python_version,
        cache_dir=args.cache_dir,
        config_file=args.config,
        optimize_level=args.optimize_level,
        mock_resolution=args.mock_resolution,
        fail_fast=False if args.no_fail_fast else None,
    )
    options = BuildOptions(
        package=args.package,
        target=args.target,
        output_path=args.output,
        output_dir=args.output_dir,
        python_version=config.python_version,
        optimize_level=config.optimize_level,
        exclude_dev_deps=args.exclude_dev_deps,
        entry_point=args.entry_point,
    )

    history = BuildHistory(args.history_db or config.cache_dir / "history.db")
    pipeline = BuildPipeline(options, config, history=history, run_id=uuid4().hex)
    results = pipeline.execute()

    for result in results:
        if result.ok:
            print(f"{result.target.value}: {result.executable_path} ({result.size_bytes} bytes)")
        else:
            print(f"{result.target.value}: FAILED during {result.failure.stage}: {result.failure.message}")

    manifest_path = args.manifest or _default_manifest_path(args)
    write_manifest(manifest_from_results(options.package_name, config.python_version, results), manifest_path)
    LOG.info("Manifest written to %s", manifest_path)
    return 0 if all(result.ok for result in results) else 1


def _default_manifest_path(args: argparse.Namespace) -> Path:
    if args.output_dir:
        return args.output_dir / MANIFEST_NAME
    if args.output:
        return args.output.parent / MANIFEST_NAME
    return Path.cwd() / MANIFEST_NAME


def _run_history(args: argparse.Namespace) -> int:
    history = BuildHistory(args.history_db)
    recent = history.recent(limit=args.recent, status=args.status)
    failures = history.top_failures(limit=args.top_failures) if args.top_failures else []
    summary = history.package_summary(args.package) if args.package else None
    targets = history.target_summary() if args.targets else []

    if args.export_csv:
        history.export_csv(args.export_csv, limit=args.export_limit)

    if args.json:
        payload = {
            "recent": [asdict(event) for event in recent],
            "top_failures": [asdict(stat) for stat in failures],
            "targets": [asdict(stat) for stat in targets],
            "summary": asdict(summary) if summary else None,
        }
        print(json.dumps(payload, indent=2))
        return 0

    print(f"History DB: {args.history_db}")
    print(f"Recent events (limit {args.recent}{' filtered by ' + args.status if args.status else ''}):")
    for event in recent:
        print(
            f"- [{event.timestamp}] {event.status.upper():6} {event.package} {event.version or '?'} "
            f"{event.target} py{event.python_version} ({event.duration_ms} ms)"
        )
        if event.detail:
            print(f"    {event.stage or 'detail'}: {event.detail}")
        if event.status == "built" and event.output_path:
            print(f"    output: {event.output_path} ({event.size_bytes} bytes)")

    if failures:
        print(f"\nTop {len(failures)} failing packages:")
        for stat in failures:
            print(f"- {stat.package}: {stat.failures} failures")
    if targets:
        print("\nTargets:")
        for stat in targets:
            print(f"- {stat.target}: {stat.built} built, {stat.failed} failed")
    if summary:
        print(f"\nPackage summary for {summary.package}:")
        for status, count in summary.status_counts.items():
            print(f"- {status}: {count}")
        if summary.latest:
            print(f"Latest: {summary.latest.status} {summary.latest.target} at {summary.latest.timestamp}")
    if args.export_csv:
        print(f"\nExported CSV to {args.export_csv}")
    return 0


def _run_server(args: argparse.Namespace) -> int:
    history = BuildHistory(args.history_db)
    app = create_app(history)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def _run_inspect(args: argparse.Namespace) -> int:
    try:
        location = locate_payload(args.executable)
        data = read_payload(args.executable)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tf:
            member = tf.extractfile("bundle/metadata.json")
            if member is None:
                raise PayloadError("bundle/metadata.json is not a regular file")
            metadata = json.loads(member.read())
    except (OSError, KeyError, tarfile.TarError, PayloadError) as exc:
        print(f"Cannot read bundle {args.executable}: {exc}", file=sys.stderr)
        return 1
    print(
        f"Payload at offset {location.offset}, {location.length} bytes "
        f"({'trailer, checksum verified' if location.from_trailer else 'found by scan'})"
    )
    print(json.dumps(metadata, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
