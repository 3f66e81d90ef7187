from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

if TYPE_CHECKING:
    from .models import BuildResult


class BuildHistory:
    """SQLite-backed store of per-target build outcomes."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with sqlite3.connect(self.path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS build_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    timestamp TEXT,
                    package TEXT,
                    version TEXT,
                    target TEXT,
                    python_version TEXT,
                    status TEXT,
                    output_path TEXT,
                    size_bytes INTEGER,
                    duration_ms INTEGER,
                    stage TEXT,
                    detail TEXT,
                    metadata_json TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_build_events_package ON build_events(package)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_build_events_package_target ON build_events(package, target)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_build_events_status ON build_events(status)")
            conn.commit()

    def record_event(
        self,
        *,
        run_id: str,
        package: str,
        target: str,
        python_version: str,
        status: str,
        version: Optional[str] = None,
        output_path: Optional[str] = None,
        size_bytes: int = 0,
        duration_ms: int = 0,
        stage: Optional[str] = None,
        detail: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = {
            "run_id": run_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "package": package,
            "version": version,
            "target": target,
            "python_version": python_version,
            "status": status,
            "output_path": output_path,
            "size_bytes": size_bytes,
            "duration_ms": duration_ms,
            "stage": stage,
            "detail": detail,
            "metadata_json": json.dumps(metadata or {}),
        }
        with self._lock, sqlite3.connect(self.path) as conn:
            conn.execute(
                """
                INSERT INTO build_events (
                    run_id, timestamp, package, version, target, python_version, status,
                    output_path, size_bytes, duration_ms, stage, detail, metadata_json
                )
                VALUES (
                    :run_id, :timestamp, :package, :version, :target, :python_version, :status,
                    :output_path, :size_bytes, :duration_ms, :stage, :detail, :metadata_json
                )
                """,
                payload,
            )
            conn.commit()

    def record_result(self, *, run_id: str, package: str, result: "BuildResult") -> None:
        failure = result.failure
        self.record_event(
            run_id=run_id,
            package=package,
            version=result.package_version,
            target=result.target.value,
            python_version=result.metadata.python_version,
            status="built" if failure is None else "failed",
            output_path=result.executable_path,
            size_bytes=result.size_bytes,
            duration_ms=result.build_duration_ms,
            stage=failure.stage if failure else None,
            detail=failure.message if failure else None,
            metadata={
                "bundlr_version": result.metadata.bundlr_version,
                "optimization_level": result.metadata.optimization_level.value,
                "failure_kind": failure.kind.value if failure else None,
            },
        )

    def recent(self, *, limit: int = 20, status: Optional[str] = None) -> List["BuildEvent"]:
        query = "SELECT * FROM build_events"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with sqlite3.connect(self.path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_event(row) for row in rows]

    def top_failures(self, *, limit: int = 20, statuses: Iterable[str] = ("failed",)) -> List["FailureStat"]:
        statuses = list(statuses)
        placeholders = ",".join("?" for _ in statuses)
        query = f"""
            SELECT package, COUNT(*) as failures
            FROM build_events
            WHERE status IN ({placeholders})
            GROUP BY package
            ORDER BY failures DESC
            LIMIT ?
        """
        params: List[Any] = statuses + [limit]
        with sqlite3.connect(self.path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [FailureStat(package=row[0], failures=row[1]) for row in rows]

    def target_summary(self) -> List["TargetStat"]:
        """Build counts and average successful size per target."""
        query = """
            SELECT target,
                   SUM(CASE WHEN status = 'built' THEN 1 ELSE 0 END) as built,
                   SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) as failed,
                   AVG(CASE WHEN status = 'built' THEN size_bytes END) as avg_size,
                   AVG(duration_ms) as avg_duration
            FROM build_events
            GROUP BY target
            ORDER BY target
        """
        with sqlite3.connect(self.path) as conn:
            rows = conn.execute(query).fetchall()
        return [
            TargetStat(target=row[0], built=row[1], failed=row[2], avg_size=row[3], avg_duration_ms=row[4])
            for row in rows
        ]

    def package_summary(self, package: str) -> "PackageSummary":
        with sqlite3.connect(self.path) as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) FROM build_events WHERE package = ? GROUP BY status", (package,)
            ).fetchall()
            latest_row = conn.execute(
                "SELECT * FROM build_events WHERE package = ? ORDER BY id DESC LIMIT 1", (package,)
            ).fetchone()
            targets = conn.execute(
                "SELECT DISTINCT target FROM build_events WHERE package = ? ORDER BY target", (package,)
            ).fetchall()
            durations = conn.execute(
                "SELECT AVG(duration_ms) FROM build_events WHERE package = ? AND status = 'built'", (package,)
            ).fetchone()
        status_counts = {row[0]: row[1] for row in rows}
        latest = _row_to_event(latest_row) if latest_row else None
        avg_duration = durations[0] if durations and durations[0] is not None else None
        return PackageSummary(
            package=package,
            status_counts=status_counts,
            latest=latest,
            targets=[row[0] for row in targets],
            avg_duration_ms=avg_duration,
        )

    def export_csv(self, path: Path, *, limit: int = 0) -> None:
        query = "SELECT * FROM build_events ORDER BY id DESC"
        if limit > 0:
            query += f" LIMIT {int(limit)}"
        with sqlite3.connect(self.path) as conn, path.open("w", encoding="utf-8") as fh:
            cursor = conn.execute(query)
            headers = [col[0] for col in cursor.description]
            fh.write(",".join(headers) + "\n")
            for row in cursor.fetchall():
                line = ",".join(_csv_escape("" if item is None else str(item)) for item in row)
                fh.write(line + "\n")

    def last_event(self, package: str, target: Optional[str] = None) -> Optional["BuildEvent"]:
        query = "SELECT * FROM build_events WHERE package = ?"
        params: List[Any] = [package]
        if target:
            query += " AND target = ?"
            params.append(target)
        query += " ORDER BY id DESC LIMIT 1"
        with sqlite3.connect(self.path) as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_event(row) if row else None


@dataclass
class BuildEvent:
    run_id: str
    timestamp: str
    package: str
    version: Optional[str]
    target: str
    python_version: str
    status: str
    output_path: Optional[str]
    size_bytes: int
    duration_ms: int
    stage: Optional[str]
    detail: Optional[str]
    metadata: Dict[str, Any]


@dataclass
class FailureStat:
    package: str
    failures: int


@dataclass
class TargetStat:
    target: str
    built: int
    failed: int
    avg_size: Optional[float] = None
    avg_duration_ms: Optional[float] = None


@dataclass
class PackageSummary:
    package: str
    status_counts: Dict[str, int]
    latest: Optional[BuildEvent]
    targets: List[str]
    avg_duration_ms: Optional[float] = None


def _row_to_event(row: tuple) -> BuildEvent:
    (
        _id,
        run_id,
        timestamp,
        package,
        version,
        target,
        python_version,
        status,
        output_path,
        size_bytes,
        duration_ms,
        stage,
        detail,
        metadata_json,
    ) = row
    return BuildEvent(
        run_id=run_id,
        timestamp=timestamp,
        package=package,
        version=version,
        target=target,
        python_version=python_version,
        status=status,
        output_path=output_path,
        size_bytes=size_bytes or 0,
        duration_ms=duration_ms or 0,
        stage=stage,
        detail=detail,
        metadata=json.loads(metadata_json or "{}"),
    )


def _csv_escape(value: str) -> str:
    if any(ch in value for ch in {",", '"', "\n"}):
        return '"' + value.replace('"', '""') + '"'
    return value
