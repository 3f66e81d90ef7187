from __future__ import annotations

from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .history import BuildEvent, BuildHistory, FailureStat, PackageSummary


class TargetOverview(BaseModel):
    target: str
    built: int
    failed: int
    success_rate: float
    avg_size: Optional[float] = None
    avg_duration_ms: Optional[float] = None


def create_app(history: BuildHistory) -> FastAPI:
    app = FastAPI(title="bundlr build history", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def health():
        return {"status": "ok"}

    @app.get("/api/recent")
    def api_recent(
        limit: int = Query(20, le=200),
        status: Optional[str] = None,
        package: Optional[str] = None,
        target: Optional[str] = None,
    ) -> List[BuildEvent]:
        events = history.recent(limit=limit, status=status)
        if package:
            events = [event for event in events if event.package.lower() == package.lower()]
        if target:
            events = [event for event in events if event.target == target]
        return events

    @app.get("/api/top-failures")
    def api_top_failures(limit: int = Query(20, le=200)) -> List[FailureStat]:
        return history.top_failures(limit=limit)

    @app.get("/api/targets")
    def api_targets() -> List[TargetOverview]:
        overview = []
        for stat in history.target_summary():
            total = stat.built + stat.failed
            overview.append(
                TargetOverview(
                    target=stat.target,
                    built=stat.built,
                    failed=stat.failed,
                    success_rate=stat.built / total if total else 0.0,
                    avg_size=stat.avg_size,
                    avg_duration_ms=stat.avg_duration_ms,
                )
            )
        return overview

    @app.get("/api/package/{name}")
    def api_package(name: str) -> PackageSummary:
        return history.package_summary(name)

    @app.get("/api/event/{name}/{target}")
    def api_event(name: str, target: str):
        event = history.last_event(name, target)
        if not event:
            return JSONResponse(status_code=404, content={"detail": "not found"})
        return event

    @app.exception_handler(Exception)
    async def handle_exceptions(request: Request, exc: Exception):
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    return app
