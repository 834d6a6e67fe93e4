#!/usr/bin/env python3
"""Local IDE State Cleaner Server (FastAPI).

Exposes the state.vscdb maintenance operations over a small local API.
- Read-only reports (analysis, category counts, integrity) answer in the request
- Vacuum, key pruning and cache cleanup run as background jobs
- Reports and jobs share one worker, so only one sqlite3 process touches a file

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import os
import tempfile
import threading
import traceback
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ide_state_scripts.common import (
    APP_NAME,
    ConfigurationError,
    DEFAULT_THRESHOLD_MB,
    MB,
    TOP_K,
    EngineExecutionFailed,
    EngineNotFound,
    InvariantViolation,
    StateCleanerError,
    StateDatabaseNotFound,
    human_bytes,
    now_utc_iso,
    setup_logger,
)
from ide_state_scripts.sqlite_invoker import SqliteInvoker
from ide_state_scripts.state_db_engine import MaintenanceSession, count_categories, prune_by_pattern

LOGGER = setup_logger(
    Path(os.getenv("STATE_CLEANER_LOG", str(Path(tempfile.gettempdir()) / APP_NAME / "server.log"))),
    stream=True,
)


# ---------------------------- API Models ------------------------------------ #


class AnalyzeRequest(BaseModel):
    top_k: int = Field(default=TOP_K, ge=1, le=1000)


class IntegrityRequest(BaseModel):
    global_only: bool = False


class VacuumRequest(BaseModel):
    workspace: bool = True
    global_: bool = Field(default=False, alias="global")
    threshold_mb: int = Field(default=DEFAULT_THRESHOLD_MB, ge=0)


class PruneRequest(BaseModel):
    table: str = Field(default="ItemTable", pattern="^(ItemTable|cursorDiskKV)$")
    pattern: str
    keep_last: int | None = Field(default=None, ge=1)
    confirm: bool = False


class CacheCleanRequest(BaseModel):
    mode: str = Field(default="light", pattern="^(light|full)$")
    dry_run: bool = False
    confirm: bool = False


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, *, meta: dict[str, Any] | None = None, warnings: list[str] | None = None) -> JSONResponse:
    body = {
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "warnings": warnings or [],
        "data": data,
    }
    return JSONResponse(body)


def api_error(code: str, message: str, status_code: int = 400, details: dict[str, Any] | None = None) -> JSONResponse:
    body = {
        "status": "error",
        "timestamp": now_utc_iso(),
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(body, status_code=status_code)


ERROR_CODES: dict[type[StateCleanerError], tuple[str, int]] = {
    EngineNotFound: ("ENGINE_NOT_FOUND", 503),
    EngineExecutionFailed: ("ENGINE_EXECUTION_FAILED", 409),
    InvariantViolation: ("INVARIANT_VIOLATION", 400),
    StateDatabaseNotFound: ("STATE_DB_NOT_FOUND", 404),
    ConfigurationError: ("CONFIGURATION_ERROR", 500),
}


def error_code(exc: StateCleanerError) -> tuple[str, int]:
    for cls, code in ERROR_CODES.items():
        if isinstance(exc, cls):
            return code
    return "STATE_CLEANER_ERROR", 400


# ------------------------------- Job Manager -------------------------------- #


@dataclass
class JobState:
    job_id: str
    job_type: str
    status: str = "queued"
    created_at: str = field(default_factory=now_utc_iso)
    updated_at: str = field(default_factory=now_utc_iso)
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class JobManager:
    """Background jobs on a single worker; jobs run strictly in order."""

    def __init__(self) -> None:
        self.executor = ThreadPoolExecutor(max_workers=1)
        self._jobs: dict[str, JobState] = {}
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    def create_job(self, job_type: str) -> JobState:
        job = JobState(job_id=uuid.uuid4().hex, job_type=job_type)
        with self._lock:
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> JobState | None:
        with self._lock:
            return self._jobs.get(job_id)

    def _update(self, job_id: str, **changes: Any) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            for key, value in changes.items():
                setattr(job, key, value)
            job.updated_at = now_utc_iso()

    def submit(self, job: JobState, func: Callable[[], dict[str, Any]]) -> None:
        def runner() -> None:
            self._update(job.job_id, status="running")
            try:
                result = func()
                self._update(job.job_id, status="completed", result=result)
                LOGGER.info("job_completed id=%s type=%s", job.job_id, job.job_type)
            except StateCleanerError as exc:
                code, _ = error_code(exc)
                self._update(job.job_id, status="failed", error={"code": code, "message": str(exc)})
                LOGGER.error("job_failed id=%s type=%s err=%s", job.job_id, job.job_type, exc)
            except Exception as exc:  # pylint: disable=broad-except
                self._update(
                    job.job_id,
                    status="failed",
                    error={"code": "JOB_FAILED", "message": str(exc), "traceback": traceback.format_exc()},
                )
                LOGGER.exception("job_crashed id=%s type=%s", job.job_id, job.job_type)

        future = self.executor.submit(runner)
        with self._lock:
            self._futures[job.job_id] = future

    def run_inline(self, func: Callable[[], Any]) -> Any:
        """Run ``func`` on the job worker and block until it returns."""
        return self.executor.submit(func).result()

    def wait(self, job_id: str, timeout: float | None = None) -> JobState | None:
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get(job_id)


JOBS = JobManager()


# ----------------------------- Session -------------------------------------- #


def get_session() -> MaintenanceSession:
    return MaintenanceSession(
        invoker=SqliteInvoker(engine_path=os.getenv("STATE_CLEANER_SQLITE")),
        logger=LOGGER,
    )


app = FastAPI(
    title="IDE State Cleaner Server",
    version="1.0.0",
    description="Local state.vscdb maintenance and cache cleanup API (safety-first).",
)


@app.exception_handler(StateCleanerError)
async def state_cleaner_error_handler(_: Request, exc: StateCleanerError):
    code, status_code = error_code(exc)
    LOGGER.error("request_failed code=%s err=%s", code, exc)
    return api_error(code, str(exc), status_code=status_code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    LOGGER.exception("Unhandled server error: %s", exc)
    return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)


# ---------------------------- Job Endpoints --------------------------------- #


@app.get("/api/v1/jobs/{job_id}", summary="Get job status")
async def get_job(job_id: str):
    job = JOBS.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return api_ok(asdict(job))


@app.get("/api/v1/jobs/{job_id}/result", summary="Get job result")
async def get_job_result(job_id: str):
    job = JOBS.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status not in {"completed", "failed"}:
        return api_ok({"job_id": job_id, "status": job.status})
    return api_ok({"job_id": job_id, "status": job.status, "result": job.result, "error": job.error})


# ------------------------------ Report APIs --------------------------------- #


@app.get("/api/v1/targets", summary="List discovered state databases and cache directories")
def list_targets(session: MaintenanceSession = Depends(get_session)):
    databases = [db.to_dict() for db in session.databases()]
    caches = session.measure_cache()
    return api_ok(
        {"databases": databases, "caches": caches["paths"], "cache_total_human": caches["total_human"]},
        warnings=[f"{e['path']}: {e['error']}" for e in caches["errors"][:20]],
    )


@app.post("/api/v1/state/analyze", summary="Top keys by value size in the global state.vscdb")
def analyze_state(req: AnalyzeRequest, session: MaintenanceSession = Depends(get_session)):
    report = JOBS.run_inline(lambda: session.analyze_global(top_k=req.top_k))
    return api_ok(report.to_dict(), meta={"read_only": True})


@app.post("/api/v1/state/categories", summary="Row counts per known key category")
def state_categories(session: MaintenanceSession = Depends(get_session)):
    db = session.require_global()
    counts = JOBS.run_inline(lambda: count_categories(session.invoker, db))
    return api_ok({"path": db.path, "categories": [c.to_dict() for c in counts]}, meta={"read_only": True})


@app.post("/api/v1/state/integrity", summary="PRAGMA quick_check + integrity_check")
def state_integrity(req: IntegrityRequest, session: MaintenanceSession = Depends(get_session)):
    result = JOBS.run_inline(lambda: session.check_integrity_all(global_only=req.global_only))
    return api_ok(result, meta={"read_only": True})


# ------------------------------ Action APIs --------------------------------- #


@app.post("/api/v1/state/vacuum", summary="Vacuum state.vscdb files above a threshold")
def vacuum_state(req: VacuumRequest, session: MaintenanceSession = Depends(get_session)):
    job = JOBS.create_job("vacuum")

    def runner() -> dict[str, Any]:
        return session.vacuum_databases(
            include_workspace=req.workspace,
            include_global=req.global_,
            threshold_bytes=req.threshold_mb * MB,
        )

    JOBS.submit(job, runner)
    return api_ok({"job_id": job.job_id}, meta={"type": "vacuum"})


@app.post("/api/v1/state/prune", summary="Delete keys by pattern from the global state.vscdb, then VACUUM")
def prune_state(req: PruneRequest, session: MaintenanceSession = Depends(get_session)):
    if not req.confirm:
        return api_error(
            "CONFIRMATION_REQUIRED",
            "Deleting keys is irreversible and requires confirm=true.",
            status_code=400,
        )
    db = session.require_global()
    job = JOBS.create_job("prune")

    def runner() -> dict[str, Any]:
        result = prune_by_pattern(session.invoker, db, req.table, req.pattern, req.keep_last)
        return result.to_dict()

    JOBS.submit(job, runner)
    return api_ok({"job_id": job.job_id}, meta={"type": "prune", "path": db.path})


@app.post("/api/v1/cache/clean", summary="Delete IDE cache directories")
def clean_cache(req: CacheCleanRequest, session: MaintenanceSession = Depends(get_session)):
    if not req.dry_run and not req.confirm:
        return api_error(
            "CONFIRMATION_REQUIRED",
            "Destructive cache cleanup requires confirm=true.",
            status_code=400,
        )
    job = JOBS.create_job("cache-clean")

    def runner() -> dict[str, Any]:
        return session.clean_cache(light=req.mode == "light", dry_run=req.dry_run)

    JOBS.submit(job, runner)
    return api_ok({"job_id": job.job_id}, meta={"type": "cache-clean", "dry_run": req.dry_run})


# ------------------------------ Health & Root ------------------------------- #


@app.get("/healthz", summary="Liveness endpoint")
async def healthz():
    return api_ok({"service": "ide-state-cleaner-server", "healthy": True})


@app.get("/", summary="Service index")
async def root_index():
    return api_ok(
        {
            "service": "ide-state-cleaner-server",
            "version": "1.0.0",
            "openapi": "/docs",
            "core_endpoints": {
                "reports": [
                    "/api/v1/targets",
                    "/api/v1/state/analyze",
                    "/api/v1/state/categories",
                    "/api/v1/state/integrity",
                ],
                "actions": [
                    "/api/v1/state/vacuum",
                    "/api/v1/state/prune",
                    "/api/v1/cache/clean",
                ],
                "jobs": ["/api/v1/jobs/{job_id}", "/api/v1/jobs/{job_id}/result"],
            },
            "note": "Close Cursor/VS Code before running actions. Bind to 127.0.0.1 only.",
            "threshold_default": human_bytes(DEFAULT_THRESHOLD_MB * MB),
        }
    )


# --------------------------------- Runner ---------------------------------- #


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the IDE State Cleaner FastAPI server")
    parser.add_argument("--host", default=os.getenv("STATE_CLEANER_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("STATE_CLEANER_PORT", "8002")))
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    import uvicorn

    args = parse_args(argv)
    LOGGER.info("Starting IDE State Cleaner Server host=%s port=%s", args.host, args.port)
    uvicorn.run(
        "ide_state_scripts.state_db_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
