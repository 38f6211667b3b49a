from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import ConfigError, get_runtime_config, set_runtime_config
from .runtime import Runtime
from .security.secrets import CryptoError
from .services import jobs_service, sources_service
from .utils import configure_logging, log_event

SCHEDULER_ENV = "FS_ADMIN_RUN_SCHEDULER"


class JobUpdateRequest(BaseModel):
    enabled: bool | None = None
    cron: str | None = None
    interval_seconds: int | None = None
    name: str | None = None


class SourceRequest(BaseModel):
    name: str | None = None
    provider_type: str | None = None
    enabled: bool | None = None
    credential: str | None = None
    config: dict[str, Any] | None = None
    daily_call_quota: int | None = None
    cron: str | None = None
    interval_seconds: int | None = None


class ItemFlagRequest(BaseModel):
    flag: str
    value: bool = True


class RuntimeConfigRequest(BaseModel):
    config: dict


@asynccontextmanager
async def _lifespan(app: FastAPI):
    # Opened on the event loop so the scheduler binds to it. A runtime already
    # placed on app.state is used as is and left open.
    runtime = getattr(app.state, "runtime", None)
    owned = runtime is None
    if owned:
        runtime = Runtime.open()
        app.state.runtime = runtime
        if os.environ.get(SCHEDULER_ENV, "0") == "1":
            runtime.scheduler.start()
    try:
        yield
    finally:
        if owned:
            await runtime.aclose()
            app.state.runtime = None


app = FastAPI(title="feedsync admin API", lifespan=_lifespan)


async def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="runtime_not_ready")
    return runtime


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("feedsync")
    except Exception:  # noqa: BLE001
        return "unknown"


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "feedsync admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime")
async def runtime_config_get(runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    try:
        cfg = get_runtime_config(runtime.conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime")
async def runtime_config_set(
    payload: RuntimeConfigRequest, runtime: Runtime = Depends(get_runtime)
) -> dict[str, object]:
    try:
        set_runtime_config(runtime.conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


jobs_router = APIRouter(prefix="/jobs")


@jobs_router.get("")
async def jobs_list(runtime: Runtime = Depends(get_runtime)) -> list[dict[str, object]]:
    return [job.to_dict() for job in jobs_service.list_jobs(runtime.conn)]


@jobs_router.get("/history")
async def jobs_history(
    job_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
    runtime: Runtime = Depends(get_runtime),
) -> list[dict[str, object]]:
    job_id = None
    if job_type:
        job_id = _job_or_404(runtime, job_type).id
    runs = jobs_service.job_history(runtime.conn, job_id=job_id, limit=limit, offset=offset)
    return [run.to_dict() for run in runs]


@jobs_router.post("/{job_type}/run")
async def jobs_run(job_type: str, runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    _job_or_404(runtime, job_type)
    outcome = await jobs_service.run_job_now(runtime, job_type)
    log_event(
        logging.getLogger("feedsync.admin"),
        logging.INFO,
        "job_run_requested",
        job_type=job_type,
        status=outcome.status,
    )
    return outcome.to_dict()


@jobs_router.patch("/{job_type}")
async def jobs_update(
    job_type: str, payload: JobUpdateRequest, runtime: Runtime = Depends(get_runtime)
) -> dict[str, object]:
    _job_or_404(runtime, job_type)
    try:
        job = jobs_service.update_job(runtime.conn, job_type, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return job.to_dict()


@app.post("/admin/scheduler/reload")
async def scheduler_reload(runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    if not runtime.scheduler.running:
        raise HTTPException(status_code=409, detail="scheduler_not_running")
    return {"scheduled": runtime.scheduler.reload()}


sources_router = APIRouter(prefix="/sources")


@sources_router.get("/providers")
def providers_list() -> list[dict[str, object]]:
    return sources_service.list_providers()


@sources_router.get("")
async def sources_list(runtime: Runtime = Depends(get_runtime)) -> list[dict[str, object]]:
    return [source.to_public_dict() for source in sources_service.list_sources(runtime.conn)]


@sources_router.post("")
async def sources_create(
    payload: SourceRequest, runtime: Runtime = Depends(get_runtime)
) -> dict[str, object]:
    try:
        source = sources_service.create_source(
            runtime.conn,
            runtime.codec,
            runtime.config.sync,
            payload.model_dump(exclude_unset=True),
        )
    except (ValueError, CryptoError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return source.to_public_dict()


@sources_router.post("/sync-all")
async def sources_sync_all(runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    result = await jobs_service.sync_all_sources(runtime)
    return result.to_dict()


@sources_router.get("/{source_id}")
async def sources_read(source_id: int, runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    try:
        return sources_service.get_source(runtime.conn, source_id).to_public_dict()
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc


@sources_router.patch("/{source_id}")
async def sources_update(
    source_id: int, payload: SourceRequest, runtime: Runtime = Depends(get_runtime)
) -> dict[str, object]:
    try:
        source = sources_service.update_source(
            runtime.conn, runtime.codec, source_id, payload.model_dump(exclude_unset=True)
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    except (ValueError, CryptoError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return source.to_public_dict()


@sources_router.delete("/{source_id}")
async def sources_delete(source_id: int, runtime: Runtime = Depends(get_runtime)) -> dict[str, str]:
    try:
        sources_service.delete_source(runtime.conn, source_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    return {"status": "deleted"}


@sources_router.post("/{source_id}/sync")
async def sources_sync(source_id: int, runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    try:
        result = await jobs_service.sync_source_now(runtime, source_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    return result.to_dict()


@sources_router.post("/{source_id}/test")
async def sources_test(source_id: int, runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    try:
        result = await sources_service.test_source_connection(runtime, source_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    return result.to_dict()


@sources_router.get("/{source_id}/items")
async def sources_items(
    source_id: int,
    limit: int = 50,
    offset: int = 0,
    runtime: Runtime = Depends(get_runtime),
) -> list[dict[str, object]]:
    try:
        items = sources_service.list_source_items(runtime.conn, source_id, limit=limit, offset=offset)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    return [asdict(item) for item in items]


@app.post("/items/{item_id}/flag")
async def items_flag(
    item_id: int, payload: ItemFlagRequest, runtime: Runtime = Depends(get_runtime)
) -> dict[str, str]:
    try:
        sources_service.flag_item(runtime.conn, item_id, payload.flag, payload.value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


def _job_or_404(runtime: Runtime, job_type: str):
    try:
        return jobs_service.get_job_or_raise(runtime.conn, job_type)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="job_not_found") from exc


app.include_router(jobs_router)
app.include_router(sources_router)


def _setup_logging() -> None:
    configure_logging("feedsync.admin")


_setup_logging()


def main() -> int:
    import uvicorn

    host = os.environ.get("FS_ADMIN_HOST", "127.0.0.1")
    port = int(os.environ.get("FS_ADMIN_PORT", "8080"))
    uvicorn.run("feedsync.admin:app", host=host, port=port)
    return 0
