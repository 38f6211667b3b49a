from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..config import SeedJob
from ..models import BatchSyncResult, Job, JobRun, RunOutcome, SourceSyncResult
from ..scheduler import validate_cron
from ..storage import (
    JobNotFoundError,
    get_job,
    get_job_by_type,
    insert_job,
    list_job_runs,
    require_source,
    update_job_fields,
)
from ..storage import list_jobs as _list_jobs

if TYPE_CHECKING:
    from ..runtime import Runtime

MAX_HISTORY_LIMIT = 200


def list_jobs(conn: Any) -> list[Job]:
    return _list_jobs(conn)


def get_job_or_raise(conn: Any, job_type: str) -> Job:
    job = get_job_by_type(conn, job_type)
    if job is None:
        raise JobNotFoundError(f"job {job_type} not found")
    return job


async def run_job_now(runtime: "Runtime", job_type: str) -> RunOutcome:
    job = get_job_or_raise(runtime.conn, job_type)
    return await runtime.runner.run(job)


def update_job(
    conn: Any,
    job_type: str,
    *,
    enabled: bool | None = None,
    cron: str | None = None,
    interval_seconds: int | None = None,
    name: str | None = None,
) -> Job:
    """Apply operator changes to a job row.

    Setting ``cron`` clears the stored interval and setting ``interval_seconds``
    clears the stored cron. The running scheduler keeps its current triggers
    until :meth:`CronScheduler.reload` is called or the process restarts.
    """
    if cron is not None and interval_seconds is not None:
        raise ValueError("set either cron or interval_seconds, not both")
    if cron is not None:
        cron = cron.strip()
        if not cron:
            raise ValueError("cron must not be empty")
        validate_cron(cron)
    if interval_seconds is not None and interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")
    if name is not None:
        name = name.strip()
        if not name:
            raise ValueError("name must not be empty")
    return update_job_fields(
        conn,
        job_type,
        enabled=enabled,
        cron=cron,
        interval_seconds=interval_seconds,
        name=name,
    )


def job_history(
    conn: Any, job_id: int | None = None, limit: int = 50, offset: int = 0
) -> list[JobRun]:
    limit = max(1, min(limit, MAX_HISTORY_LIMIT))
    return list_job_runs(conn, job_id=job_id, limit=limit, offset=max(0, offset))


def seed_jobs(conn: Any, seeds: list[SeedJob]) -> int:
    """Insert configured jobs that do not exist yet; existing rows are left alone."""
    created = 0
    for seed in seeds:
        if get_job_by_type(conn, seed.job_type) is not None:
            continue
        insert_job(
            conn,
            name=seed.name,
            job_type=seed.job_type,
            component=seed.component,
            cron=seed.cron,
            interval_seconds=seed.interval_seconds,
            enabled=seed.enabled,
            ignore_existing=True,
        )
        created += 1
    return created


async def sync_source_now(runtime: "Runtime", source_id: int) -> SourceSyncResult:
    source = require_source(runtime.conn, source_id)
    job = get_job(runtime.conn, source.job_id) if source.job_id is not None else None
    if job is None:
        return await runtime.orchestrator.sync_source(source_id)
    outcome = await runtime.runner.run(job)
    result = outcome.result or {}
    if "source_id" in result:
        return SourceSyncResult(**result)
    return SourceSyncResult(
        source_id=source.id,
        name=source.name,
        success=False,
        status=outcome.status,
        reason=result.get("reason"),
        error=outcome.error_message,
    )


async def sync_all_sources(runtime: "Runtime") -> BatchSyncResult:
    return await runtime.orchestrator.sync_all()
