from __future__ import annotations

from .models import (
    STATUS_ERROR,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    BatchSyncResult,
    Job,
    RunOutcome,
    SourceSyncResult,
)
from .runner import TaskRunner
from .sync import SyncOrchestrator

SOURCE_JOB_PREFIX = "source_sync_"
SYNC_ALL_JOB_TYPE = "sources_sync_all"
SOURCES_COMPONENT = "sources"


def source_job_type(source_id: int) -> str:
    return f"{SOURCE_JOB_PREFIX}{source_id}"


def source_id_from_job_type(job_type: str) -> int:
    suffix = job_type[len(SOURCE_JOB_PREFIX):]
    if not job_type.startswith(SOURCE_JOB_PREFIX) or not suffix.isdigit():
        raise ValueError(f"not a source sync job type: {job_type}")
    return int(suffix)


def outcome_from_source_result(result: SourceSyncResult) -> RunOutcome:
    if result.status == STATUS_SUCCESS:
        status = STATUS_SUCCESS
    elif result.status == STATUS_ERROR:
        status = STATUS_ERROR
    else:
        status = STATUS_SKIPPED
    return RunOutcome(status=status, result=result.to_dict(), error_message=result.error)


def outcome_from_batch_result(batch: BatchSyncResult) -> RunOutcome:
    attempted = batch.successful + batch.failed
    if batch.total == 0 or attempted == 0:
        return RunOutcome(status=STATUS_SKIPPED, result=batch.to_dict())
    if batch.successful == 0:
        return RunOutcome(
            status=STATUS_ERROR,
            result=batch.to_dict(),
            error_message=f"all {batch.failed} attempted sources failed",
        )
    return RunOutcome(status=STATUS_SUCCESS, result=batch.to_dict())


def register_sync_handlers(runner: TaskRunner, orchestrator: SyncOrchestrator) -> None:
    async def handle_source_sync(job: Job) -> RunOutcome:
        source_id = source_id_from_job_type(job.job_type)
        return outcome_from_source_result(await orchestrator.sync_source(source_id))

    async def handle_sync_all(job: Job) -> RunOutcome:
        return outcome_from_batch_result(await orchestrator.sync_all())

    runner.register(SYNC_ALL_JOB_TYPE, handle_sync_all)
    runner.register_prefix(SOURCE_JOB_PREFIX, handle_source_sync)
