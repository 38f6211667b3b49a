import asyncio

import pytest

from feedsync.handlers import (
    outcome_from_batch_result,
    outcome_from_source_result,
    source_id_from_job_type,
    source_job_type,
)
from feedsync.models import BatchSyncResult, RunOutcome, SourceSyncResult
from feedsync.runner import TaskRunner
from feedsync.storage import get_job, insert_job, list_job_runs


class RecordingSink:
    def __init__(self) -> None:
        self.events = []

    async def emit(self, event_name, payload):
        self.events.append((event_name, payload))


class BrokenSink:
    async def emit(self, event_name, payload):
        raise RuntimeError("sink down")


def _job(conn, job_type="test_job"):
    job_id = insert_job(conn, name="Test", job_type=job_type, component="test", cron="0 0 * * * *")
    return get_job(conn, job_id)


@pytest.mark.asyncio
async def test_concurrent_runs_of_same_job_are_single_flight(conn):
    job = _job(conn)
    runner = TaskRunner(conn)
    calls = []

    async def slow(job):
        calls.append(job.id)
        await asyncio.sleep(0.05)
        return RunOutcome(status="success", result={"done": True})

    runner.register(job.job_type, slow)
    outcomes = await asyncio.gather(runner.run(job), runner.run(job))

    statuses = sorted(outcome.status for outcome in outcomes)
    assert statuses == ["skipped", "success"]
    skipped = [outcome for outcome in outcomes if outcome.status == "skipped"][0]
    assert skipped.result == {"reason": "already running"}
    assert calls == [job.id]
    assert runner.running == frozenset()

    again = await runner.run(job)
    assert again.status == "success"


@pytest.mark.asyncio
async def test_different_jobs_run_concurrently(conn):
    first = _job(conn, "job_a")
    second = _job(conn, "job_b")
    runner = TaskRunner(conn)

    async def slow(job):
        await asyncio.sleep(0.01)
        return RunOutcome(status="success")

    runner.register("job_a", slow)
    runner.register("job_b", slow)
    outcomes = await asyncio.gather(runner.run(first), runner.run(second))
    assert [outcome.status for outcome in outcomes] == ["success", "success"]


@pytest.mark.asyncio
async def test_unknown_job_type_is_skipped_and_recorded(conn):
    job = _job(conn, "mystery")
    outcome = await TaskRunner(conn).run(job)

    assert outcome.status == "skipped"
    assert outcome.result == {"reason": "unknown job"}
    assert outcome.finished_at is not None
    runs = list_job_runs(conn, job_id=job.id)
    assert len(runs) == 1
    assert runs[0].status == "skipped"
    assert get_job(conn, job.id).last_status == "skipped"


@pytest.mark.asyncio
async def test_handler_exception_becomes_error_outcome(conn):
    job = _job(conn)
    runner = TaskRunner(conn)

    async def boom(job):
        raise RuntimeError("failed with token=abc123")

    runner.register(job.job_type, boom)
    outcome = await runner.run(job)

    assert outcome.status == "error"
    assert "abc123" not in outcome.error_message
    stored = get_job(conn, job.id)
    assert stored.error_count == 1
    assert stored.last_status == "error"
    assert stored.last_run_at == outcome.finished_at
    assert list_job_runs(conn, job_id=job.id)[0].error_message == outcome.error_message


@pytest.mark.asyncio
async def test_error_count_accumulates(conn):
    job = _job(conn)
    runner = TaskRunner(conn)

    async def failing(job):
        return RunOutcome(status="error", error_message="nope")

    runner.register(job.job_type, failing)
    await runner.run(job)
    await runner.run(job)
    assert get_job(conn, job.id).error_count == 2
    assert len(list_job_runs(conn, job_id=job.id)) == 2


@pytest.mark.asyncio
async def test_completion_event_emitted(conn):
    job = _job(conn)
    sink = RecordingSink()
    runner = TaskRunner(conn, event_sink=sink)

    async def ok(job):
        return RunOutcome(status="success", result={"items": 3})

    runner.register(job.job_type, ok)
    await runner.run(job)

    assert len(sink.events) == 1
    name, payload = sink.events[0]
    assert name == "job_run"
    assert payload["job_type"] == job.job_type
    assert payload["component"] == "test"
    assert payload["status"] == "success"
    assert payload["result"] == {"items": 3}


@pytest.mark.asyncio
async def test_event_sink_failure_does_not_fail_run(conn):
    job = _job(conn)
    runner = TaskRunner(conn, event_sink=BrokenSink())

    async def ok(job):
        return RunOutcome(status="success")

    runner.register(job.job_type, ok)
    outcome = await runner.run(job)
    assert outcome.status == "success"
    assert runner.running == frozenset()


def test_prefix_handlers_resolve(conn):
    runner = TaskRunner(conn)

    async def handler(job):
        return RunOutcome(status="success")

    runner.register_prefix("source_sync_", handler)
    assert runner.resolve("source_sync_12") is handler
    assert runner.resolve("other") is None


def test_source_job_type_round_trip():
    assert source_job_type(7) == "source_sync_7"
    assert source_id_from_job_type("source_sync_7") == 7
    with pytest.raises(ValueError):
        source_id_from_job_type("source_sync_x")
    with pytest.raises(ValueError):
        source_id_from_job_type("sources_sync_all")


def _source_result(status, **fields):
    return SourceSyncResult(
        source_id=1, name="One", success=status == "success", status=status, **fields
    )


def test_outcome_from_source_result():
    assert outcome_from_source_result(_source_result("success", items_added=2)).status == "success"
    skipped = outcome_from_source_result(_source_result("skipped", reason="no key"))
    assert skipped.status == "skipped"
    assert skipped.result["reason"] == "no key"
    assert outcome_from_source_result(_source_result("disabled")).status == "skipped"
    failed = outcome_from_source_result(_source_result("error", error="HTTP 500"))
    assert failed.status == "error"
    assert failed.error_message == "HTTP 500"


def _batch(successful, failed, skipped):
    results = (
        [_source_result("success")] * successful
        + [_source_result("error")] * failed
        + [_source_result("skipped")] * skipped
    )
    return BatchSyncResult(
        total=len(results),
        successful=successful,
        failed=failed,
        skipped=skipped,
        total_items=0,
        results=results,
    )


def test_outcome_from_batch_result():
    assert outcome_from_batch_result(_batch(0, 0, 0)).status == "skipped"
    assert outcome_from_batch_result(_batch(0, 0, 2)).status == "skipped"
    assert outcome_from_batch_result(_batch(0, 2, 1)).status == "error"
    assert outcome_from_batch_result(_batch(2, 1, 0)).status == "success"
