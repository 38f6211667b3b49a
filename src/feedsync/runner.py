from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable

from .events import EventSink, LoggingEventSink
from .models import STATUS_ERROR, Job, RunOutcome
from .storage import insert_job_run, record_job_outcome
from .utils import log_event, redact_secrets, utc_now_iso

Handler = Callable[[Job], Awaitable[RunOutcome]]

JOB_RUN_EVENT = "job_run"


class TaskRunner:
    """Executes jobs with a per-job-id single-flight guard.

    Scheduled triggers and operator "run now" requests both go through
    :meth:`run`, so they share the guard. The running set lives on the
    instance and starts empty on every process start.
    """

    def __init__(
        self,
        conn,
        event_sink: EventSink | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.event_sink = event_sink or LoggingEventSink()
        self._logger = logger or logging.getLogger("feedsync.runner")
        self._handlers: dict[str, Handler] = {}
        self._prefix_handlers: list[tuple[str, Handler]] = []
        self._running: set[int] = set()
        self._lock = asyncio.Lock()

    def register(self, job_type: str, handler: Handler) -> None:
        self._handlers[job_type] = handler

    def register_prefix(self, prefix: str, handler: Handler) -> None:
        self._prefix_handlers.append((prefix, handler))

    def resolve(self, job_type: str) -> Handler | None:
        handler = self._handlers.get(job_type)
        if handler is not None:
            return handler
        for prefix, prefix_handler in self._prefix_handlers:
            if job_type.startswith(prefix):
                return prefix_handler
        return None

    @property
    def running(self) -> frozenset[int]:
        return frozenset(self._running)

    async def run(self, job: Job) -> RunOutcome:
        async with self._lock:
            if job.id in self._running:
                log_event(
                    self._logger,
                    logging.INFO,
                    "job_skipped",
                    job_id=job.id,
                    job_type=job.job_type,
                    reason="already_running",
                )
                return RunOutcome.skipped("already running")
            self._running.add(job.id)

        started_at = utc_now_iso()
        outcome = RunOutcome(status=STATUS_ERROR, error_message="job did not complete")
        log_event(self._logger, logging.INFO, "job_started", job_id=job.id, job_type=job.job_type)
        try:
            handler = self.resolve(job.job_type)
            if handler is None:
                outcome = RunOutcome.skipped("unknown job")
            else:
                outcome = await handler(job)
        except Exception as exc:  # noqa: BLE001
            outcome = RunOutcome(
                status=STATUS_ERROR,
                error_message=redact_secrets(str(exc)) or type(exc).__name__,
            )
        finally:
            finished_at = utc_now_iso()
            outcome = replace(outcome, finished_at=finished_at)
            self._record(job, outcome, started_at, finished_at)
            await self._emit(job, outcome)
            async with self._lock:
                self._running.discard(job.id)
        return outcome

    def _record(self, job: Job, outcome: RunOutcome, started_at: str, finished_at: str) -> None:
        try:
            record_job_outcome(self.conn, job.id, outcome, ran_at=finished_at)
            insert_job_run(
                self.conn,
                job_id=job.id,
                job_type=job.job_type,
                started_at=started_at,
                finished_at=finished_at,
                outcome=outcome,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "job_outcome_not_recorded",
                job_id=job.id,
                error=str(exc),
            )
        level = logging.ERROR if outcome.status == STATUS_ERROR else logging.INFO
        log_event(
            self._logger,
            level,
            "job_finished",
            job_id=job.id,
            job_type=job.job_type,
            status=outcome.status,
            error=outcome.error_message or "",
        )

    async def _emit(self, job: Job, outcome: RunOutcome) -> None:
        payload = {
            "job_type": job.job_type,
            "component": job.component,
            "status": outcome.status,
            "result": outcome.result,
            "error": outcome.error_message,
            "finished_at": outcome.finished_at,
        }
        try:
            await self.event_sink.emit(JOB_RUN_EVENT, payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.WARNING,
                "job_event_failed",
                job_id=job.id,
                error=str(exc),
            )
