"""Cron triggers for enabled jobs, driven by APScheduler's asyncio scheduler.

Cron strings carry a leading seconds field (``sec min hour day month dow``).
A trailing year field is accepted, as is a plain five-field crontab, which
fires at second 0. Numeric day-of-week values follow crontab (0 or 7 is
Sunday).
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import SchedulerConfig
from .models import Job
from .runner import TaskRunner
from .storage import get_job, list_jobs
from .utils import log_event

_DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def cron_for_job(job: Job) -> str | None:
    if job.frequency_cron:
        return job.frequency_cron.strip()
    return cron_for_interval(job.frequency_seconds)


def cron_for_interval(seconds: int | None) -> str | None:
    if not seconds or seconds <= 0:
        return None
    if seconds <= 59:
        return f"*/{seconds} * * * * *"
    if seconds % 60 == 0:
        minutes = seconds // 60
        if minutes <= 59:
            return f"0 */{minutes} * * * *"
        if seconds % 3600 == 0 and seconds // 3600 <= 23:
            return f"0 0 */{seconds // 3600} * * *"
    return None


def parse_cron(expression: str, timezone: str = "UTC") -> CronTrigger:
    fields = ["*" if field == "?" else field for field in expression.split()]
    if len(fields) == 5:
        fields = ["0"] + fields
    if len(fields) == 6:
        fields.append(None)
    if len(fields) != 7:
        raise ValueError(f"cron expression must have 5, 6 or 7 fields: {expression!r}")
    second, minute, hour, day, month, day_of_week, year = fields
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_crontab_day_of_week(day_of_week),
        year=year,
        timezone=timezone,
    )


def validate_cron(expression: str) -> None:
    parse_cron(expression)


def _crontab_day_of_week(field: str) -> str:
    """Translate numeric crontab days (0 or 7 is Sunday) to APScheduler names.

    APScheduler numbers Monday as 0, so numeric ranges are expanded to a set
    of days and written back as named runs, e.g. ``0-5`` -> ``mon-fri,sun``.
    """
    if field == "*" or any(char.isalpha() for char in field):
        return field
    days: set[int] = set()
    for part in field.split(","):
        span, _, step = part.partition("/")
        if span == "*":
            first, last = 0, 6
        elif "-" in span:
            low, _, high = span.partition("-")
            first, last = _dow_number(low), _dow_number(high)
        else:
            first = _dow_number(span)
            last = 6 if step else first
        stride = int(step) if step else 1
        if first > last or stride < 1:
            raise ValueError(f"invalid day of week: {part!r}")
        days.update((number + 6) % 7 for number in range(first, last + 1, stride))
    return _named_day_runs(sorted(days))


def _dow_number(value: str) -> int:
    if not value.isdigit() or int(value) > 7:
        raise ValueError(f"day of week out of range: {value!r}")
    return int(value)


def _named_day_runs(days: list[int]) -> str:
    if len(days) == len(_DAY_NAMES):
        return "*"
    runs: list[list[int]] = []
    for day in days:
        if runs and day == runs[-1][-1] + 1:
            runs[-1].append(day)
        else:
            runs.append([day])
    return ",".join(
        _DAY_NAMES[run[0]] if len(run) == 1 else f"{_DAY_NAMES[run[0]]}-{_DAY_NAMES[run[-1]]}"
        for run in runs
    )


class CronScheduler:
    def __init__(
        self,
        conn,
        runner: TaskRunner,
        config: SchedulerConfig,
        scheduler: AsyncIOScheduler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.runner = runner
        self.config = config
        self._logger = logger or logging.getLogger("feedsync.scheduler")
        self._scheduler = scheduler or AsyncIOScheduler(
            timezone=config.timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": config.misfire_grace_seconds,
            },
        )

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self) -> int:
        """Register triggers for the enabled jobs and start ticking."""
        if not self.config.enabled:
            log_event(self._logger, logging.INFO, "scheduler_disabled")
            return 0
        count = self._register_enabled_jobs()
        self._scheduler.start()
        log_event(self._logger, logging.INFO, "scheduler_started", jobs=count)
        return count

    def reload(self) -> int:
        """Drop every trigger and rebuild them from the jobs enabled right now."""
        self._scheduler.remove_all_jobs()
        count = self._register_enabled_jobs()
        log_event(self._logger, logging.INFO, "scheduler_reloaded", jobs=count)
        return count

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log_event(self._logger, logging.INFO, "scheduler_stopped")

    def scheduled(self) -> dict[str, str]:
        return {job.id: str(job.trigger) for job in self._scheduler.get_jobs()}

    def _register_enabled_jobs(self) -> int:
        count = 0
        for job in list_jobs(self.conn, enabled_only=True):
            expression = cron_for_job(job)
            if expression is None:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "job_schedule_unsupported",
                    job_type=job.job_type,
                    interval_seconds=job.frequency_seconds,
                )
                continue
            try:
                trigger = parse_cron(expression, self.config.timezone)
            except ValueError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "job_schedule_invalid",
                    job_type=job.job_type,
                    cron=expression,
                    error=str(exc),
                )
                continue
            self._scheduler.add_job(
                self._fire,
                trigger=trigger,
                args=[job.id],
                id=f"job-{job.id}",
                name=job.job_type,
                replace_existing=True,
            )
            log_event(
                self._logger,
                logging.INFO,
                "job_scheduled",
                job_type=job.job_type,
                cron=expression,
            )
            count += 1
        return count

    async def _fire(self, job_id: int) -> None:
        job = get_job(self.conn, job_id)
        if job is None:
            log_event(self._logger, logging.INFO, "job_trigger_ignored", job_id=job_id)
            return
        outcome = await self.runner.run(job)
        log_event(
            self._logger,
            logging.DEBUG,
            "job_trigger_done",
            job_type=job.job_type,
            status=outcome.status,
        )
