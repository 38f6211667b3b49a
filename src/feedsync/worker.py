from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from .config import ConfigError
from .models import STATUS_ERROR
from .runtime import Runtime
from .services.jobs_service import run_job_now
from .storage import JobNotFoundError
from .utils import configure_logging, json_dumps, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("feedsync.worker")


async def serve(db_path: str | None = None) -> int:
    """Run the scheduler until SIGINT/SIGTERM; SIGHUP rebuilds the triggers."""
    logger = _setup_logging()
    try:
        runtime = Runtime.open(db_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    if hasattr(signal, "SIGHUP"):
        try:
            loop.add_signal_handler(signal.SIGHUP, runtime.scheduler.reload)
        except (NotImplementedError, RuntimeError):
            pass

    async with runtime:
        count = runtime.scheduler.start()
        log_event(logger, logging.INFO, "worker_started", scheduled_jobs=count)
        await stop.wait()
        log_event(logger, logging.INFO, "worker_stopping")
    return 0


async def run_once(job_types: list[str], db_path: str | None = None) -> int:
    logger = _setup_logging()
    try:
        runtime = Runtime.open(db_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    exit_code = 0
    async with runtime:
        for job_type in job_types:
            try:
                outcome = await run_job_now(runtime, job_type)
            except JobNotFoundError:
                log_event(logger, logging.ERROR, "job_not_found", job_type=job_type)
                exit_code = 1
                continue
            print(json_dumps({"job_type": job_type, **outcome.to_dict()}))
            if outcome.status == STATUS_ERROR:
                exit_code = 1
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedsync-worker", description="feedsync scheduler daemon")
    parser.add_argument("--db", default=None, help="SQLite path (defaults to $FS_DATA_DIR/state.sqlite3)")
    parser.add_argument(
        "--once",
        action="append",
        default=[],
        metavar="JOB_TYPE",
        help="Run the given job type once and exit (repeatable)",
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.once:
        return asyncio.run(run_once(args.once, args.db))
    return asyncio.run(serve(args.db))


if __name__ == "__main__":
    raise SystemExit(main())
