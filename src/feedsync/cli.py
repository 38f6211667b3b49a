from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable

from .config import (
    ConfigError,
    dump_config_yaml,
    get_runtime_config,
    load_runtime_config,
    parse_config_yaml,
    set_runtime_config,
)
from .connectors.base import ConnectorError
from .runtime import Runtime
from .security.secrets import CredentialCodec, CryptoError
from .services import jobs_service, sources_service
from .storage import init_db
from .utils import configure_logging, json_dumps, log_event

DEFAULT_CREDENTIAL_ENV = "NEWSDATA_API_KEY"


def _setup_logging() -> logging.Logger:
    return configure_logging("feedsync.cli", default_level="WARNING")


def _print(value: Any) -> None:
    print(json.dumps(json.loads(json_dumps(value)), indent=2))


def _with_runtime(args: argparse.Namespace, action: Callable[[Runtime], Awaitable[Any]]) -> Any:
    async def runner() -> Any:
        async with Runtime.open(args.db) as runtime:
            return await action(runtime)

    return asyncio.run(runner())


def _load_config_arg(args: argparse.Namespace) -> dict[str, Any] | None:
    if getattr(args, "config_file", None):
        with open(args.config_file, "r", encoding="utf-8") as handle:
            return parse_config_yaml(handle.read())
    if getattr(args, "config_json", None):
        loaded = json.loads(args.config_json)
        if not isinstance(loaded, dict):
            raise ValueError("--config-json must be a JSON object")
        return loaded
    return None


def _credential_arg(args: argparse.Namespace) -> str | None:
    if getattr(args, "credential", None):
        return args.credential
    env_name = getattr(args, "credential_env", None)
    if env_name:
        value = os.environ.get(env_name, "")
        if not value:
            raise ValueError(f"{env_name} is not set")
        return value
    return None


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    jobs_service.seed_jobs(conn, load_runtime_config(conn).seed_jobs)
    _print([job.to_dict() for job in jobs_service.list_jobs(conn)])
    return 0


def _cmd_jobs_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    outcome = _with_runtime(args, lambda runtime: jobs_service.run_job_now(runtime, args.job_type))
    _print(outcome.to_dict())
    return 1 if outcome.status == "error" else 0


def _cmd_jobs_update(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    job = jobs_service.update_job(
        conn,
        args.job_type,
        enabled=args.enabled,
        cron=args.cron,
        interval_seconds=args.interval,
        name=args.name,
    )
    log_event(logger, logging.INFO, "job_updated", job_type=job.job_type)
    _print(job.to_dict())
    return 0


def _cmd_jobs_history(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    job_id = None
    if args.job_type:
        job_id = jobs_service.get_job_or_raise(conn, args.job_type).id
    runs = jobs_service.job_history(conn, job_id=job_id, limit=args.limit)
    _print([run.to_dict() for run in runs])
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    _print([source.to_public_dict() for source in sources_service.list_sources(conn)])
    return 0


def _cmd_sources_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    config = load_runtime_config(conn)
    try:
        payload = {
            "name": args.name,
            "provider_type": args.provider,
            "enabled": not args.disabled,
            "config": _load_config_arg(args),
            "credential": _credential_arg(args),
            "daily_call_quota": args.quota,
            "cron": args.cron,
            "interval_seconds": args.interval,
        }
        source = sources_service.create_source(conn, CredentialCodec(), config.sync, payload)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "source_created", source_id=source.id)
    _print(source.to_public_dict())
    return 0


def _cmd_sources_update(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    payload = {
        "name": args.name,
        "enabled": args.enabled,
        "config": _load_config_arg(args),
        "credential": _credential_arg(args),
        "daily_call_quota": args.quota,
        "cron": args.cron,
        "interval_seconds": args.interval,
    }
    source = sources_service.update_source(conn, CredentialCodec(), args.source_id, payload)
    _print(source.to_public_dict())
    return 0


def _cmd_sources_remove(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    sources_service.delete_source(conn, args.source_id)
    log_event(logger, logging.INFO, "source_deleted", source_id=args.source_id)
    return 0


def _cmd_sources_sync(args: argparse.Namespace, logger: logging.Logger) -> int:
    result = _with_runtime(
        args, lambda runtime: jobs_service.sync_source_now(runtime, args.source_id)
    )
    _print(result.to_dict())
    return 1 if result.status == "error" else 0


def _cmd_sources_sync_all(args: argparse.Namespace, logger: logging.Logger) -> int:
    result = _with_runtime(args, jobs_service.sync_all_sources)
    _print(result.to_dict())
    return 1 if result.failed else 0


def _cmd_sources_test(args: argparse.Namespace, logger: logging.Logger) -> int:
    result = _with_runtime(
        args, lambda runtime: sources_service.test_source_connection(runtime, args.source_id)
    )
    _print(result.to_dict())
    return 0 if result.success else 1


def _cmd_sources_items(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    _print(sources_service.list_source_items(conn, args.source_id, limit=args.limit))
    return 0


def _cmd_items_flag(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    sources_service.flag_item(conn, args.item_id, args.flag, not args.off)
    return 0


def _cmd_providers_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    _print(sources_service.list_providers())
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    print(dump_config_yaml(get_runtime_config(conn)), end="")
    return 0


def _cmd_config_set(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    with open(args.path, "r", encoding="utf-8") as handle:
        cfg = parse_config_yaml(handle.read())
    set_runtime_config(conn, cfg)
    log_event(logger, logging.INFO, "config_updated", path=args.path)
    return 0


def _add_schedule_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--cron", default=None, help="Cron expression (sec min hour day month dow)")
    group.add_argument("--interval", type=int, default=None, help="Interval in seconds")


def _add_source_payload_args(parser: argparse.ArgumentParser) -> None:
    config_group = parser.add_mutually_exclusive_group()
    config_group.add_argument("--config-json", default=None, help="Provider config as JSON")
    config_group.add_argument("--config-file", default=None, help="Provider config as YAML file")
    credential_group = parser.add_mutually_exclusive_group()
    credential_group.add_argument("--credential", default=None, help="API key (stored encrypted)")
    credential_group.add_argument(
        "--credential-env",
        default=None,
        help=f"Read the API key from this env var (e.g. {DEFAULT_CREDENTIAL_ENV})",
    )
    parser.add_argument("--quota", type=int, default=None, help="Daily call quota")
    _add_schedule_args(parser)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedsync", description="feedsync CLI")
    parser.add_argument(
        "--db",
        default=None,
        help="SQLite path (defaults to $FS_DATA_DIR/state.sqlite3)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    jobs_parser = subparsers.add_parser("jobs", help="Inspect and run jobs")
    jobs_sub = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_list = jobs_sub.add_parser("list", help="List jobs")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_run = jobs_sub.add_parser("run", help="Run a job now")
    jobs_run.add_argument("job_type")
    jobs_run.set_defaults(func=_cmd_jobs_run)

    jobs_update = jobs_sub.add_parser("update", help="Change a job's schedule or state")
    jobs_update.add_argument("job_type")
    enabled_group = jobs_update.add_mutually_exclusive_group()
    enabled_group.add_argument("--enable", dest="enabled", action="store_true", default=None)
    enabled_group.add_argument("--disable", dest="enabled", action="store_false")
    jobs_update.add_argument("--name", default=None)
    _add_schedule_args(jobs_update)
    jobs_update.set_defaults(func=_cmd_jobs_update)

    jobs_history = jobs_sub.add_parser("history", help="Show recent job runs")
    jobs_history.add_argument("--job-type", default=None)
    jobs_history.add_argument("--limit", type=int, default=20)
    jobs_history.set_defaults(func=_cmd_jobs_history)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_sub = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_list = sources_sub.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_add = sources_sub.add_parser("add", help="Add a source and its sync job")
    sources_add.add_argument("--name", required=True)
    sources_add.add_argument("--provider", required=True, help="Provider type, e.g. newsdata")
    sources_add.add_argument("--disabled", action="store_true")
    _add_source_payload_args(sources_add)
    sources_add.set_defaults(func=_cmd_sources_add)

    sources_update = sources_sub.add_parser("update", help="Update a source")
    sources_update.add_argument("source_id", type=int)
    sources_update.add_argument("--name", default=None)
    source_enabled = sources_update.add_mutually_exclusive_group()
    source_enabled.add_argument("--enable", dest="enabled", action="store_true", default=None)
    source_enabled.add_argument("--disable", dest="enabled", action="store_false")
    _add_source_payload_args(sources_update)
    sources_update.set_defaults(func=_cmd_sources_update)

    sources_remove = sources_sub.add_parser("remove", help="Delete a source, its job and items")
    sources_remove.add_argument("source_id", type=int)
    sources_remove.set_defaults(func=_cmd_sources_remove)

    sources_sync = sources_sub.add_parser("sync", help="Sync one source now")
    sources_sync.add_argument("source_id", type=int)
    sources_sync.set_defaults(func=_cmd_sources_sync)

    sources_sync_all = sources_sub.add_parser("sync-all", help="Sync every enabled source")
    sources_sync_all.set_defaults(func=_cmd_sources_sync_all)

    sources_test = sources_sub.add_parser("test", help="Test a source's credential")
    sources_test.add_argument("source_id", type=int)
    sources_test.set_defaults(func=_cmd_sources_test)

    sources_items = sources_sub.add_parser("items", help="List stored items for a source")
    sources_items.add_argument("source_id", type=int)
    sources_items.add_argument("--limit", type=int, default=20)
    sources_items.set_defaults(func=_cmd_sources_items)

    items_parser = subparsers.add_parser("items", help="Manage stored items")
    items_sub = items_parser.add_subparsers(dest="items_command", required=True)
    items_flag = items_sub.add_parser("flag", help="Pin, star, dismiss or link an item")
    items_flag.add_argument("item_id", type=int)
    items_flag.add_argument("flag", choices=["pinned", "starred", "dismissed", "linked"])
    items_flag.add_argument("--off", action="store_true", help="Clear the flag instead")
    items_flag.set_defaults(func=_cmd_items_flag)

    providers_parser = subparsers.add_parser("providers", help="List available providers")
    providers_parser.set_defaults(func=_cmd_providers_list)

    config_parser = subparsers.add_parser("config", help="Show or replace runtime config")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_show = config_sub.add_parser("show", help="Print runtime config as YAML")
    config_show.set_defaults(func=_cmd_config_show)
    config_set = config_sub.add_parser("set", help="Replace runtime config from a YAML file")
    config_set.add_argument("path")
    config_set.set_defaults(func=_cmd_config_set)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    try:
        return args.func(args, logger)
    except (ConfigError, CryptoError, ConnectorError, LookupError, ValueError) as exc:
        log_event(logger, logging.ERROR, "command_failed", command=args.command, error=str(exc))
        print(f"error: {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
