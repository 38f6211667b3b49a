from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Iterator

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str


@dataclass(frozen=True)
class HttpConfig:
    connect_timeout_seconds: float
    read_timeout_seconds: float
    user_agent: str
    max_retries: int
    backoff_seconds: float


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool
    timezone: str
    misfire_grace_seconds: int


@dataclass(frozen=True)
class SyncConfig:
    per_run_page_ceiling: int
    default_daily_quota: int
    max_keep: int
    default_cron: str


@dataclass(frozen=True)
class EventsConfig:
    webhook_url: str


@dataclass(frozen=True)
class SeedJob:
    name: str
    job_type: str
    component: str
    cron: str | None
    interval_seconds: int | None
    enabled: bool


@dataclass(frozen=True)
class Config:
    app: AppConfig
    http: HttpConfig
    scheduler: SchedulerConfig
    sync: SyncConfig
    events: EventsConfig
    seed_jobs: list[SeedJob]


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "feedsync",
    },
    "http": {
        "connect_timeout_seconds": 10.0,
        "read_timeout_seconds": 30.0,
        "user_agent": "feedsync/0.1",
        "max_retries": 3,
        "backoff_seconds": 1.0,
    },
    "scheduler": {
        "enabled": True,
        "timezone": "UTC",
        "misfire_grace_seconds": 60,
    },
    "sync": {
        "per_run_page_ceiling": 3,
        "default_daily_quota": 180,
        "max_keep": 4000,
        "default_cron": "0 */45 * * * *",
    },
    "events": {
        "webhook_url": "",
    },
    "seed_jobs": [
        {
            "name": "Sync all sources",
            "job_type": "sources_sync_all",
            "component": "sources",
            "cron": "0 0 * * * *",
            "interval_seconds": None,
            "enabled": False,
        }
    ],
}

CONFIG_KEY = "config.runtime"
DEFAULT_DATA_DIR = "/data"
STATE_DB_NAME = "state.sqlite3"
SEED_JOB_KEYS = {"name", "job_type", "component", "cron", "interval_seconds", "enabled"}


def get_data_dir() -> str:
    return os.environ.get("FS_DATA_DIR", DEFAULT_DATA_DIR)


def get_state_db_path() -> str:
    return os.path.join(get_data_dir(), STATE_DB_NAME)


def load_config_file(path: str | None = None) -> dict[str, Any]:
    """Read the optional YAML seed file and merge it over the defaults."""
    path = path or os.environ.get("FS_CONFIG_PATH")
    cfg = _deep_copy(DEFAULT_CONFIG)
    if not path or not os.path.exists(path):
        return cfg
    with open(path, "r", encoding="utf-8") as handle:
        try:
            loaded = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"{path} is not valid YAML: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return _deep_merge(cfg, loaded)


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, load_config_file())
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def dump_config_yaml(cfg: dict[str, Any]) -> str:
    return yaml.safe_dump(cfg, sort_keys=False)


def parse_config_yaml(text: str) -> dict[str, Any]:
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError("config must be a mapping")
    return loaded


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    """Check ``cfg`` against the shape of ``DEFAULT_CONFIG``, then the value ranges."""
    errors = list(_shape_errors(cfg, DEFAULT_CONFIG, "config.runtime"))
    if not errors:
        _validate_semantics(cfg, errors)
    return errors


# (example type, accepted, rejected, label). bool is matched before int and
# never counts as a number.
_SCALAR_RULES: list[tuple[type, tuple[type, ...], tuple[type, ...], str]] = [
    (bool, (bool,), (), "a boolean"),
    (int, (int,), (bool,), "an integer"),
    (float, (int, float), (bool,), "a number"),
    (str, (str,), (), "a string"),
]


def _shape_errors(value: Any, example: Any, path: str) -> Iterator[str]:
    if isinstance(example, dict):
        if not isinstance(value, dict):
            yield f"{path} must be an object"
            return
        yield from (f"missing {path}.{key}" for key in example if key not in value)
        yield from (f"unknown {path}.{key}" for key in value if key not in example)
        for key in example.keys() & value.keys():
            yield from _shape_errors(value[key], example[key], f"{path}.{key}")
        return
    if isinstance(example, list):
        if not isinstance(value, list):
            yield f"{path} must be a list"
        elif example and any(not isinstance(item, type(example[0])) for item in value):
            yield f"{path} must be a list of {type(example[0]).__name__}"
        return
    for example_type, accepted, rejected, label in _SCALAR_RULES:
        if isinstance(example, example_type):
            if not isinstance(value, accepted) or isinstance(value, rejected):
                yield f"{path} must be {label}"
            return


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    sync = cfg["sync"]
    if sync["per_run_page_ceiling"] < 1:
        errors.append("config.runtime.sync.per_run_page_ceiling must be >= 1")
    if sync["default_daily_quota"] < 0:
        errors.append("config.runtime.sync.default_daily_quota must be >= 0")
    if sync["max_keep"] < 1:
        errors.append("config.runtime.sync.max_keep must be >= 1")
    http = cfg["http"]
    if http["connect_timeout_seconds"] <= 0 or http["read_timeout_seconds"] <= 0:
        errors.append("config.runtime.http timeouts must be positive")
    if http["max_retries"] < 0:
        errors.append("config.runtime.http.max_retries must be >= 0")
    for index, entry in enumerate(cfg["seed_jobs"]):
        path = f"config.runtime.seed_jobs[{index}]"
        unknown = set(entry.keys()) - SEED_JOB_KEYS
        if unknown:
            errors.append(f"unknown {path}." + ",".join(sorted(unknown)))
        if not entry.get("job_type"):
            errors.append(f"missing {path}.job_type")
        if entry.get("cron") and entry.get("interval_seconds"):
            errors.append(f"{path} sets both cron and interval_seconds")


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    http_cfg = cfg.get("http") or {}
    scheduler_cfg = cfg.get("scheduler") or {}
    sync_cfg = cfg.get("sync") or {}
    events_cfg = cfg.get("events") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
    )

    http = HttpConfig(
        connect_timeout_seconds=float(http_cfg.get("connect_timeout_seconds")),
        read_timeout_seconds=float(http_cfg.get("read_timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
        max_retries=int(http_cfg.get("max_retries")),
        backoff_seconds=float(http_cfg.get("backoff_seconds")),
    )

    scheduler = SchedulerConfig(
        enabled=bool(scheduler_cfg.get("enabled")),
        timezone=str(scheduler_cfg.get("timezone")),
        misfire_grace_seconds=int(scheduler_cfg.get("misfire_grace_seconds")),
    )

    sync = SyncConfig(
        per_run_page_ceiling=int(sync_cfg.get("per_run_page_ceiling")),
        default_daily_quota=int(sync_cfg.get("default_daily_quota")),
        max_keep=int(sync_cfg.get("max_keep")),
        default_cron=str(sync_cfg.get("default_cron")),
    )

    events = EventsConfig(webhook_url=str(events_cfg.get("webhook_url") or ""))

    seed_jobs = []
    for entry in cfg.get("seed_jobs") or []:
        interval = entry.get("interval_seconds")
        seed_jobs.append(
            SeedJob(
                name=str(entry.get("name") or entry["job_type"]),
                job_type=str(entry["job_type"]),
                component=str(entry.get("component") or "system"),
                cron=entry.get("cron") or None,
                interval_seconds=int(interval) if interval else None,
                enabled=bool(entry.get("enabled", True)),
            )
        )

    return Config(
        app=app,
        http=http,
        scheduler=scheduler,
        sync=sync,
        events=events,
        seed_jobs=seed_jobs,
    )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
