from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import log_event, utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("feedsync.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                log_event(logger, logging.DEBUG, "migration_skipped", version=version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            log_event(logger, logging.INFO, "migration_applied", version=version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            job_type TEXT NOT NULL UNIQUE,
            component TEXT NOT NULL,
            frequency_cron TEXT NULL,
            frequency_seconds INTEGER NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_run_at TEXT NULL,
            last_status TEXT NULL,
            last_result TEXT NULL,
            error_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            CHECK (frequency_cron IS NULL OR frequency_seconds IS NULL)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            provider_type TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            credential TEXT NULL,
            config_json TEXT NOT NULL DEFAULT '{}',
            job_id INTEGER NULL REFERENCES jobs(id) ON DELETE SET NULL,
            last_sync_at TEXT NULL,
            last_error TEXT NULL,
            item_count INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            calls_used_today INTEGER NOT NULL DEFAULT 0,
            daily_call_quota INTEGER NOT NULL DEFAULT 180,
            quota_reset_date TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_id INTEGER NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
            provider_type TEXT NOT NULL,
            external_id TEXT NULL,
            url TEXT NOT NULL,
            title TEXT NOT NULL,
            excerpt TEXT NULL,
            author TEXT NULL,
            published_at TEXT NULL,
            tags_json TEXT NULL,
            raw_json TEXT NULL,
            fetched_at TEXT NOT NULL,
            is_pinned INTEGER NOT NULL DEFAULT 0,
            is_starred INTEGER NOT NULL DEFAULT 0,
            is_dismissed INTEGER NOT NULL DEFAULT 0,
            linked_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_items_provider_external
        ON items(provider_type, external_id)
        WHERE external_id IS NOT NULL AND external_id != ''
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_items_provider_url
        ON items(provider_type, url)
        WHERE external_id IS NULL OR external_id = ''
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_items_source_published
        ON items(source_id, published_at, fetched_at)
        """
    )


def _migration_job_runs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
            job_type TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NULL,
            status TEXT NOT NULL,
            result TEXT NULL,
            error_message TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_job_runs_job_started
        ON job_runs(job_id, started_at DESC)
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_job_runs", _migration_job_runs),
    ]
