from __future__ import annotations

import json
from typing import Any

from .db import DBConn, connect_db
from .models import Job, JobRun, NormalizedItem, RunOutcome, Source, StoredItem
from .utils import json_dumps, json_loads_or, utc_now_iso

JOB_COLUMNS = (
    "id, name, job_type, component, frequency_cron, frequency_seconds, enabled, "
    "last_run_at, last_status, last_result, error_count, created_at, updated_at"
)
SOURCE_COLUMNS = (
    "id, name, provider_type, enabled, credential, config_json, job_id, last_sync_at, "
    "last_error, item_count, error_count, calls_used_today, daily_call_quota, "
    "quota_reset_date, created_at, updated_at"
)
ITEM_COLUMNS = (
    "id, source_id, provider_type, external_id, url, title, excerpt, author, published_at, "
    "tags_json, fetched_at, is_pinned, is_starred, is_dismissed, linked_at"
)
ITEM_FLAGS = {"pinned": "is_pinned", "starred": "is_starred", "dismissed": "is_dismissed"}


class SourceNotFoundError(LookupError):
    pass


class JobNotFoundError(LookupError):
    pass


def init_db(path: str | None = None) -> DBConn:
    if path is None:
        from .config import get_state_db_path

        path = get_state_db_path()
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# Jobs


def _row_to_job(row) -> Job:
    return Job(
        id=int(row["id"]),
        name=row["name"],
        job_type=row["job_type"],
        component=row["component"],
        frequency_cron=row["frequency_cron"],
        frequency_seconds=row["frequency_seconds"],
        enabled=bool(row["enabled"]),
        last_run_at=row["last_run_at"],
        last_status=row["last_status"],
        last_result=json_loads_or(row["last_result"], None),
        error_count=int(row["error_count"] or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def list_jobs(conn: Any, enabled_only: bool = False) -> list[Job]:
    sql = f"SELECT {JOB_COLUMNS} FROM jobs"
    if enabled_only:
        sql += " WHERE enabled = 1"
    sql += " ORDER BY component, job_type"
    return [_row_to_job(row) for row in conn.execute(sql).fetchall()]


def get_job(conn: Any, job_id: int) -> Job | None:
    row = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def get_job_by_type(conn: Any, job_type: str) -> Job | None:
    row = conn.execute(
        f"SELECT {JOB_COLUMNS} FROM jobs WHERE job_type = ?", (job_type,)
    ).fetchone()
    return _row_to_job(row) if row else None


def insert_job(
    conn: Any,
    *,
    name: str,
    job_type: str,
    component: str,
    cron: str | None = None,
    interval_seconds: int | None = None,
    enabled: bool = True,
    ignore_existing: bool = False,
    commit: bool = True,
) -> int:
    if cron and interval_seconds:
        raise ValueError("a job takes either a cron expression or an interval, not both")
    now = utc_now_iso()
    verb = "INSERT OR IGNORE" if ignore_existing else "INSERT"
    conn.execute(
        f"""
        {verb} INTO jobs
            (name, job_type, component, frequency_cron, frequency_seconds, enabled,
             error_count, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
        """,
        (name, job_type, component, cron, interval_seconds, 1 if enabled else 0, now, now),
    )
    if commit:
        conn.commit()
    row = conn.execute("SELECT id FROM jobs WHERE job_type = ?", (job_type,)).fetchone()
    return int(row["id"])


def update_job_fields(
    conn: Any,
    job_type: str,
    *,
    enabled: bool | None = None,
    cron: str | None = None,
    interval_seconds: int | None = None,
    name: str | None = None,
    commit: bool = True,
) -> Job:
    job = get_job_by_type(conn, job_type)
    if job is None:
        raise JobNotFoundError(job_type)
    assignments: list[str] = []
    params: list[Any] = []
    if enabled is not None:
        assignments.append("enabled = ?")
        params.append(1 if enabled else 0)
    if name is not None:
        assignments.append("name = ?")
        params.append(name)
    if cron is not None:
        assignments.append("frequency_cron = ?")
        assignments.append("frequency_seconds = NULL")
        params.append(cron)
    elif interval_seconds is not None:
        assignments.append("frequency_seconds = ?")
        assignments.append("frequency_cron = NULL")
        params.append(interval_seconds)
    if assignments:
        assignments.append("updated_at = ?")
        params.append(utc_now_iso())
        params.append(job.id)
        conn.execute(f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ?", params)
        if commit:
            conn.commit()
    return get_job(conn, job.id)


def record_job_outcome(conn: Any, job_id: int, outcome: RunOutcome, ran_at: str) -> None:
    conn.execute(
        """
        UPDATE jobs
        SET last_run_at = ?,
            last_status = ?,
            last_result = ?,
            error_count = error_count + ?,
            updated_at = ?
        WHERE id = ?
        """,
        (
            ran_at,
            outcome.status,
            json_dumps(outcome.result) if outcome.result is not None else None,
            1 if outcome.status == "error" else 0,
            utc_now_iso(),
            job_id,
        ),
    )
    conn.commit()


def delete_job(conn: Any, job_id: int, commit: bool = True) -> None:
    conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
    if commit:
        conn.commit()


def insert_job_run(
    conn: Any,
    *,
    job_id: int,
    job_type: str,
    started_at: str,
    finished_at: str,
    outcome: RunOutcome,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO job_runs
            (job_id, job_type, started_at, finished_at, status, result, error_message)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            started_at,
            finished_at,
            outcome.status,
            json_dumps(outcome.result) if outcome.result is not None else None,
            outcome.error_message,
        ),
    )
    conn.commit()
    return int(cursor.lastrowid)


def list_job_runs(
    conn: Any, job_id: int | None = None, limit: int = 50, offset: int = 0
) -> list[JobRun]:
    sql = (
        "SELECT id, job_id, job_type, started_at, finished_at, status, result, error_message "
        "FROM job_runs"
    )
    params: list[Any] = []
    if job_id is not None:
        sql += " WHERE job_id = ?"
        params.append(job_id)
    sql += " ORDER BY started_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    runs = []
    for row in conn.execute(sql, params).fetchall():
        runs.append(
            JobRun(
                id=int(row["id"]),
                job_id=int(row["job_id"]),
                job_type=row["job_type"],
                started_at=row["started_at"],
                finished_at=row["finished_at"],
                status=row["status"],
                result=json_loads_or(row["result"], None),
                error_message=row["error_message"],
            )
        )
    return runs


# Sources


def _row_to_source(row) -> Source:
    config = json_loads_or(row["config_json"], {})
    return Source(
        id=int(row["id"]),
        name=row["name"],
        provider_type=row["provider_type"],
        enabled=bool(row["enabled"]),
        credential=row["credential"],
        config=config if isinstance(config, dict) else {},
        job_id=row["job_id"],
        last_sync_at=row["last_sync_at"],
        last_error=row["last_error"],
        item_count=int(row["item_count"] or 0),
        error_count=int(row["error_count"] or 0),
        calls_used_today=int(row["calls_used_today"] or 0),
        daily_call_quota=int(row["daily_call_quota"] or 0),
        quota_reset_date=row["quota_reset_date"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def insert_source(
    conn: Any,
    *,
    name: str,
    provider_type: str,
    enabled: bool,
    credential: str | None,
    config: dict[str, Any],
    daily_call_quota: int,
    commit: bool = True,
) -> int:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO sources
            (name, provider_type, enabled, credential, config_json, daily_call_quota,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            name,
            provider_type,
            1 if enabled else 0,
            credential,
            json_dumps(config),
            daily_call_quota,
            now,
            now,
        ),
    )
    if commit:
        conn.commit()
    return int(cursor.lastrowid)


def get_source(conn: Any, source_id: int) -> Source | None:
    row = conn.execute(
        f"SELECT {SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,)
    ).fetchone()
    return _row_to_source(row) if row else None


def require_source(conn: Any, source_id: int) -> Source:
    source = get_source(conn, source_id)
    if source is None:
        raise SourceNotFoundError(f"source {source_id} not found")
    return source


def list_sources(conn: Any, enabled_only: bool = False) -> list[Source]:
    sql = f"SELECT {SOURCE_COLUMNS} FROM sources"
    if enabled_only:
        sql += " WHERE enabled = 1"
    sql += " ORDER BY id"
    return [_row_to_source(row) for row in conn.execute(sql).fetchall()]


def update_source_fields(conn: Any, source_id: int, commit: bool = True, **fields: Any) -> None:
    allowed = {
        "name",
        "enabled",
        "credential",
        "config",
        "job_id",
        "daily_call_quota",
        "calls_used_today",
        "quota_reset_date",
    }
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"unknown source fields: {', '.join(sorted(unknown))}")
    assignments: list[str] = []
    params: list[Any] = []
    for key, value in fields.items():
        if key == "config":
            assignments.append("config_json = ?")
            params.append(json_dumps(value))
        elif key == "enabled":
            assignments.append("enabled = ?")
            params.append(1 if value else 0)
        else:
            assignments.append(f"{key} = ?")
            params.append(value)
    if not assignments:
        return
    assignments.append("updated_at = ?")
    params.append(utc_now_iso())
    params.append(source_id)
    conn.execute(f"UPDATE sources SET {', '.join(assignments)} WHERE id = ?", params)
    if commit:
        conn.commit()


# Quota usage is added to the stored count; a reset date older than ``today``
# restarts the count first.
_QUOTA_ASSIGNMENTS = """
            calls_used_today = CASE
                WHEN quota_reset_date IS NULL OR quota_reset_date < ? THEN ?
                ELSE calls_used_today + ?
            END,
            quota_reset_date = ?"""


def _quota_params(calls_used: int, today: str) -> tuple[Any, ...]:
    return (today, calls_used, calls_used, today)


def record_sync_success(
    conn: Any,
    source_id: int,
    *,
    inserted: int,
    synced_at: str,
    calls_used: int,
    today: str,
) -> None:
    conn.execute(
        f"""
        UPDATE sources
        SET item_count = item_count + ?,
            last_sync_at = ?,
            last_error = NULL,
            error_count = 0,{_QUOTA_ASSIGNMENTS},
            updated_at = ?
        WHERE id = ?
        """,
        (inserted, synced_at, *_quota_params(calls_used, today), utc_now_iso(), source_id),
    )
    conn.commit()


def record_sync_error(conn: Any, source_id: int, error: str) -> None:
    conn.execute(
        """
        UPDATE sources
        SET last_error = ?, error_count = error_count + 1, updated_at = ?
        WHERE id = ?
        """,
        (error, utc_now_iso(), source_id),
    )
    conn.commit()


def add_quota_usage(conn: Any, source_id: int, *, calls_used: int, today: str) -> None:
    conn.execute(
        f"""
        UPDATE sources
        SET{_QUOTA_ASSIGNMENTS},
            updated_at = ?
        WHERE id = ?
        """,
        (*_quota_params(calls_used, today), utc_now_iso(), source_id),
    )
    conn.commit()


def delete_source(conn: Any, source_id: int, commit: bool = True) -> None:
    conn.execute("DELETE FROM items WHERE source_id = ?", (source_id,))
    conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
    if commit:
        conn.commit()


# Items


def _row_to_item(row) -> StoredItem:
    tags = json_loads_or(row["tags_json"], [])
    return StoredItem(
        id=int(row["id"]),
        source_id=int(row["source_id"]),
        provider_type=row["provider_type"],
        external_id=row["external_id"],
        url=row["url"],
        title=row["title"],
        excerpt=row["excerpt"],
        author=row["author"],
        published_at=row["published_at"],
        tags=tags if isinstance(tags, list) else [],
        fetched_at=row["fetched_at"],
        is_pinned=bool(row["is_pinned"]),
        is_starred=bool(row["is_starred"]),
        is_dismissed=bool(row["is_dismissed"]),
        linked_at=row["linked_at"],
    )


def find_item(
    conn: Any, provider_type: str, external_id: str | None, url: str
) -> StoredItem | None:
    if external_id:
        row = conn.execute(
            f"SELECT {ITEM_COLUMNS} FROM items WHERE provider_type = ? AND external_id = ?",
            (provider_type, external_id),
        ).fetchone()
    else:
        row = conn.execute(
            f"""
            SELECT {ITEM_COLUMNS} FROM items
            WHERE provider_type = ? AND url = ? AND (external_id IS NULL OR external_id = '')
            ORDER BY id LIMIT 1
            """,
            (provider_type, url),
        ).fetchone()
    return _row_to_item(row) if row else None


def upsert_item(conn: Any, source_id: int, item: NormalizedItem, fetched_at: str) -> bool:
    """Insert or refresh one item; returns True when a new row was created."""
    existing = find_item(conn, item.provider_type, item.external_id, item.url)
    now = utc_now_iso()
    tags_json = json_dumps(item.tags) if item.tags else None
    raw_json = json_dumps(item.raw_payload) if item.raw_payload else None
    if existing:
        conn.execute(
            """
            UPDATE items
            SET url = ?, title = ?, excerpt = ?, author = ?, published_at = ?,
                tags_json = ?, raw_json = ?, fetched_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                item.url,
                item.title,
                item.excerpt,
                item.author,
                item.published_at,
                tags_json,
                raw_json,
                fetched_at,
                now,
                existing.id,
            ),
        )
        return False
    conn.execute(
        """
        INSERT INTO items
            (source_id, provider_type, external_id, url, title, excerpt, author,
             published_at, tags_json, raw_json, fetched_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source_id,
            item.provider_type,
            item.external_id or None,
            item.url,
            item.title,
            item.excerpt,
            item.author,
            item.published_at,
            tags_json,
            raw_json,
            fetched_at,
            now,
            now,
        ),
    )
    return True


def count_items(conn: Any, source_id: int | None = None) -> int:
    if source_id is None:
        row = conn.execute("SELECT COUNT(*) FROM items").fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) FROM items WHERE source_id = ?", (source_id,)
        ).fetchone()
    return int(row[0])


def list_items(conn: Any, source_id: int, limit: int = 50, offset: int = 0) -> list[StoredItem]:
    rows = conn.execute(
        f"""
        SELECT {ITEM_COLUMNS} FROM items
        WHERE source_id = ?
        ORDER BY COALESCE(published_at, fetched_at) DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (source_id, limit, offset),
    ).fetchall()
    return [_row_to_item(row) for row in rows]


def set_item_flag(conn: Any, item_id: int, flag: str, value: bool) -> None:
    if flag == "linked":
        conn.execute(
            "UPDATE items SET linked_at = ?, updated_at = ? WHERE id = ?",
            (utc_now_iso() if value else None, utc_now_iso(), item_id),
        )
    elif flag in ITEM_FLAGS:
        conn.execute(
            f"UPDATE items SET {ITEM_FLAGS[flag]} = ?, updated_at = ? WHERE id = ?",
            (1 if value else 0, utc_now_iso(), item_id),
        )
    else:
        raise ValueError(f"unknown item flag {flag}")
    conn.commit()


def prune_items(conn: Any, source_id: int, max_keep: int) -> int:
    """Delete the oldest unprotected items beyond ``max_keep`` for one source."""
    excess = count_items(conn, source_id) - max_keep
    if excess <= 0:
        return 0
    rows = conn.execute(
        """
        SELECT id FROM items
        WHERE source_id = ?
          AND is_pinned = 0
          AND is_starred = 0
          AND is_dismissed = 0
          AND linked_at IS NULL
        ORDER BY COALESCE(published_at, fetched_at) ASC, id ASC
        LIMIT ?
        """,
        (source_id, excess),
    ).fetchall()
    ids = [(int(row["id"]),) for row in rows]
    if ids:
        conn.executemany("DELETE FROM items WHERE id = ?", ids)
    conn.commit()
    return len(ids)
