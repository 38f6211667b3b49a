import logging
import sqlite3

import pytest

from feedsync.migrations import _get_migrations, apply_migrations


@pytest.fixture
def raw_conn(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    yield conn
    conn.close()


def test_rerunning_migrations_records_each_version_once(raw_conn):
    for _ in range(3):
        apply_migrations(raw_conn)

    applied = [row[0] for row in raw_conn.execute("SELECT version FROM schema_migrations")]
    assert sorted(applied) == sorted(version for version, _ in _get_migrations())
    assert len(applied) == len(set(applied))

    tables = {
        row[0] for row in raw_conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    assert {"settings", "jobs", "job_runs", "sources", "items"} <= tables


def test_jobs_reject_cron_and_interval_together(raw_conn):
    apply_migrations(raw_conn)
    with pytest.raises(sqlite3.IntegrityError):
        raw_conn.execute(
            """
            INSERT INTO jobs
                (name, job_type, component, frequency_cron, frequency_seconds, created_at, updated_at)
            VALUES ('x', 'x', 'test', '0 0 * * * *', 60, 'now', 'now')
            """
        )


def test_items_without_external_id_are_unique_per_url(raw_conn):
    apply_migrations(raw_conn)
    raw_conn.execute(
        "INSERT INTO sources (name, provider_type, created_at, updated_at) VALUES ('s', 'newsdata', 'now', 'now')"
    )
    insert = """
        INSERT INTO items
            (source_id, provider_type, external_id, url, title, fetched_at, created_at, updated_at)
        VALUES (1, 'newsdata', ?, 'https://example.com/a', 't', 'now', 'now', 'now')
    """
    raw_conn.execute(insert, (None,))
    raw_conn.execute(insert, ("a-1",))
    raw_conn.execute(insert, ("a-2",))
    with pytest.raises(sqlite3.IntegrityError):
        raw_conn.execute(insert, (None,))
    with pytest.raises(sqlite3.IntegrityError):
        raw_conn.execute(insert, ("",))


def test_migrations_log_applied_versions(raw_conn, caplog):
    with caplog.at_level(logging.DEBUG, logger="feedsync.migrations"):
        apply_migrations(raw_conn)
        apply_migrations(raw_conn)
    messages = [record.getMessage() for record in caplog.records]
    assert "event=migration_applied version=001_initial_schema" in messages
    assert "event=migration_skipped version=002_job_runs" in messages
