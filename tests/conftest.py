from __future__ import annotations

import base64
import logging

import pytest

from feedsync.config import HttpConfig, bootstrap_runtime_config, load_runtime_config
from feedsync.security.secrets import CredentialCodec
from feedsync.storage import init_db

from helpers import SleepRecorder


@pytest.fixture(autouse=True)
def master_key(monkeypatch):
    key = base64.urlsafe_b64encode(b"a" * 32).decode("utf-8")
    monkeypatch.setenv("FS_MASTER_KEY", key)
    monkeypatch.setenv("FS_KEY_ID", "v1")
    return key


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    monkeypatch.setenv("FS_DATA_DIR", str(data_dir))
    monkeypatch.delenv("FS_CONFIG_PATH", raising=False)
    return str(data_dir / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    bootstrap_runtime_config(connection)
    yield connection
    connection.close()


@pytest.fixture
def config(conn):
    return load_runtime_config(conn)


@pytest.fixture
def codec():
    return CredentialCodec()


@pytest.fixture
def http_config():
    return HttpConfig(
        connect_timeout_seconds=5.0,
        read_timeout_seconds=5.0,
        user_agent="feedsync/test",
        max_retries=3,
        backoff_seconds=1.0,
    )


@pytest.fixture
def sleeper():
    return SleepRecorder()


def _pytest_owned(handler: logging.Handler) -> bool:
    return type(handler).__module__.startswith("_pytest")


@pytest.fixture
def root_logger():
    """Undo handlers and levels that configure_logging puts on the root logger."""
    root = logging.getLogger()
    saved = [handler for handler in root.handlers if not _pytest_owned(handler)]
    saved_level = root.level
    yield root
    for handler in root.handlers:
        if handler not in saved and not _pytest_owned(handler):
            handler.close()
    root.handlers = saved + [handler for handler in root.handlers if _pytest_owned(handler)]
    root.setLevel(saved_level)
