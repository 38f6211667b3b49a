import logging
import os
import sys

from feedsync.utils import configure_logging, log_event, redact_secrets


def test_repeated_setup_attaches_each_handler_once(root_logger, tmp_path, monkeypatch):
    root_logger.handlers = []
    log_file = tmp_path / "logs" / "feedsync.log"
    monkeypatch.setenv("FS_LOG_LEVEL", "debug")
    monkeypatch.setenv("FS_LOG_FILE", str(log_file))

    for name in ("feedsync.worker", "feedsync.cli", "feedsync.worker"):
        configure_logging(name)

    file_handlers = [h for h in root_logger.handlers if isinstance(h, logging.FileHandler)]
    stdout_handlers = [
        h for h in root_logger.handlers if not isinstance(h, logging.FileHandler) and h.stream is sys.stdout
    ]
    assert len(root_logger.handlers) == 2
    assert len(stdout_handlers) == 1
    assert len(file_handlers) == 1
    assert file_handlers[0].baseFilename == os.path.abspath(str(log_file))
    assert root_logger.level == logging.DEBUG


def test_log_level_overrides(root_logger, monkeypatch):
    monkeypatch.setenv("FS_LOG_LEVELS", "feedsync.sync=DEBUG, feedsync.http=warning")
    target = logging.getLogger("feedsync.sync")
    other = logging.getLogger("feedsync.http")
    original = (target.level, other.level)
    try:
        configure_logging("feedsync.cli")
        assert target.level == logging.DEBUG
        assert other.level == logging.WARNING
    finally:
        target.setLevel(original[0])
        other.setLevel(original[1])


def test_log_event_format(caplog):
    logger = logging.getLogger("feedsync.test")
    with caplog.at_level(logging.INFO, logger="feedsync.test"):
        log_event(logger, logging.INFO, "sync_done", source_id=3, inserted=2)
    assert "event=sync_done source_id=3 inserted=2" in caplog.text


def test_redact_secrets():
    text = "GET https://newsdata.io/api/1/latest?apikey=abc123&q=x failed; token=zzz"
    redacted = redact_secrets(text)
    assert "abc123" not in redacted
    assert "zzz" not in redacted
    assert "apikey=[REDACTED]" in redacted
    assert "q=x" in redacted
