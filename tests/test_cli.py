import json

import pytest
import yaml

from feedsync import cli
from feedsync.worker import run_once


@pytest.fixture(autouse=True)
def _restore_logging(root_logger):
    yield


def _run(capsys, db_path, *argv):
    code = cli.main(["--db", db_path, *argv])
    out = capsys.readouterr().out
    return code, out


def _json(out):
    lines = out.splitlines()
    start = next(index for index, line in enumerate(lines) if line.startswith(("[", "{")))
    return json.loads("\n".join(lines[start:]))


def test_sources_add_list_and_remove(capsys, db_path):
    code, out = _run(
        capsys,
        db_path,
        "sources",
        "add",
        "--name",
        "Business",
        "--provider",
        "newsdata",
        "--credential",
        "api-key-123",
        "--config-json",
        '{"categories": ["business"]}',
        "--interval",
        "120",
    )
    assert code == 0
    source = _json(out)
    assert source["has_credential"] is True
    assert "api-key-123" not in out

    code, out = _run(capsys, db_path, "sources", "list")
    assert code == 0
    assert [item["name"] for item in _json(out)] == ["Business"]

    code, out = _run(capsys, db_path, "jobs", "list")
    jobs = {job["job_type"]: job for job in _json(out)}
    assert jobs[f"source_sync_{source['id']}"]["frequency_seconds"] == 120

    code, _ = _run(capsys, db_path, "sources", "remove", str(source["id"]))
    assert code == 0
    code, out = _run(capsys, db_path, "sources", "list")
    assert _json(out) == []


def test_credential_from_env(capsys, db_path, monkeypatch):
    monkeypatch.setenv("NEWSDATA_API_KEY", "from-env")
    code, out = _run(
        capsys, db_path, "sources", "add", "--name", "Env", "--provider", "newsdata",
        "--credential-env", "NEWSDATA_API_KEY",
    )
    assert code == 0
    assert _json(out)["has_credential"] is True

    monkeypatch.delenv("NEWSDATA_API_KEY")
    code, out = _run(
        capsys, db_path, "sources", "add", "--name", "Env2", "--provider", "newsdata",
        "--credential-env", "NEWSDATA_API_KEY",
    )
    assert code == 2
    assert "NEWSDATA_API_KEY is not set" in out


def test_errors_exit_with_code_two(capsys, db_path):
    code, out = _run(capsys, db_path, "sources", "add", "--name", "X", "--provider", "nope")
    assert code == 2
    assert "error:" in out

    code, out = _run(capsys, db_path, "sources", "sync", "404")
    assert code == 2

    code, out = _run(capsys, db_path, "jobs", "update", "missing", "--enable")
    assert code == 2


def test_config_show_and_set(capsys, db_path, tmp_path):
    code, out = _run(capsys, db_path, "config", "show")
    assert code == 0
    cfg = yaml.safe_load(out)
    assert cfg["sync"]["default_daily_quota"] == 180

    cfg["sync"]["default_daily_quota"] = 90
    path = tmp_path / "runtime.yml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    code, _ = _run(capsys, db_path, "config", "set", str(path))
    assert code == 0
    code, out = _run(capsys, db_path, "config", "show")
    assert yaml.safe_load(out)["sync"]["default_daily_quota"] == 90

    path.write_text(yaml.safe_dump({"sync": {}}), encoding="utf-8")
    code, out = _run(capsys, db_path, "config", "set", str(path))
    assert code == 2


def test_jobs_run_and_history(capsys, db_path):
    code, out = _run(capsys, db_path, "jobs", "run", "sources_sync_all")
    assert code == 0
    assert _json(out)["status"] == "skipped"

    code, out = _run(capsys, db_path, "jobs", "history", "--job-type", "sources_sync_all")
    assert code == 0
    assert len(_json(out)) == 1


def test_providers(capsys, db_path):
    code, out = _run(capsys, db_path, "providers")
    assert code == 0
    assert _json(out)[0]["provider_type"] == "newsdata"


@pytest.mark.asyncio
async def test_worker_run_once(capsys, db_path):
    assert await run_once(["sources_sync_all"], db_path) == 0
    out = capsys.readouterr().out
    assert '"job_type": "sources_sync_all"' in out
    assert await run_once(["missing_job"], db_path) == 1
