import json
import sys
import time

import pytest
from loguru import logger
from typer.testing import CliRunner

import manage
from conftest import API_KEY, make_record, write_stored

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    # the CLI callback replaces every loguru sink with one bound to the runner's stderr
    logger.remove()
    logger.add(sys.stderr)


def run(db_path, *args):
    return runner.invoke(manage.cli, ["--log-level", "ERROR", *args, "--db", str(db_path)])


def saved_config(db_path) -> dict:
    return json.loads(db_path.read_text())["config"]


def test_get_all_groups_by_section(store, db_path):
    result = run(db_path, "get", "all")

    assert result.exit_code == 0
    out = result.output
    assert out.index("[SERVER]") < out.index("[STORAGE]") < out.index("[AUTH]") < out.index("[SECURITY]")
    assert f"auth.api_key: {API_KEY}" in out


def test_get_single_key(store, db_path):
    result = run(db_path, "get", "storage.max_ttl")
    assert result.exit_code == 0
    assert result.output.strip() == "8760"


def test_get_missing_key(store, db_path):
    result = run(db_path, "get", "no.such.key")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_set_joins_words(store, db_path):
    result = run(db_path, "set", "security.ip_whitelist", "10.0.0.1,", "10.0.0.2")

    assert result.exit_code == 0
    assert saved_config(db_path)["security.ip_whitelist"] == "10.0.0.1, 10.0.0.2"
    assert run(db_path, "get", "security.ip_whitelist").output.strip() == "10.0.0.1, 10.0.0.2"


def test_secrets_replaces_credentials(store, db_path):
    result = run(db_path, "secrets")

    assert result.exit_code == 0
    config = saved_config(db_path)
    assert config["auth.api_key"] != API_KEY
    assert len(config["auth.api_key"]) == 64
    assert config["auth.api_key"] in result.output
    assert config["auth.admin_password"] in result.output
    assert config["auth.list_password"] in result.output


def test_stats(store, db_path, storage_root):
    store.insert_file(make_record(size=2048))
    store.flush()

    result = run(db_path, "stats")
    assert result.exit_code == 0
    assert "Files: 1" in result.output
    assert "Total size: 2.0 KB" in result.output
    assert "Date directories: 1" in result.output


def test_cleanup_removes_expired_files(store, db_path, storage_root):
    rec = make_record(ttl=1, now=time.time() - 3 * 3600)
    store.insert_file(rec)
    store.flush()
    path = write_stored(storage_root, rec)

    result = run(db_path, "cleanup")

    assert result.exit_code == 0
    assert "Removed 1 file(s)" in result.output
    assert not path.exists()
    assert json.loads(db_path.read_text())["files"] == {}


def test_unreadable_snapshot(tmp_path):
    db = tmp_path / "metadata.json"
    db.write_text("{broken")

    result = run(db, "stats")
    assert result.exit_code == 1
    assert db.read_text() == "{broken"


def test_serve_persists_port_and_shuts_down(store, db_path, monkeypatch):
    started = {}

    class FakeApp:
        def run(self, host, port, threaded):
            started.update(host=host, port=port)

    def fake_create_app(store, sweeper, settings):
        started["sweeper"] = sweeper
        return FakeApp()

    monkeypatch.setattr(manage, "create_app", fake_create_app)
    monkeypatch.setattr(manage.signal, "signal", lambda *a: None)

    result = run(db_path, "serve", "--port", "9090", "--host", "127.0.0.1")

    assert result.exit_code == 0
    assert started["host"] == "127.0.0.1"
    assert started["port"] == 9090
    assert not started["sweeper"].running
    assert saved_config(db_path)["server.port"] == "9090"
