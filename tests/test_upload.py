import json

import httpx
import pytest
from typer.testing import CliRunner

import upload
from app import create_app
from cleanup import ExpirySweeper
from conftest import API_KEY

SERVER = "http://files.example"


def mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def sample(tmp_path):
    path = tmp_path / "photo.jpg"
    path.write_bytes(b"0123456789")
    return path


def test_success(sample):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers["X-API-Key"]
        seen["body"] = request.read()
        return httpx.Response(200, json={
            "success":      True,
            "file_path":    "20240102/20240102-030405678-" + "a" * 32 + ".jpg",
            "download_url": "/files/20240102/20240102-030405678-" + "a" * 32 + ".jpg",
            "expires_at":   "2024-01-03T03:04:05+00:00",
        })

    result = upload.upload_file(sample, SERVER + "/", API_KEY, ttl=24, client=mock_client(handler))

    assert result["status"] == "success"
    assert result["size"] == 10
    assert result["url"].startswith(SERVER + "/files/20240102/")
    assert result["message"] == "2024-01-03T03:04:05+00:00"
    assert isinstance(result["time"], int)
    assert seen["url"] == SERVER + "/upload"
    assert seen["key"] == API_KEY
    assert b'name="ttl"' in seen["body"] and b"24" in seen["body"]


def test_server_rejects(sample):
    def handler(request):
        return httpx.Response(401, json={"success": False, "message": "Invalid or missing API key"})

    result = upload.upload_file(sample, SERVER, "bad", client=mock_client(handler))
    assert result["status"] == "failed"
    assert result["error"] == "Invalid or missing API key"


def test_non_json_error(sample):
    def handler(request):
        return httpx.Response(502, text="Bad Gateway")

    result = upload.upload_file(sample, SERVER, API_KEY, client=mock_client(handler))
    assert result["error"] == "server returned 502"


def test_connection_error(sample):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = upload.upload_file(sample, SERVER, API_KEY, client=mock_client(handler))
    assert result["status"] == "failed"
    assert result["error"].startswith("upload failed")


def test_missing_file(tmp_path):
    result = upload.upload_file(tmp_path / "nope.jpg", SERVER, API_KEY)
    assert result["status"] == "failed"
    assert "failed to access file" in result["error"]


def test_directory(tmp_path):
    result = upload.upload_file(tmp_path, SERVER, API_KEY)
    assert result["error"] == "path is a directory, not a file"


def test_against_real_app(sample, store, storage_root, clock):
    app = create_app(store, ExpirySweeper(store, storage_root, clock=clock))
    client = httpx.Client(transport=httpx.WSGITransport(app=app))

    result = upload.upload_file(sample, "http://testserver", API_KEY, ttl=2, client=client)

    assert result["status"] == "success"
    rec = store.get_file_by_path(result["path"])
    assert rec.ttl_hours == 2
    assert (storage_root / result["path"]).read_bytes() == b"0123456789"


# ─────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────
runner = CliRunner()


def test_cli_requires_auth(sample, monkeypatch):
    monkeypatch.delenv("FILEHOST_API_KEY", raising=False)
    result = runner.invoke(upload.cli, [str(sample)])

    assert result.exit_code == 1
    assert json.loads(result.output)["error"].startswith("API authentication token is required")


def test_cli_prints_json_line(sample, monkeypatch):
    calls = []

    def fake_upload(path, server, api_key, ttl):
        calls.append((path, server, api_key, ttl))
        return {"status": "success", "server": server, "path": "x", "url": "u", "time": 1}

    monkeypatch.setattr(upload, "upload_file", fake_upload)
    result = runner.invoke(upload.cli, [str(sample), "-s", SERVER, "-a", API_KEY, "-t", "12"])

    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "success"
    assert calls == [(sample, SERVER, API_KEY, 12)]


def test_cli_reads_key_from_environment(sample, monkeypatch):
    monkeypatch.setenv("FILEHOST_API_KEY", "from-env")
    monkeypatch.setattr(upload, "upload_file",
                        lambda path, server, api_key, ttl: {"status": "failed", "error": api_key})

    result = runner.invoke(upload.cli, [str(sample)])
    assert result.exit_code == 1
    assert json.loads(result.output)["error"] == "from-env"
