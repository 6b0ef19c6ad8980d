#!/usr/bin/env python3
"""
upload.py — sends one file to a filehost server and prints the result as a
single JSON line.

Usage:
    filehost-upload photo.jpg -s http://localhost:8080 -a <API key> -t 24
"""
import json
import time
from pathlib import Path

import httpx
import typer

DEFAULT_SERVER  = "http://localhost:8080"
DEFAULT_TIMEOUT = 300.0


def upload_file(path, server: str, api_key: str, ttl: int = 1,
                client: httpx.Client = None) -> dict:
    started = time.monotonic()
    result  = {"status": "failed", "server": server}

    def done(**fields):
        result.update(fields)
        result["time"] = int((time.monotonic() - started) * 1000)
        return result

    path = Path(path)
    if not path.exists():
        return done(error=f"failed to access file: {path}")
    if path.is_dir():
        return done(error="path is a directory, not a file")
    result["size"] = path.stat().st_size

    base   = server.rstrip("/")
    owned  = client is None
    client = client or httpx.Client(timeout=DEFAULT_TIMEOUT)
    try:
        with path.open("rb") as fh:
            resp = client.post(
                f"{base}/upload",
                files={"file": (path.name, fh)},
                data={"ttl": str(ttl), "filename": path.name},
                headers={"X-API-Key": api_key},
            )
    except httpx.HTTPError as e:
        return done(error=f"upload failed: {e}")
    finally:
        if owned:
            client.close()

    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.status_code != 200 or not body.get("success"):
        return done(error=body.get("message") or f"server returned {resp.status_code}")

    return done(
        status  = "success",
        path    = body.get("file_path"),
        url     = base + body.get("download_url", ""),
        message = body.get("expires_at"),
    )


cli = typer.Typer(add_completion=False)


@cli.command()
def main(
    file: Path = typer.Argument(..., help="File to upload."),
    server: str = typer.Option(DEFAULT_SERVER, "--server", "-s", help="Server address."),
    auth: str = typer.Option("", "--auth", "-a", envvar="FILEHOST_API_KEY", help="API key."),
    ttl: int = typer.Option(1, "--ttl", "-t", help="Hours to keep the file."),
):
    """Upload FILE and print the result as JSON."""
    if not auth:
        result = {"status": "failed", "error": "API authentication token is required (-a flag)"}
    else:
        result = upload_file(file, server, auth, ttl)
    typer.echo(json.dumps(result))
    if result["status"] != "success":
        raise typer.Exit(1)


if __name__ == "__main__":
    cli()
