#!/usr/bin/env python3
"""
manage.py — runs the filehost server and manages its stored configuration.

Usage:
    filehost serve -p 8080
    filehost secrets            # run ONCE after installing
    filehost get all
    filehost set storage.max_ttl 720
    filehost cleanup
"""
import secrets
import signal
from pathlib import Path
from typing import List

import typer
from loguru import logger

from app import create_app
from cleanup import ExpirySweeper, human_size
from config import FLUSH_INTERVAL, LOG_LEVEL, METADATA_PATH, Settings, setup_logging
from errors import StorageIOError
from store import MetadataStore

cli = typer.Typer(help="TTL file hosting server.", no_args_is_help=True, add_completion=False)

GROUP_ORDER = ("server", "storage", "auth", "security")
SEP = "═" * 60


def db_option():
    return typer.Option(METADATA_PATH, "--db", "-c", help="Path to the metadata snapshot.")


def open_store(db: Path, flush_interval=None) -> MetadataStore:
    try:
        return MetadataStore.open(db, flush_interval=flush_interval)
    except StorageIOError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _terminate(signum, frame):
    raise SystemExit(0)


@cli.callback()
def main(log_level: str = typer.Option(LOG_LEVEL, "--log-level", help="loguru level name.")):
    setup_logging(log_level.upper())


@cli.command()
def serve(
    db: Path = db_option(),
    port: int = typer.Option(0, "--port", "-p", help="Port to listen on (saved to server.port)."),
    host: str = typer.Option(None, "--host", help="Address to bind (not saved)."),
):
    """Start the HTTP server and the cleanup sweeper."""
    store = open_store(db, flush_interval=FLUSH_INTERVAL)
    if port > 0:
        store.set_config("server.port", port)

    settings = Settings.from_store(store)
    for key in settings.insecure_keys():
        logger.warning(f"{key} still has its default value; run `filehost secrets`")

    try:
        settings.images_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create storage directory {settings.images_dir}: {e}")
        store.close()
        raise typer.Exit(1)

    sweeper = ExpirySweeper(store, settings.images_dir)
    sweeper.start(max(settings.cleanup_interval, 1) * 60)
    app = create_app(store, sweeper, settings)

    signal.signal(signal.SIGTERM, _terminate)
    bind = host or settings.host
    logger.info(f"Starting HTTP server on {bind}:{settings.port}")
    try:
        app.run(host=bind, port=settings.port, threaded=True)
    finally:
        logger.info("Shutting down...")
        sweeper.stop()
        store.close()


@cli.command("get")
def get_config(key: str = typer.Argument(..., help="Config key, or 'all'."), db: Path = db_option()):
    """Print one config value, or every value grouped by section."""
    with open_store(db) as store:
        if key != "all":
            value = store.get_config(key)
            if not value:
                typer.echo(f"Config key '{key}' not found or empty", err=True)
                raise typer.Exit(1)
            typer.echo(value)
            return

        config = store.get_all_config()
        groups = {}
        for k in sorted(config):
            groups.setdefault(k.split(".", 1)[0], []).append(k)
        order = [g for g in GROUP_ORDER if g in groups] + sorted(set(groups) - set(GROUP_ORDER))

        typer.echo("Configuration:")
        typer.echo("================")
        for prefix in order:
            typer.echo(f"\n[{prefix.upper()}]")
            for k in groups[prefix]:
                typer.echo(f"  {k}: {config[k]}")


@cli.command("set")
def set_config(
    key: str = typer.Argument(...),
    value: List[str] = typer.Argument(..., help="Value; several words are joined with spaces."),
    db: Path = db_option(),
):
    """Store a config value. A running server picks it up on restart."""
    joined = " ".join(value)
    with open_store(db) as store:
        store.set_config(key, joined)
    typer.echo(f"Config updated: {key} = {joined}")


@cli.command("secrets")
def generate_secrets(db: Path = db_option()):
    """Replace the API key and passwords with random values and print them once."""
    api_key        = secrets.token_hex(32)
    admin_password = secrets.token_urlsafe(18)
    list_password  = secrets.token_urlsafe(12)

    with open_store(db) as store:
        store.set_config("auth.api_key", api_key)
        store.set_config("auth.admin_password", admin_password)
        store.set_config("auth.list_password", list_password)
        admin_username = store.get_config("auth.admin_username", "admin")

    typer.echo(f"""
╔{SEP}╗
  filehost — new secrets (shown only once)
╠{SEP}╣
  auth.api_key         {api_key}
  auth.admin_username  {admin_username}
  auth.admin_password  {admin_password}
  auth.list_password   {list_password}

  Upload with:
    filehost-upload FILE -a {api_key}
╚{SEP}╝
""")


@cli.command()
def cleanup(db: Path = db_option()):
    """Delete expired files once and exit."""
    with open_store(db) as store:
        settings = Settings.from_store(store)
        result = ExpirySweeper(store, settings.images_dir).run_once()
    typer.echo(f"Removed {result.removed} file(s), freed {human_size(result.freed_bytes)}, "
               f"{result.failed} failed")
    if result.failed:
        raise typer.Exit(1)


@cli.command()
def stats(db: Path = db_option()):
    """Show how many files are stored and their total size."""
    with open_store(db) as store:
        count, total = store.stats()
        dates = store.list_dates()
    typer.echo(f"Files: {count}")
    typer.echo(f"Total size: {human_size(total)}")
    typer.echo(f"Date directories: {len(dates)}")


if __name__ == "__main__":
    cli()
