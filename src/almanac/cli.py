"""CLI for almanac: run the API and manage the database."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from almanac.config import AlmanacConfig, ConfigError, load_config
from almanac.core.logging import configure_logging

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> AlmanacConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to almanac.toml (defaults to $ALMANAC_CONFIG or environment variables)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Almanac: one calendar over local events and Google Calendar."""
    config = _load(config_path)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.log_file,
    )
    ctx.obj = config


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_obj
def serve(config: AlmanacConfig, host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from almanac.api.app import create_app

    click.echo(f"Starting almanac API on http://{host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


async def _init_db(config: AlmanacConfig) -> None:
    from almanac.db import Database

    database = Database(config.db)
    try:
        await database.open(provision=True)
    finally:
        await database.close()


@cli.command("init-db")
@click.pass_obj
def init_db(config: AlmanacConfig) -> None:
    """Create the database and tables if they do not exist."""
    asyncio.run(_init_db(config))
    click.echo(f"Database '{config.db.name}' is ready")


async def _add_user(
    config: AlmanacConfig, user_id: str, email: str | None, display_name: str | None
) -> bool:
    from almanac.db import Database

    database = Database(config.db)
    try:
        pool = await database.open()
        result = await pool.execute(
            """
            INSERT INTO users (id, email, display_name) VALUES ($1, $2, $3)
            ON CONFLICT (id) DO NOTHING
            """,
            user_id,
            email,
            display_name,
            timeout=config.db.command_timeout_seconds,
        )
    finally:
        await database.close()
    return result.endswith(" 1")


@cli.command("add-user")
@click.argument("user_id")
@click.option("--email", default=None)
@click.option("--name", "display_name", default=None)
@click.pass_obj
def add_user(
    config: AlmanacConfig, user_id: str, email: str | None, display_name: str | None
) -> None:
    """Register USER_ID so local events can be stored for it."""
    created = asyncio.run(_add_user(config, user_id, email, display_name))
    if created:
        click.echo(f"Added user {user_id}")
    else:
        click.echo(f"User {user_id} already exists")
