"""Typer CLI for TeamUp."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .crud import create_user
from .database import get_session
from .maintenance import run_integrity_sweep
from .offline import JsonFileStore, OfflineCache
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import database_summary, init_db, upgrade_database

app = typer.Typer(help="TeamUp command-line interface")
offline_app = typer.Typer(help="Inspect the local offline snapshot")
app.add_typer(offline_app, name="offline")


def _offline_cache() -> OfflineCache:
    return OfflineCache(JsonFileStore(settings.offline_dir))


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("create-user")
def create_user_command(
    name: str = typer.Argument(..., help="Display name"),
    email: str | None = typer.Option(None, "--email", help="Contact email"),
    avatar: str | None = typer.Option(None, "--avatar", help="Profile picture URL"),
) -> None:
    """Create a user and print its API token."""
    init_db()
    try:
        with get_session() as session:
            user = create_user(
                session, name=name, email=email, profile_picture_url=avatar
            )
            user_id, token = user.id, user.api_token
    except ValueError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"User {user_id} created.")
    typer.echo(token)


@app.command("sweep")
def sweep() -> None:
    """Run the participation integrity sweep manually."""
    init_db()
    stats = run_integrity_sweep()
    typer.echo(f"Sweep complete: {stats}")


@app.command("stats")
def stats() -> None:
    """Print row counts per table."""
    init_db()
    typer.echo(json.dumps(database_summary(), indent=2))


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    config = uvicorn.Config(
        "teamup.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting TeamUp on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    users: int = typer.Option(
        settings.seed_users, "--users", min=2, help="Number of users to create"
    ),
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    max_participants: int = typer.Option(
        settings.seed_participants_per_event,
        "--max-participants",
        min=0,
        help="Maximum participants joining each event",
    ),
    max_messages: int = typer.Option(
        settings.seed_messages_per_event,
        "--max-messages",
        min=0,
        help="Maximum chat messages posted to each event",
    ),
):
    """Populate the database with fake users, events and chats for testing."""
    result = seed_fake_data(
        user_count=users,
        event_count=events,
        max_participants_per_event=max_participants,
        max_messages_per_event=max_messages,
    )
    typer.echo(
        f"Seed complete: {result['users']} users, {result['events']} events, "
        f"{result['participations']} participations, {result['messages']} messages created."
    )


@offline_app.command("info")
def offline_info(user_id: str = typer.Argument(..., help="Owner of the snapshot")) -> None:
    """Summarize the offline snapshot for a user."""
    info = _offline_cache().info(user_id)
    typer.echo(json.dumps(info.to_dict(), indent=2))


@offline_app.command("clear")
def offline_clear() -> None:
    """Delete the offline snapshot regardless of owner."""
    _offline_cache().clear()
    typer.echo("Offline snapshot cleared.")


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    offline_cache_days: int | None = typer.Option(
        None, "--offline-cache-days", min=1, help="Days before an offline snapshot expires"
    ),
    join_max_attempts: int | None = typer.Option(
        None,
        "--join-max-attempts",
        min=1,
        help="Retries for registrations that hit a concurrent update",
    ),
    messages_page_size: int | None = typer.Option(
        None, "--messages-page-size", min=1, help="Default GET /messages page size"
    ),
    message_clock_skew_seconds: int | None = typer.Option(
        None,
        "--message-clock-skew-seconds",
        min=0,
        help="How far ahead of server time a client sent_at may be",
    ),
    events_page_size: int | None = typer.Option(
        None, "--events-page-size", min=1, help="Default GET /events page size"
    ),
    integrity_sweep_hours: int | None = typer.Option(
        None, "--integrity-sweep-hours", min=1, help="Hours between integrity sweeps"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to teamup.toml (default: ./teamup.toml)"
    ),
    seed_users: int | None = typer.Option(
        None, "--seed-users", min=2, help="Default seed-data users"
    ),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default seed-data events"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle the background integrity sweep",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "offline_cache_days": offline_cache_days,
        "join_max_attempts": join_max_attempts,
        "messages_page_size": messages_page_size,
        "message_clock_skew_seconds": message_clock_skew_seconds,
        "events_page_size": events_page_size,
        "integrity_sweep_hours": integrity_sweep_hours,
        "app_host": host,
        "app_port": port,
        "seed_users": seed_users,
        "seed_events": seed_events,
        "enable_scheduler": enable_scheduler,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
