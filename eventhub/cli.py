"""Typer CLI for EventHub."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
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
from .database import get_session
from .errors import EventHubError
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db, upgrade_database, vacuum_database
from .users import sign_in_with_email

app = typer.Typer(help="EventHub command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _is_read_only(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "readonly" in message or "read-only" in message


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
        if _is_read_only(exc):
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


@app.command("issue-token")
def issue_token(
    email: str = typer.Option(..., "--email", help="Email address of the user"),
    name: str | None = typer.Option(None, "--name", help="Display name for new users"),
) -> None:
    """Find or create a user and print a bearer token for the API."""
    init_db()
    try:
        with get_session() as session:
            _, auth_session = sign_in_with_email(session, email=email, name=name)
            token = auth_session.token
    except EventHubError as exc:
        typer.secho(exc.message, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(token)


@app.command("vacuum")
def vacuum() -> None:
    """Run SQLite VACUUM on the database."""
    init_db()
    vacuum_database()
    typer.echo("Database vacuum complete.")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    start_scheduler()
    config = uvicorn.Config(
        "eventhub.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting EventHub on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    teams: int = typer.Option(
        settings.seed_teams, "--teams", min=0, help="Number of teams to create"
    ),
    members: int = typer.Option(
        settings.seed_members_per_team,
        "--members",
        min=0,
        help="Extra members to add to each team",
    ),
    max_events: int = typer.Option(
        settings.seed_events_per_team,
        "--max-events",
        min=1,
        help="Maximum events to create for each team",
    ),
    max_registrations: int = typer.Option(
        settings.seed_registrations_per_event,
        "--max-registrations",
        min=0,
        help="Maximum registrations to attach to each event",
    ),
):
    """Populate the database with fake teams and events for testing."""
    stats = seed_fake_data(
        team_count=teams,
        members_per_team=members,
        max_events_per_team=max_events,
        max_registrations_per_event=max_registrations,
    )
    typer.echo(
        f"Seed complete: {stats['teams']} teams, {stats['members']} members, "
        f"{stats['events']} events, {stats['registrations']} registrations created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    site_url: str | None = typer.Option(
        None, "--site-url", help="Public base URL used in invitation links"
    ),
    invitation_expiry_days: int | None = typer.Option(
        None, "--invitation-expiry-days", min=1, help="Days before invitations expire"
    ),
    default_timezone: str | None = typer.Option(
        None, "--default-timezone", help="IANA timezone for new events"
    ),
    events_per_page: int | None = typer.Option(
        None, "--events-per-page", min=1, help="Public event pagination size"
    ),
    threads_per_page: int | None = typer.Option(
        None, "--threads-per-page", min=1, help="Thread pagination size"
    ),
    messages_per_page: int | None = typer.Option(
        None, "--messages-per-page", min=1, help="Message pagination size"
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", min=1, help="Hours between SQLite VACUUM runs"
    ),
    resend_api_key: str | None = typer.Option(
        None, "--resend-api-key", help="API key for sending invitation emails"
    ),
    email_from: str | None = typer.Option(
        None, "--email-from", help="Sender address for invitation emails"
    ),
    allow_email_signin: bool | None = typer.Option(
        None,
        "--allow-email-signin/--disallow-email-signin",
        help="Toggle the email sign-in endpoint",
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (vacuum and emails)",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    seed_teams: int | None = typer.Option(
        None, "--seed-teams", min=0, help="Default seed-data teams"
    ),
    seed_members_per_team: int | None = typer.Option(
        None, "--seed-members-per-team", min=0, help="Default seed-data members/team"
    ),
    seed_events_per_team: int | None = typer.Option(
        None, "--seed-events-per-team", min=1, help="Default seed-data events/team"
    ),
    seed_registrations_per_event: int | None = typer.Option(
        None,
        "--seed-registrations-per-event",
        min=0,
        help="Default seed-data registrations/event",
    ),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventhub.toml (default: ./eventhub.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "site_url": site_url,
        "invitation_expiry_days": invitation_expiry_days,
        "default_timezone": default_timezone,
        "events_per_page": events_per_page,
        "threads_per_page": threads_per_page,
        "messages_per_page": messages_per_page,
        "sqlite_vacuum_hours": vacuum_hours,
        "resend_api_key": resend_api_key,
        "email_from": email_from,
        "allow_email_signin": allow_email_signin,
        "enable_scheduler": enable_scheduler,
        "app_host": host,
        "app_port": port,
        "seed_teams": seed_teams,
        "seed_members_per_team": seed_members_per_team,
        "seed_events_per_team": seed_events_per_team,
        "seed_registrations_per_event": seed_registrations_per_event,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

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


@app.command("test")
def run_tests(pytest_args: list[str] = typer.Argument(None, help="Extra pytest args")):
    """Run the test suite with helpful defaults."""
    env = os.environ.copy()
    env.setdefault("PYTHONPATH", ".")
    env.setdefault("UV_CACHE_DIR", ".uv-cache")
    uv_path = shutil.which("uv")
    if uv_path:
        cmd = [uv_path, "run", "pytest"]
    else:
        typer.echo("uv not found, falling back to python -m pytest")
        cmd = [sys.executable, "-m", "pytest"]
    if pytest_args:
        cmd.extend(pytest_args)
    typer.echo(f"Running tests: {' '.join(cmd)}")
    result = subprocess.run(cmd, env=env)
    raise typer.Exit(code=result.returncode)


if __name__ == "__main__":
    app()
