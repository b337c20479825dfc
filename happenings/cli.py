"""Typer CLI for Happenings."""

from __future__ import annotations

import json
from pathlib import Path

import typer
import uvicorn
from sqlalchemy.exc import OperationalError

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .crud import create_member, list_occurrences
from .database import get_session
from .errors import HappeningsError
from .models import Event
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import (
    ensure_root_token,
    fetch_root_token,
    init_db,
    rotate_root_token,
    upgrade_database,
)
from .sweeper import purge_stale_verifications, sweep_expired_offers, vacuum_database

app = typer.Typer(help="Happenings command-line interface")


def _exit_if_readonly(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure the process can write to {settings.database_path} "
            "(run with sudo or adjust file ownership/permissions).",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("admin-token")
def admin_token() -> None:
    """Print the current root admin token."""
    init_db()
    token = fetch_root_token()
    typer.echo(token)


@app.command("rotate-admin-token")
def rotate_admin_token() -> None:
    """Rotate the root admin token."""
    try:
        init_db()
        token = rotate_root_token()
    except OperationalError as exc:
        _exit_if_readonly(exc, "rotate the root admin token")
        raise
    typer.echo(token)


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
        _exit_if_readonly(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    ensure_root_token()
    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("sweep")
def sweep(
    vacuum: bool = typer.Option(
        False,
        "--vacuum",
        help="Run SQLite VACUUM after the sweep completes",
    ),
) -> None:
    """Expire lapsed waitlist offers and purge stale guest codes now."""
    init_db()
    stats = sweep_expired_offers()
    typer.echo(f"Offer sweep complete: {stats}")
    purged = purge_stale_verifications()
    typer.echo(f"Purged {purged} stale guest verifications.")
    if vacuum:
        vacuum_database()
        typer.echo("Database vacuum complete.")


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
        "happenings.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting Happenings on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("create-member")
def create_member_command(
    name: str = typer.Argument(..., help="Display name"),
    email: str = typer.Argument(..., help="Email address"),
    admin: bool = typer.Option(False, "--admin", help="Grant site admin rights"),
) -> None:
    """Create a member and print their API token."""
    init_db()
    try:
        with get_session() as session:
            member = create_member(
                session, display_name=name, email=email, is_admin=admin
            )
            token = member.api_token
    except HappeningsError as exc:
        typer.secho(exc.message, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    typer.echo(token)


@app.command("occurrences")
def occurrences(
    event_id: str = typer.Argument(..., help="Event id"),
    start: str | None = typer.Option(None, "--start", help="First date (YYYY-MM-DD)"),
    end: str | None = typer.Option(None, "--end", help="Last date (YYYY-MM-DD)"),
) -> None:
    """List an event's occurrences with their signup counts."""
    init_db()
    try:
        with get_session() as session:
            event = session.get(Event, event_id)
            if event is None:
                typer.secho("Event not found", err=True, fg=typer.colors.RED)
                raise typer.Exit(code=1)
            rows = list_occurrences(session, event, start, end)
    except HappeningsError as exc:
        typer.secho(exc.message, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    if not rows:
        typer.echo("No occurrences in that window.")
        return
    for row in rows:
        remaining = "unlimited" if row["remaining"] is None else row["remaining"]
        flags = " (cancelled)" if row["is_cancelled"] else ""
        typer.echo(
            f"{row['date_key']}{flags}: {row['confirmed']} confirmed, "
            f"{row['offered']} offered, {row['waitlist']} waitlisted, {remaining} open"
        )


@app.command("seed-data")
def seed_data(
    members: int = typer.Option(
        settings.seed_members, "--members", min=1, help="Number of members to create"
    ),
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of happenings to create"
    ),
    max_rsvps: int = typer.Option(
        8, "--max-rsvps", min=0, help="Maximum RSVPs on each happening's next date"
    ),
):
    """Populate the database with fake members and happenings for testing."""
    stats = seed_fake_data(
        member_count=members,
        event_count=events,
        max_rsvps_per_event=max_rsvps,
    )
    typer.echo(
        f"Seed complete: {stats['members']} members, {stats['events']} events, "
        f"{stats['rsvps']} RSVPs, {stats['claims']} timeslot claims created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    timezone: str | None = typer.Option(
        None, "--timezone", help="IANA zone used to compute occurrence dates"
    ),
    expansion_window_days: int | None = typer.Option(
        None, "--expansion-window-days", min=1, help="Forward horizon for ongoing series"
    ),
    max_occurrences_per_event: int | None = typer.Option(
        None, "--max-occurrences-per-event", min=1, help="Expansion cap per event"
    ),
    rsvp_offer_window_hours: int | None = typer.Option(
        None, "--rsvp-offer-window-hours", min=1, help="Hours a waitlist offer stays open"
    ),
    default_slot_offer_window_minutes: int | None = typer.Option(
        None,
        "--slot-offer-window-minutes",
        min=1,
        help="Minutes a timeslot offer stays open",
    ),
    default_slot_duration_minutes: int | None = typer.Option(
        None, "--slot-duration-minutes", min=5, max=90, help="Default slot length"
    ),
    code_expires_minutes: int | None = typer.Option(
        None, "--code-expires-minutes", min=1, help="Guest code lifetime"
    ),
    max_codes_per_email_per_hour: int | None = typer.Option(
        None, "--max-codes-per-hour", min=1, help="Guest code requests per email per hour"
    ),
    max_code_attempts: int | None = typer.Option(
        None, "--max-code-attempts", min=1, help="Wrong guesses before lockout"
    ),
    lockout_minutes: int | None = typer.Option(
        None, "--lockout-minutes", min=1, help="Lockout after too many wrong guesses"
    ),
    max_invites_per_event: int | None = typer.Option(
        None, "--max-invites-per-event", min=1, help="Attendee invite cap"
    ),
    offer_sweep_minutes: int | None = typer.Option(
        None, "--offer-sweep-minutes", min=1, help="Minutes between offer sweeps"
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", min=1, help="Hours between SQLite VACUUM runs"
    ),
    site_url: str | None = typer.Option(
        None, "--site-url", help="Public base URL used in emailed links"
    ),
    smtp_host: str | None = typer.Option(None, "--smtp-host", help="SMTP server"),
    smtp_port: int | None = typer.Option(None, "--smtp-port", help="SMTP port"),
    smtp_username: str | None = typer.Option(None, "--smtp-username", help="SMTP login"),
    mail_from: str | None = typer.Option(None, "--mail-from", help="Sender address"),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to happenings.toml (default: ./happenings.toml)"
    ),
    seed_members: int | None = typer.Option(
        None, "--seed-members", min=1, help="Default seed-data members"
    ),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default seed-data happenings"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (offer sweeps/vacuum)",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "timezone": timezone,
        "expansion_window_days": expansion_window_days,
        "max_occurrences_per_event": max_occurrences_per_event,
        "rsvp_offer_window_hours": rsvp_offer_window_hours,
        "default_slot_offer_window_minutes": default_slot_offer_window_minutes,
        "default_slot_duration_minutes": default_slot_duration_minutes,
        "code_expires_minutes": code_expires_minutes,
        "max_codes_per_email_per_hour": max_codes_per_email_per_hour,
        "max_code_attempts": max_code_attempts,
        "lockout_minutes": lockout_minutes,
        "max_invites_per_event": max_invites_per_event,
        "offer_sweep_minutes": offer_sweep_minutes,
        "sqlite_vacuum_hours": vacuum_hours,
        "site_url": site_url,
        "smtp_host": smtp_host,
        "smtp_port": smtp_port,
        "smtp_username": smtp_username,
        "mail_from": mail_from,
        "app_host": host,
        "app_port": port,
        "seed_members": seed_members,
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
