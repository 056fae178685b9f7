"""Typer CLI for EventDesk."""

from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .capacity import (
    RegistrationCapacityManager,
    registration_stats,
    waitlist,
)
from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .crud import add_event_member, create_event
from .database import get_session
from .errors import NotFound, RegistrationError
from .models import Event
from .seed import seed_fake_data
from .storage import init_db, upgrade_database

app = typer.Typer(help="EventDesk command-line interface")
config_app = typer.Typer(help="Inspect and edit eventdesk.toml")
app.add_typer(config_app, name="config")


def _fail(message: str) -> None:
    typer.secho(message, err=True, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _parse_datetime(raw: str | None, *, option: str) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        _fail(f"Invalid {option}; use ISO8601 format")


def _manager() -> RegistrationCapacityManager:
    init_db()
    return RegistrationCapacityManager()


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
    """Upgrade the database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            _fail(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}."
            )
        raise

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI server."""
    init_db()
    config = uvicorn.Config(
        "eventdesk.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting EventDesk on {host}:{port}")
    server.run()


@app.command("create-event")
def create_event_command(
    title: str = typer.Option(..., "--title", help="Event title"),
    owner: str = typer.Option(..., "--owner", help="Owning user id"),
    start: str = typer.Option(..., "--start", help="Start time (ISO8601, UTC)"),
    end: str | None = typer.Option(None, "--end", help="End time (ISO8601, UTC)"),
    location: str | None = typer.Option(None, "--location"),
    max_attendees: int | None = typer.Option(
        None, "--max-attendees", min=1, help="Capacity; omit for unlimited"
    ),
    waitlist_enabled: bool = typer.Option(
        False, "--waitlist/--no-waitlist", help="Queue registrations once full"
    ),
    deadline: str | None = typer.Option(
        None, "--deadline", help="Registration deadline (ISO8601, UTC)"
    ),
    private: bool = typer.Option(False, "--private", help="Hide from public RSVP"),
) -> None:
    """Create an event and print its id."""
    init_db()
    start_time = _parse_datetime(start, option="--start")
    try:
        with get_session() as session:
            event = create_event(
                session,
                owner_id=owner,
                title=title,
                start_time=start_time,
                end_time=_parse_datetime(end, option="--end"),
                location=location,
                is_public=not private,
                max_attendees=max_attendees,
                allow_waitlist=waitlist_enabled,
                registration_deadline=_parse_datetime(deadline, option="--deadline"),
            )
            event_id = event.id
    except ValueError as exc:
        _fail(str(exc))
    typer.echo(event_id)


@app.command("add-member")
def add_member(
    event_id: str = typer.Argument(..., help="Event id"),
    user_id: str = typer.Argument(..., help="User id to add"),
    role: str = typer.Option("STAFF", "--role", help="STAFF, MODERATOR or VIEWER"),
    added_by: str = typer.Option("cli", "--added-by"),
) -> None:
    """Add a user to an event's crew so STAFF policies apply."""
    init_db()
    try:
        with get_session() as session:
            event = session.get(Event, event_id)
            if event is None:
                raise NotFound("Event not found")
            member = add_event_member(
                session, event=event, user_id=user_id, added_by=added_by, role=role
            )
            typer.echo(f"{member.user_id} is {member.role} on {event.title}")
    except (ValueError, RegistrationError) as exc:
        _fail(str(exc))


@app.command("register")
def register(
    event_id: str = typer.Argument(..., help="Event id"),
    name: str = typer.Option(..., "--name"),
    email: str | None = typer.Option(None, "--email"),
    phone: str | None = typer.Option(None, "--phone"),
) -> None:
    """Register a new participant for an event."""
    manager = _manager()
    try:
        result = manager.submit_rsvp(
            event_id, name=name, email=email, phone=phone, source="cli"
        )
    except (ValueError, RegistrationError) as exc:
        _fail(str(exc))
    typer.echo(
        json.dumps(
            {
                "participant_id": result.registration.participant_id,
                "registration_token": result.registration.registration_token,
                **result.as_dict(),
            }
        )
    )


@app.command("cancel")
def cancel(
    event_id: str = typer.Argument(..., help="Event id"),
    participant_id: str = typer.Argument(..., help="Participant id"),
) -> None:
    """Cancel a registration, promoting from the waitlist when a seat frees."""
    manager = _manager()
    try:
        result = manager.cancel(event_id, participant_id)
    except RegistrationError as exc:
        _fail(str(exc))
    typer.echo(json.dumps(result.as_dict()))


@app.command("check-in")
def check_in(
    event_id: str = typer.Argument(..., help="Event id"),
    participant_ids: list[str] = typer.Argument(..., help="Participant ids"),
) -> None:
    """Check in one or more participants."""
    manager = _manager()
    results = manager.bulk_check_in(event_id, participant_ids)
    for item in results:
        if item.success:
            typer.echo(f"{item.participant_id}: {item.status}")
        else:
            typer.secho(
                f"{item.participant_id}: {item.error} ({item.message})",
                fg=typer.colors.RED,
            )
    if not all(item.success for item in results):
        raise typer.Exit(code=1)


@app.command("waitlist")
def show_waitlist(event_id: str = typer.Argument(..., help="Event id")) -> None:
    """Print an event's waitlist in promotion order."""
    init_db()
    with get_session() as session:
        entries = waitlist(session, event_id)
        if not entries:
            typer.echo("Waitlist is empty.")
            return
        for entry in entries:
            typer.echo(
                f"{entry.waitlist_position:>3}. {entry.participant.name} "
                f"({entry.participant_id})"
            )


@app.command("stats")
def stats(event_id: str = typer.Argument(..., help="Event id")) -> None:
    """Print registration counts for an event."""
    init_db()
    with get_session() as session:
        if session.get(Event, event_id) is None:
            _fail("Event not found")
        payload = registration_stats(session, event_id).as_dict()
    typer.echo(json.dumps(payload, indent=2))


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    participants: int = typer.Option(
        settings.seed_participants_per_event,
        "--participants",
        min=0,
        help="Participants registering for each event",
    ),
):
    """Populate the database with fake events and registrations for testing."""
    stats = seed_fake_data(event_count=events, participants_per_event=participants)
    typer.echo(
        f"Seed complete: {stats['events']} events, {stats['participants']} participants, "
        f"{stats['registered']} registered, {stats['waitlisted']} waitlisted, "
        f"{stats['rejected']} rejected."
    )


@config_app.command("show")
def config_show() -> None:
    """Print the effective configuration."""
    typer.echo(json.dumps(settings_as_dict(load_settings()), indent=2))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Configuration key"),
    value: str = typer.Argument(..., help="New value"),
) -> None:
    """Persist a configuration value to eventdesk.toml."""
    current = settings_as_dict(load_settings())
    if key not in current or key in {"base_dir", "data_dir", "database_path"}:
        _fail(f"Unknown configuration key: {key}")
    try:
        new_settings = update_config_file({key: value})
    except ValueError as exc:
        _fail(str(exc))
    typer.echo(f"{key} = {getattr(new_settings, key)!r} ({new_settings.config_path})")


if __name__ == "__main__":
    app()
