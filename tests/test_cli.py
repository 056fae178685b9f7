from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from eventdesk import cli, seed

runner = CliRunner()


@pytest.fixture(autouse=True)
def skip_migrations(monkeypatch):
    monkeypatch.setattr(cli, "init_db", lambda: None)
    monkeypatch.setattr(seed, "init_db", lambda: None)


def _invoke(*args: str):
    return runner.invoke(cli.app, list(args))


def _create_event(*extra: str) -> str:
    result = _invoke(
        "create-event",
        "--title",
        "Board Games",
        "--owner",
        "owner-1",
        "--start",
        "2099-01-01T18:00:00",
        *extra,
    )
    assert result.exit_code == 0, result.output
    return result.output.strip()


def _register(event_id: str, name: str) -> dict:
    result = _invoke(
        "register", event_id, "--name", name, "--email", f"{name.lower()}@example.com"
    )
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_register_waitlist_and_cancel_flow():
    event_id = _create_event("--max-attendees", "1", "--waitlist")

    ann = _register(event_id, "Ann")
    ben = _register(event_id, "Ben")

    assert ann["status"] == "REGISTERED"
    assert ben["status"] == "WAITLISTED"
    assert ben["waitlist_position"] == 1
    assert ann["registration_token"] != ben["registration_token"]

    listing = _invoke("waitlist", event_id)
    assert "1. Ben" in listing.output

    cancelled = _invoke("cancel", event_id, ann["participant_id"])
    assert cancelled.exit_code == 0
    assert json.loads(cancelled.output)["promoted_participant_id"] == ben["participant_id"]
    assert "Waitlist is empty." in _invoke("waitlist", event_id).output


def test_register_full_event_fails():
    event_id = _create_event("--max-attendees", "1")
    _register(event_id, "Ann")

    result = _invoke("register", event_id, "--name", "Ben", "--email", "ben@example.com")

    assert result.exit_code == 1


def test_check_in_reports_failures():
    event_id = _create_event()
    ann = _register(event_id, "Ann")

    result = _invoke("check-in", event_id, ann["participant_id"], "ghost")

    assert result.exit_code == 1
    assert f"{ann['participant_id']}: CHECKED_IN" in result.output
    assert "ghost: NotFound" in result.output

    stats = json.loads(_invoke("stats", event_id).output)
    assert stats["checked_in_count"] == 1
    assert stats["check_in_rate"] == 100.0


def test_create_event_validates_dates():
    result = _invoke(
        "create-event",
        "--title",
        "Bad",
        "--owner",
        "owner-1",
        "--start",
        "tomorrow",
    )

    assert result.exit_code == 1


def test_stats_unknown_event():
    assert _invoke("stats", "missing").exit_code == 1


def test_seed_data_respects_capacity():
    result = _invoke("seed-data", "--events", "2", "--participants", "3")

    assert result.exit_code == 0, result.output
    assert "Seed complete: 2 events, 6 participants" in result.output
