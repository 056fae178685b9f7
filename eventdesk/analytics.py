"""Admin-only reporting across events, registrations and interactions."""

from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .auth import Principal
from .capacity import registration_stats, serialize_registration
from .errors import Forbidden, NotFound
from .interactions import interaction_type_counts
from .models import Event, Interaction, Participant, Registration
from .policy import Action, can
from .utils import isoformat_or_none


def _require_admin(principal: Principal) -> None:
    if not can(principal.role, Action.SYSTEM_ADMIN):
        raise Forbidden()


def event_analytics(session: Session, *, event_id: str, principal: Principal) -> dict[str, Any]:
    _require_admin(principal)
    event = session.get(Event, event_id)
    if event is None:
        raise NotFound("Event not found")

    stats = registration_stats(session, event.id)
    return {
        "event": {
            "id": event.id,
            "title": event.title,
            "start_time": isoformat_or_none(event.start_time),
            "is_public": event.is_public,
        },
        "registration_stats": [
            {"status": status, "count": count}
            for status, count in stats.counts.items()
            if count
        ],
        "interaction_stats": [
            {"type": item["type"], "count": item["count"]}
            for item in interaction_type_counts(session, event.id)
        ],
        "check_in_rate": round(stats.check_in_rate, 2),
        "waitlist_count": stats.counts["WAITLISTED"],
        "total_registrations": stats.total,
    }


def _grouped(session: Session, column) -> dict[Any, int]:
    rows = session.execute(select(column, func.count()).group_by(column)).all()
    return {key: count for key, count in rows}


def system_stats(session: Session, *, principal: Principal, recent: int = 10) -> dict[str, Any]:
    _require_admin(principal)
    visibility = _grouped(session, Event.is_public)
    recent_events = session.scalars(
        select(Event).order_by(Event.created_at.desc()).limit(recent)
    ).all()
    recent_registrations = session.scalars(
        select(Registration).order_by(Registration.created_at.desc()).limit(recent)
    ).all()
    return {
        "total_events": session.scalar(select(func.count(Event.id))) or 0,
        "total_participants": session.scalar(select(func.count(Participant.id))) or 0,
        "total_registrations": session.scalar(select(func.count(Registration.id))) or 0,
        "total_interactions": session.scalar(select(func.count(Interaction.id))) or 0,
        "event_visibility": {
            "public": visibility.get(True, 0),
            "private": visibility.get(False, 0),
        },
        "registration_status": _grouped(session, Registration.status),
        "recent_events": [
            {
                "id": event.id,
                "title": event.title,
                "owner_id": event.owner_id,
                "created_at": isoformat_or_none(event.created_at),
            }
            for event in recent_events
        ],
        "recent_registrations": [serialize_registration(r) for r in recent_registrations],
    }
