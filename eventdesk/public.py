"""Anonymous read access to public events: search, detail and headline stats."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .capacity import registration_stats, seated_count
from .crud import normalize_tags
from .errors import Forbidden, NotFound
from .models import SEATED_STATUSES, Event, EventTag, Registration
from .utils import isoformat_or_none, to_naive_utc, utcnow

_SEATED = [status.value for status in SEATED_STATUSES]


def _event_search_clause(query: str | None):
    if not query:
        return None
    cleaned = query.strip()
    if not cleaned:
        return None
    like = f"%{cleaned}%"
    return or_(
        Event.title.ilike(like),
        Event.description.ilike(like),
        Event.location.ilike(like),
    )


def public_event_filters(
    *,
    query: str | None = None,
    tags: Iterable[str] | None = None,
    location: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> list:
    filters: list = [Event.is_public.is_(True)]
    clause = _event_search_clause(query)
    if clause is not None:
        filters.append(clause)
    wanted = normalize_tags(tags)
    if wanted:
        filters.append(Event.tags.any(EventTag.tag.in_(wanted)))
    if location and location.strip():
        filters.append(Event.location.ilike(f"%{location.strip()}%"))
    if start_date:
        filters.append(Event.start_time >= to_naive_utc(start_date))
    if end_date:
        filters.append(Event.start_time <= to_naive_utc(end_date))
    return filters


def serialize_public_event(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start_time": isoformat_or_none(event.start_time),
        "end_time": isoformat_or_none(event.end_time),
        "tags": event.tag_names,
        "max_attendees": event.max_attendees,
    }


def search_public_events(
    session: Session,
    *,
    query: str | None = None,
    tags: Iterable[str] | None = None,
    location: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 20,
    offset: int = 0,
    max_limit: int = 100,
) -> dict[str, Any]:
    """Search public events, soonest first, with offset pagination."""
    limit = max(1, min(limit, max_limit))
    offset = max(offset, 0)
    filters = public_event_filters(
        query=query,
        tags=tags,
        location=location,
        start_date=start_date,
        end_date=end_date,
    )

    count_stmt = select(func.count()).select_from(Event)
    for condition in filters:
        count_stmt = count_stmt.where(condition)
    total_events = session.scalar(count_stmt) or 0

    stmt = select(Event)
    for condition in filters:
        stmt = stmt.where(condition)
    stmt = stmt.order_by(Event.start_time.asc()).offset(offset).limit(limit)
    events = session.scalars(stmt).all()

    return {
        "events": [serialize_public_event(event) for event in events],
        "total_events": total_events,
        "page": offset // limit + 1,
        "total_pages": (total_events + limit - 1) // limit,
        "has_more": offset + limit < total_events,
    }


def popular_events(session: Session, *, limit: int = 10) -> list[dict[str, Any]]:
    """Public events ordered by how many seats they have filled."""
    seated = (
        select(Registration.event_id, func.count(Registration.id).label("seated"))
        .where(Registration.status.in_(_SEATED))
        .group_by(Registration.event_id)
        .subquery()
    )
    rows = session.execute(
        select(Event, func.coalesce(seated.c.seated, 0))
        .outerjoin(seated, seated.c.event_id == Event.id)
        .where(Event.is_public.is_(True))
        .order_by(func.coalesce(seated.c.seated, 0).desc(), Event.start_time.asc())
        .limit(max(1, limit))
    ).all()
    return [
        {**serialize_public_event(event), "registration_count": count}
        for event, count in rows
    ]


def upcoming_events(
    session: Session, *, limit: int = 20, now: datetime | None = None
) -> list[dict[str, Any]]:
    stmt = (
        select(Event)
        .where(Event.is_public.is_(True), Event.start_time >= (now or utcnow()))
        .order_by(Event.start_time.asc())
        .limit(max(1, limit))
    )
    return [serialize_public_event(event) for event in session.scalars(stmt).all()]


def public_event_detail(
    session: Session, event_id: str, *, now: datetime | None = None
) -> dict[str, Any]:
    event = session.get(Event, event_id)
    if event is None:
        raise NotFound("Event not found")
    if not event.is_public:
        raise Forbidden("Event is not public")

    current = seated_count(session, event.id)
    now = now or utcnow()
    return {
        **serialize_public_event(event),
        "owner_id": event.owner_id,
        "allow_waitlist": event.allow_waitlist,
        "registration_deadline": isoformat_or_none(event.registration_deadline),
        "current_registrations": current,
        "is_full": not event.is_unlimited and current >= event.max_attendees,
        "is_registration_open": (
            event.registration_deadline is None or now < event.registration_deadline
        ),
        "available_spots": (
            None if event.is_unlimited else max(0, event.max_attendees - current)
        ),
    }


def public_event_stats(session: Session, event_id: str) -> dict[str, Any]:
    event = session.get(Event, event_id)
    if event is None or not event.is_public:
        raise NotFound("Event not found or not public")
    stats = registration_stats(session, event.id).as_dict()
    return {
        "total_registrations": stats["total_registrations"],
        "registered_count": stats["registered_count"],
        "checked_in_count": stats["checked_in_count"],
        "waitlisted_count": stats["waitlisted_count"],
        "check_in_rate": stats["check_in_rate"],
    }
