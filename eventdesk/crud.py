"""CRUD helpers for events, tags, participants, and event members."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Event, EventMember, EventTag, MemberRole, Participant
from .policy import AccessContext
from .utils import normalize_email, to_naive_utc

VALID_MEMBER_ROLES = {role.value for role in MemberRole}


def normalize_tags(raw: Iterable[str] | None) -> list[str]:
    """Lower-case, strip and de-duplicate tags, keeping first-seen order."""
    seen: list[str] = []
    for tag in raw or ():
        cleaned = (tag or "").strip().lower()[:50]
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def _normalize_max_attendees(raw: int | None) -> int | None:
    if raw is None:
        return None
    value = int(raw)
    if value < 1:
        raise ValueError("max_attendees must be at least 1")
    return value


def create_event(
    session: Session,
    *,
    owner_id: str,
    title: str,
    start_time: datetime,
    description: str | None = None,
    end_time: datetime | None = None,
    location: str | None = None,
    is_public: bool = True,
    max_attendees: int | None = None,
    allow_waitlist: bool = False,
    registration_deadline: datetime | None = None,
    tags: Iterable[str] | None = None,
) -> Event:
    """Create and persist a new event."""
    cleaned_title = (title or "").strip()
    if not cleaned_title:
        raise ValueError("title is required")
    normalized_start = to_naive_utc(start_time)
    normalized_end = to_naive_utc(end_time)
    if normalized_end and normalized_end <= normalized_start:
        raise ValueError("End time must be after the start time")

    event = Event(
        owner_id=owner_id,
        title=cleaned_title,
        description=description,
        location=location,
        start_time=normalized_start,
        end_time=normalized_end,
        is_public=is_public,
        max_attendees=_normalize_max_attendees(max_attendees),
        allow_waitlist=bool(allow_waitlist),
        registration_deadline=to_naive_utc(registration_deadline),
        tags=[EventTag(tag=tag) for tag in normalize_tags(tags)],
    )
    session.add(event)
    session.flush()
    return event


def create_participant(
    session: Session,
    *,
    name: str,
    email: str | None = None,
    phone: str | None = None,
    notes: str | None = None,
) -> Participant:
    """Create a participant record for one registration.

    Existing participants are never matched or updated by email; every
    registration owns its own record.
    """
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise ValueError("name is required")
    participant = Participant(
        name=cleaned_name,
        email=normalize_email(email),
        phone=(phone or "").strip() or None,
        notes=notes,
    )
    session.add(participant)
    session.flush()
    return participant


def add_event_member(
    session: Session,
    *,
    event: Event,
    user_id: str,
    added_by: str,
    role: str = MemberRole.STAFF.value,
) -> EventMember:
    """Add ``user_id`` to the event's crew or update their member role."""
    normalized_role = (role or "").strip().upper()
    if normalized_role not in VALID_MEMBER_ROLES:
        raise ValueError("Invalid member role")
    stmt = select(EventMember).where(
        EventMember.event_id == event.id, EventMember.user_id == user_id
    )
    member = session.scalars(stmt).first()
    if member:
        member.role = normalized_role
    else:
        member = EventMember(
            event_id=event.id,
            user_id=user_id,
            role=normalized_role,
            added_by=added_by,
        )
    session.add(member)
    session.flush()
    return member


def event_member_role(session: Session, *, event_id: str, user_id: str) -> str | None:
    stmt = select(EventMember.role).where(
        EventMember.event_id == event_id, EventMember.user_id == user_id
    )
    return session.scalars(stmt).first()


def is_event_member(session: Session, *, event_id: str, user_id: str) -> bool:
    return event_member_role(session, event_id=event_id, user_id=user_id) is not None


def access_context(
    session: Session, *, event: Event, principal_id: str | None
) -> AccessContext:
    """Build the policy context for ``principal_id`` acting on ``event``."""
    return AccessContext(
        principal_id=principal_id,
        event_owner_id=event.owner_id,
        member_role=(
            event_member_role(session, event_id=event.id, user_id=principal_id)
            if principal_id
            else None
        ),
        event_is_public=bool(event.is_public),
    )
