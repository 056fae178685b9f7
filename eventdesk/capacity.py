"""Registration capacity management.

The :class:`RegistrationCapacityManager` is the only writer of registration
``status`` and ``waitlist_position``. Each operation runs in its own unit of
work that starts by claiming the event: a compare-and-swap on
``events.registration_version``. The claim first takes the database write
lock (``BEGIN IMMEDIATE`` on SQLite, ``SELECT ... FOR UPDATE`` elsewhere) and
holds it until commit, so seat counting, waitlist position assignment and
renumbering never interleave for the same event. If the swap still loses, the
whole operation is rolled back and replayed after a short jittered backoff.
"""

from __future__ import annotations

import logging
import random
import secrets
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from . import database
from .config import settings
from .crud import create_participant
from .errors import (
    DeadlineExpired,
    DuplicateRegistration,
    EventFull,
    Forbidden,
    NotFound,
    RegistrationConflict,
    RegistrationError,
    RegistrationNotEligible,
    StaleRegistrationState,
)
from .models import (
    ACTIVE_STATUSES,
    SEATED_STATUSES,
    Event,
    Participant,
    Registration,
    RegistrationStatus,
)
from .utils import isoformat_or_none, normalize_email, utcnow

logger = logging.getLogger("uvicorn.error")

UnitOfWork = Callable[[], AbstractContextManager[Session]]

_SEATED = [status.value for status in SEATED_STATUSES]
_ACTIVE = {status.value for status in ACTIVE_STATUSES}
_WAITLISTED = RegistrationStatus.WAITLISTED.value


@dataclass
class RegistrationResult:
    status: RegistrationStatus
    registration: Registration
    waitlist_position: int | None = None
    promoted: Registration | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status.value}
        if self.waitlist_position is not None:
            payload["waitlist_position"] = self.waitlist_position
        if self.promoted is not None:
            payload["promoted_participant_id"] = self.promoted.participant_id
        return payload


@dataclass
class BulkCheckInItem:
    participant_id: str
    success: bool
    status: str | None = None
    error: str | None = None
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "participant_id": self.participant_id,
            "success": self.success,
        }
        if self.success:
            payload["status"] = self.status
        else:
            payload["error"] = self.error
            payload["message"] = self.message
        return payload


@dataclass
class RegistrationStats:
    total: int
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def check_in_rate(self) -> float:
        if not self.total:
            return 0.0
        return self.counts.get(RegistrationStatus.CHECKED_IN.value, 0) / self.total * 100

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_registrations": self.total,
            "registered_count": self.counts[RegistrationStatus.REGISTERED.value],
            "waitlisted_count": self.counts[RegistrationStatus.WAITLISTED.value],
            "checked_in_count": self.counts[RegistrationStatus.CHECKED_IN.value],
            "cancelled_count": self.counts[RegistrationStatus.CANCELLED.value],
            "no_show_count": self.counts[RegistrationStatus.NO_SHOW.value],
            "check_in_rate": round(self.check_in_rate, 2),
        }


class WaitlistSequence:
    """Dense ``1..N`` waitlist positions for a single event.

    Callers must hold the event claim; the sequence itself takes no locks.
    """

    def __init__(self, session: Session, event_id: str):
        self.session = session
        self.event_id = event_id

    def _waitlisted(self):
        return select(Registration).where(
            Registration.event_id == self.event_id,
            Registration.status == _WAITLISTED,
        )

    def size(self) -> int:
        stmt = select(func.count(Registration.id)).where(
            Registration.event_id == self.event_id,
            Registration.status == _WAITLISTED,
        )
        return self.session.scalar(stmt) or 0

    def next_position(self) -> int:
        return self.size() + 1

    def head(self) -> Registration | None:
        stmt = self._waitlisted().order_by(Registration.waitlist_position.asc())
        return self.session.scalars(stmt).first()

    def entries(self) -> list[Registration]:
        stmt = self._waitlisted().order_by(Registration.waitlist_position.asc())
        return list(self.session.scalars(stmt).all())

    def close_gap(self, position: int) -> int:
        """Shift every entry behind ``position`` one place forward."""
        result = self.session.execute(
            update(Registration)
            .where(
                Registration.event_id == self.event_id,
                Registration.status == _WAITLISTED,
                Registration.waitlist_position > position,
            )
            .values(waitlist_position=Registration.waitlist_position - 1)
        )
        return result.rowcount or 0


def claim_event(session: Session, event_id: str) -> Event:
    """Load ``event_id`` and take the per-event registration claim.

    Raises :class:`StaleRegistrationState` when another writer bumped the
    version between our read and our swap.
    """
    database.lock_for_write(session)
    event = session.get(Event, event_id, with_for_update=True)
    if event is None:
        raise NotFound("Event not found")
    bump_registration_version(session, event, expected=event.registration_version)
    return event


def bump_registration_version(session: Session, event: Event, *, expected: int) -> None:
    result = session.execute(
        update(Event)
        .where(Event.id == event.id, Event.registration_version == expected)
        .values(registration_version=expected + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleRegistrationState(event.id)
    set_committed_value(event, "registration_version", expected + 1)


def seated_count(session: Session, event_id: str) -> int:
    stmt = select(func.count(Registration.id)).where(
        Registration.event_id == event_id, Registration.status.in_(_SEATED)
    )
    return session.scalar(stmt) or 0


def get_registration(
    session: Session, event_id: str, participant_id: str
) -> Registration | None:
    stmt = select(Registration).where(
        Registration.event_id == event_id,
        Registration.participant_id == participant_id,
    )
    return session.scalars(stmt).first()


def get_registration_by_token(session: Session, token: str) -> Registration | None:
    stmt = select(Registration).where(Registration.registration_token == token)
    return session.scalars(stmt).first()


def active_registration_for_email(
    session: Session, event_id: str, email: str
) -> Registration | None:
    stmt = (
        select(Registration)
        .join(Registration.participant)
        .where(
            Registration.event_id == event_id,
            Registration.status.in_(_ACTIVE),
            Participant.email == email,
        )
    )
    return session.scalars(stmt).first()


def _require_registration(
    session: Session,
    event_id: str,
    participant_id: str,
    *,
    allowed: Iterable[RegistrationStatus],
    token: str | None = None,
) -> Registration:
    registration = get_registration(session, event_id, participant_id)
    if registration is None:
        raise NotFound("Registration not found")
    if token is not None and not secrets.compare_digest(
        registration.registration_token, token
    ):
        raise Forbidden("Registration token does not match")
    if registration.status not in {status.value for status in allowed}:
        raise RegistrationNotEligible(
            f"Registration is {registration.status}; this action is not allowed."
        )
    return registration


def _vacate_waitlist_slot(session: Session, registration: Registration) -> None:
    """Clear ``registration``'s position and close the gap it leaves."""
    position = registration.waitlist_position
    registration.waitlist_position = None
    session.add(registration)
    session.flush()
    if position is not None:
        WaitlistSequence(session, registration.event_id).close_gap(position)


class RegistrationCapacityManager:
    """Admission, waitlisting, cancellation, check-in and promotion."""

    def __init__(
        self,
        *,
        unit_of_work: UnitOfWork | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int | None = None,
        backoff: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._unit_of_work = unit_of_work or database.unit_of_work
        self._clock = clock
        self._max_attempts = max_attempts or settings.registration_retry_attempts
        self._backoff = (
            settings.registration_retry_backoff_seconds if backoff is None else backoff
        )
        self._sleep = sleep

    def _retry_delay(self, attempt: int) -> float:
        """Full-jitter exponential delay before replaying ``attempt + 1``."""
        return random.uniform(0, self._backoff * 2 ** (attempt - 1))

    def _run(self, operation: Callable[..., Any], event_id: str, *args, **kwargs):
        for attempt in range(1, self._max_attempts + 1):
            try:
                with self._unit_of_work() as session:
                    return operation(session, event_id, *args, **kwargs)
            except StaleRegistrationState:
                logger.warning(
                    "Registration claim for event %s lost on attempt %d/%d; retrying",
                    event_id,
                    attempt,
                    self._max_attempts,
                )
                if attempt < self._max_attempts and self._backoff > 0:
                    self._sleep(self._retry_delay(attempt))
        raise RegistrationConflict()

    # -------- public operations --------

    def submit_registration(
        self,
        event_id: str,
        participant_id: str,
        *,
        source: str = "web",
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RegistrationResult:
        """Admit, waitlist, or reject ``participant_id`` for ``event_id``."""
        return self._run(
            self._submit,
            event_id,
            participant_id,
            source=source,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def submit_rsvp(
        self,
        event_id: str,
        *,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        notes: str | None = None,
        source: str = "web",
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RegistrationResult:
        """Create a participant and register them in a single unit of work.

        A rejected RSVP writes nothing. An email that already holds an active
        registration for the event is a :class:`DuplicateRegistration`.
        """
        return self._run(
            self._rsvp,
            event_id,
            name=name,
            email=email,
            phone=phone,
            notes=notes,
            source=source,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def check_in(self, event_id: str, participant_id: str) -> RegistrationResult:
        return self._run(self._check_in, event_id, participant_id)

    def cancel(
        self, event_id: str, participant_id: str, *, token: str | None = None
    ) -> RegistrationResult:
        """Cancel a registration; when ``token`` is given it must match."""
        return self._run(self._cancel, event_id, participant_id, token=token)

    def no_show(self, event_id: str, participant_id: str) -> RegistrationResult:
        return self._run(self._no_show, event_id, participant_id)

    def bulk_check_in(
        self, event_id: str, participant_ids: Sequence[str]
    ) -> list[BulkCheckInItem]:
        """Check in each participant on its own; failures are reported per item."""
        results: list[BulkCheckInItem] = []
        for participant_id in participant_ids:
            try:
                outcome = self.check_in(event_id, participant_id)
            except RegistrationError as exc:
                results.append(
                    BulkCheckInItem(
                        participant_id=participant_id,
                        success=False,
                        error=exc.code,
                        message=exc.message,
                    )
                )
                continue
            results.append(
                BulkCheckInItem(
                    participant_id=participant_id,
                    success=True,
                    status=outcome.status.value,
                )
            )
        succeeded = sum(1 for item in results if item.success)
        logger.info(
            "Bulk check-in for event %s: %d/%d succeeded",
            event_id,
            succeeded,
            len(results),
        )
        return results

    # -------- units of work --------

    def _submit(
        self,
        session: Session,
        event_id: str,
        participant_id: str,
        *,
        source: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> RegistrationResult:
        event = claim_event(session, event_id)
        now = self._clock()
        if event.registration_deadline and now > event.registration_deadline:
            raise DeadlineExpired()
        if session.get(Participant, participant_id) is None:
            raise NotFound("Participant not found")

        existing = get_registration(session, event_id, participant_id)
        if existing is not None and existing.status in _ACTIVE:
            raise DuplicateRegistration()

        status, position = self._admission(session, event)
        # The (event, participant) pair is unique, so a cancelled or no-show
        # registration is revived rather than duplicated.
        registration = existing or Registration(
            event_id=event_id, participant_id=participant_id
        )
        return self._record(
            session,
            registration,
            status,
            position,
            rsvp_at=now,
            source=source,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def _rsvp(
        self,
        session: Session,
        event_id: str,
        *,
        name: str,
        email: str | None,
        phone: str | None,
        notes: str | None,
        source: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> RegistrationResult:
        event = claim_event(session, event_id)
        now = self._clock()
        if event.registration_deadline and now > event.registration_deadline:
            raise DeadlineExpired()
        normalized_email = normalize_email(email)
        if normalized_email and active_registration_for_email(
            session, event_id, normalized_email
        ):
            raise DuplicateRegistration(
                "This email is already registered for this event."
            )

        status, position = self._admission(session, event)
        participant = create_participant(
            session, name=name, email=normalized_email, phone=phone, notes=notes
        )
        registration = Registration(event_id=event_id, participant=participant)
        return self._record(
            session,
            registration,
            status,
            position,
            rsvp_at=now,
            source=source,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def _admission(
        self, session: Session, event: Event
    ) -> tuple[RegistrationStatus, int | None]:
        if event.is_unlimited or seated_count(session, event.id) < event.max_attendees:
            return RegistrationStatus.REGISTERED, None
        if event.allow_waitlist:
            return (
                RegistrationStatus.WAITLISTED,
                WaitlistSequence(session, event.id).next_position(),
            )
        raise EventFull()

    def _record(
        self,
        session: Session,
        registration: Registration,
        status: RegistrationStatus,
        position: int | None,
        *,
        rsvp_at: datetime,
        source: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> RegistrationResult:
        registration.status = status.value
        registration.waitlist_position = position
        registration.rsvp_at = rsvp_at
        registration.check_in_at = None
        registration.source = source
        registration.ip_address = ip_address
        registration.user_agent = user_agent
        session.add(registration)
        session.flush()

        logger.info(
            "Participant %s %s for event %s%s",
            registration.participant_id,
            status.value.lower(),
            registration.event_id,
            f" at waitlist position {position}" if position else "",
        )
        return RegistrationResult(
            status=status, registration=registration, waitlist_position=position
        )

    def _check_in(
        self, session: Session, event_id: str, participant_id: str
    ) -> RegistrationResult:
        claim_event(session, event_id)
        registration = _require_registration(
            session,
            event_id,
            participant_id,
            allowed=(RegistrationStatus.REGISTERED, RegistrationStatus.WAITLISTED),
        )
        was_waitlisted = registration.status == _WAITLISTED
        registration.status = RegistrationStatus.CHECKED_IN.value
        registration.check_in_at = self._clock()
        if was_waitlisted:
            _vacate_waitlist_slot(session, registration)
        else:
            session.add(registration)
            session.flush()
        logger.info(
            "Participant %s checked in for event %s%s",
            participant_id,
            event_id,
            " from the waitlist" if was_waitlisted else "",
        )
        return RegistrationResult(
            status=RegistrationStatus.CHECKED_IN, registration=registration
        )

    def _cancel(
        self,
        session: Session,
        event_id: str,
        participant_id: str,
        *,
        token: str | None = None,
    ) -> RegistrationResult:
        event = claim_event(session, event_id)
        registration = _require_registration(
            session,
            event_id,
            participant_id,
            allowed=(RegistrationStatus.REGISTERED, RegistrationStatus.WAITLISTED),
            token=token,
        )
        was_waitlisted = registration.status == _WAITLISTED
        registration.status = RegistrationStatus.CANCELLED.value
        if was_waitlisted:
            _vacate_waitlist_slot(session, registration)
            logger.info(
                "Participant %s left the waitlist for event %s", participant_id, event_id
            )
            return RegistrationResult(
                status=RegistrationStatus.CANCELLED, registration=registration
            )

        session.add(registration)
        session.flush()
        promoted = self._promote_next(session, event)
        logger.info("Participant %s cancelled for event %s", participant_id, event_id)
        return RegistrationResult(
            status=RegistrationStatus.CANCELLED,
            registration=registration,
            promoted=promoted,
        )

    def _no_show(
        self, session: Session, event_id: str, participant_id: str
    ) -> RegistrationResult:
        claim_event(session, event_id)
        registration = _require_registration(
            session,
            event_id,
            participant_id,
            allowed=(RegistrationStatus.CHECKED_IN,),
        )
        # The seat was already consumed; nobody is promoted.
        registration.status = RegistrationStatus.NO_SHOW.value
        session.add(registration)
        session.flush()
        logger.info("Participant %s marked no-show for event %s", participant_id, event_id)
        return RegistrationResult(
            status=RegistrationStatus.NO_SHOW, registration=registration
        )

    def _promote_next(self, session: Session, event: Event) -> Registration | None:
        if not event.is_unlimited and seated_count(session, event.id) >= event.max_attendees:
            return None
        sequence = WaitlistSequence(session, event.id)
        head = sequence.head()
        if head is None:
            return None
        head.status = RegistrationStatus.REGISTERED.value
        _vacate_waitlist_slot(session, head)
        logger.info(
            "Promoted participant %s from the waitlist for event %s",
            head.participant_id,
            event.id,
        )
        return head


# -------- read helpers --------


def waitlist(session: Session, event_id: str) -> list[Registration]:
    return WaitlistSequence(session, event_id).entries()


def list_registrations(
    session: Session,
    event_id: str,
    *,
    include_waitlist: bool = False,
    limit: int | None = None,
) -> list[Registration]:
    statuses = list(_SEATED)
    if include_waitlist:
        statuses.append(_WAITLISTED)
    stmt = (
        select(Registration)
        .where(Registration.event_id == event_id, Registration.status.in_(statuses))
        .order_by(Registration.rsvp_at.desc())
    )
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return list(session.scalars(stmt).all())


def registration_stats(session: Session, event_id: str) -> RegistrationStats:
    rows = session.execute(
        select(Registration.status, func.count(Registration.id))
        .where(Registration.event_id == event_id)
        .group_by(Registration.status)
    ).all()
    counts = {status.value: 0 for status in RegistrationStatus}
    for status, count in rows:
        counts[status] = count
    return RegistrationStats(total=sum(counts.values()), counts=counts)


def serialize_registration(registration: Registration) -> dict[str, Any]:
    return {
        "id": registration.id,
        "event_id": registration.event_id,
        "participant_id": registration.participant_id,
        "status": registration.status,
        "waitlist_position": registration.waitlist_position,
        "rsvp_at": isoformat_or_none(registration.rsvp_at),
        "check_in_at": isoformat_or_none(registration.check_in_at),
        "source": registration.source,
    }
