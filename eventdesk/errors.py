"""Typed failures shared by the capacity manager, interactions, API and CLI."""

from __future__ import annotations


class RegistrationError(Exception):
    """Base class for expected registration outcomes that are not successes."""

    code = "RegistrationError"
    message = "The registration request could not be completed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def as_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class NotFound(RegistrationError):
    code = "NotFound"
    message = "The requested event or registration does not exist."


class Forbidden(RegistrationError):
    code = "Forbidden"
    message = "You are not allowed to perform this action."


class AuthenticationRequired(RegistrationError):
    code = "Unauthorized"
    message = "Authentication is required for this action."


class EventFull(RegistrationError):
    code = "EventFull"
    message = "This event has reached its maximum number of attendees."


class DeadlineExpired(RegistrationError):
    code = "DeadlineExpired"
    message = "The registration deadline for this event has passed."


class DuplicateRegistration(RegistrationError):
    code = "DuplicateRegistration"
    message = "This participant is already registered for this event."


class RegistrationNotEligible(RegistrationError):
    code = "RegistrationNotEligible"
    message = "The registration is not in a state that allows this action."


class RegistrationConflict(RegistrationError):
    """Raised when concurrent writers kept winning the per-event claim."""

    code = "RegistrationConflict"
    message = "The event is busy processing other registrations. Please retry."


class StaleRegistrationState(Exception):
    """Another writer changed the event's registrations since it was read."""
