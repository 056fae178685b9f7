"""Role-based access policy.

Every handler asks the same question through :func:`can`: may a principal
with ``role`` perform ``action`` given what we know about the event? The
capability table decides whether the role may ever perform the action; the
context decides whether it may do so for this particular event.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    OWNER = "OWNER"


class Action(str, enum.Enum):
    EVENT_CREATE = "event:create"
    EVENT_READ = "event:read"
    EVENT_UPDATE = "event:update"
    EVENT_DELETE = "event:delete"
    EVENT_MANAGE_MEMBERS = "event:manage_members"
    REGISTRATION_READ = "registration:read"
    REGISTRATION_EXPORT = "registration:export"
    CHECKIN_MANAGE = "checkin:manage"
    INTERACTION_CREATE = "interaction:create"
    INTERACTION_MODERATE = "interaction:moderate"
    INTERACTION_DELETE = "interaction:delete"
    USER_MANAGE = "user:manage"
    SYSTEM_ADMIN = "system:admin"


_EVENT_WORK = frozenset(
    {
        Action.EVENT_READ,
        Action.EVENT_UPDATE,
        Action.EVENT_MANAGE_MEMBERS,
        Action.REGISTRATION_READ,
        Action.REGISTRATION_EXPORT,
        Action.CHECKIN_MANAGE,
        Action.INTERACTION_CREATE,
        Action.INTERACTION_MODERATE,
        Action.INTERACTION_DELETE,
    }
)

CAPABILITIES: dict[Role, frozenset[Action]] = {
    Role.ADMIN: frozenset(Action),
    Role.STAFF: _EVENT_WORK,
    Role.OWNER: _EVENT_WORK | {Action.EVENT_CREATE, Action.EVENT_DELETE},
}

# Actions that do not concern one particular event.
GLOBAL_ACTIONS = frozenset(
    {Action.EVENT_CREATE, Action.USER_MANAGE, Action.SYSTEM_ADMIN}
)


# What an event membership lets a STAFF principal do on that event.
MEMBER_GRANTS: dict[str, frozenset[Action]] = {
    "STAFF": _EVENT_WORK,
    "MODERATOR": frozenset(
        {
            Action.EVENT_READ,
            Action.REGISTRATION_READ,
            Action.INTERACTION_CREATE,
            Action.INTERACTION_MODERATE,
            Action.INTERACTION_DELETE,
        }
    ),
    "VIEWER": frozenset({Action.EVENT_READ, Action.REGISTRATION_READ}),
}


@dataclass(frozen=True)
class AccessContext:
    """What the policy knows about the target event and the acting principal."""

    principal_id: str | None = None
    event_owner_id: str | None = None
    member_role: str | None = None
    event_is_public: bool = False

    @property
    def is_event_member(self) -> bool:
        return self.member_role is not None


def _coerce_role(role: Role | str | None) -> Role | None:
    if role is None:
        return None
    try:
        return Role(str(getattr(role, "value", role)).upper())
    except ValueError:
        return None


def _coerce_action(action: Action | str) -> Action:
    return action if isinstance(action, Action) else Action(action)


def can(
    role: Role | str | None,
    action: Action | str,
    context: AccessContext | None = None,
) -> bool:
    """Return whether ``role`` may perform ``action`` in ``context``."""
    action = _coerce_action(action)
    context = context or AccessContext()
    resolved = _coerce_role(role)

    if action is Action.EVENT_READ and context.event_is_public:
        return True
    if resolved is None:
        return False
    if action not in CAPABILITIES[resolved]:
        return False
    if resolved is Role.ADMIN or action in GLOBAL_ACTIONS:
        return True
    if resolved is Role.OWNER:
        return (
            context.principal_id is not None
            and context.principal_id == context.event_owner_id
        )
    # STAFF only works events they were added to, within their member role.
    return action in MEMBER_GRANTS.get(context.member_role or "", frozenset())


def permissions_for(role: Role | str) -> frozenset[Action]:
    resolved = _coerce_role(role)
    if resolved is None:
        return frozenset()
    return CAPABILITIES[resolved]


def roles_with(action: Action | str) -> list[Role]:
    action = _coerce_action(action)
    return [role for role, actions in CAPABILITIES.items() if action in actions]
