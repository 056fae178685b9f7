from __future__ import annotations

import pytest

from eventdesk.policy import (
    AccessContext,
    Action,
    Role,
    can,
    permissions_for,
    roles_with,
)


def _context(**overrides) -> AccessContext:
    params = {
        "principal_id": "user-1",
        "event_owner_id": "owner-1",
        "member_role": None,
        "event_is_public": False,
    }
    params.update(overrides)
    return AccessContext(**params)


@pytest.mark.parametrize("action", list(Action))
def test_admin_can_do_everything(action):
    assert can(Role.ADMIN, action, _context())


def test_staff_capabilities_exclude_event_lifecycle():
    staff = permissions_for(Role.STAFF)
    assert Action.CHECKIN_MANAGE in staff
    assert Action.REGISTRATION_READ in staff
    assert Action.EVENT_CREATE not in staff
    assert Action.EVENT_DELETE not in staff
    assert Action.SYSTEM_ADMIN not in staff


def test_owner_capabilities_include_create_and_delete():
    owner = permissions_for(Role.OWNER)
    assert Action.EVENT_CREATE in owner
    assert Action.EVENT_DELETE in owner
    assert Action.USER_MANAGE not in owner


def test_owner_limited_to_own_events():
    own = _context(principal_id="owner-1")
    foreign = _context(principal_id="owner-2")

    assert can(Role.OWNER, Action.CHECKIN_MANAGE, own)
    assert not can(Role.OWNER, Action.CHECKIN_MANAGE, foreign)
    assert not can(Role.OWNER, Action.CHECKIN_MANAGE, _context(principal_id=None))


def test_owner_may_create_events_without_ownership():
    assert can(Role.OWNER, Action.EVENT_CREATE, _context(event_owner_id=None))


def test_staff_requires_membership():
    assert not can(Role.STAFF, Action.CHECKIN_MANAGE, _context())
    assert can(Role.STAFF, Action.CHECKIN_MANAGE, _context(member_role="STAFF"))
    assert not can(Role.STAFF, Action.EVENT_DELETE, _context(member_role="STAFF"))


def test_viewer_members_only_read():
    viewer = _context(member_role="VIEWER")

    assert viewer.is_event_member
    assert can(Role.STAFF, Action.EVENT_READ, viewer)
    assert can(Role.STAFF, Action.REGISTRATION_READ, viewer)
    assert not can(Role.STAFF, Action.CHECKIN_MANAGE, viewer)
    assert not can(Role.STAFF, Action.INTERACTION_MODERATE, viewer)


def test_moderator_members_handle_interactions_not_check_in():
    moderator = _context(member_role="MODERATOR")

    assert can(Role.STAFF, Action.INTERACTION_MODERATE, moderator)
    assert can(Role.STAFF, Action.INTERACTION_DELETE, moderator)
    assert not can(Role.STAFF, Action.CHECKIN_MANAGE, moderator)
    assert not can(Role.STAFF, Action.REGISTRATION_EXPORT, moderator)


def test_unknown_member_role_grants_nothing():
    assert not can(Role.STAFF, Action.EVENT_READ, _context(member_role="GUEST"))


def test_public_events_are_readable_by_anyone():
    public = _context(event_is_public=True)

    assert can(None, Action.EVENT_READ, public)
    assert can("STAFF", Action.EVENT_READ, public)
    assert not can(None, Action.EVENT_READ, _context())
    assert not can(None, Action.REGISTRATION_READ, public)


def test_roles_accept_strings_and_reject_unknown():
    assert can("admin", "system:admin")
    assert not can("JANITOR", Action.EVENT_READ, _context())
    assert permissions_for("JANITOR") == frozenset()


def test_unknown_action_raises():
    with pytest.raises(ValueError):
        can(Role.ADMIN, "event:explode")


def test_roles_with_action():
    assert roles_with(Action.CHECKIN_MANAGE) == [Role.ADMIN, Role.STAFF, Role.OWNER]
    assert roles_with(Action.SYSTEM_ADMIN) == [Role.ADMIN]
