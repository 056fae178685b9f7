"""Attendee interactions: comments, likes, shares, photos, surveys and feedback.

Public events accept interactions from anyone; anonymous callers may only
like or share. Moderation hides an interaction from the public listing
without deleting it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .auth import Principal
from .crud import access_context
from .errors import AuthenticationRequired, Forbidden, NotFound, RegistrationError
from .models import Event, Interaction, InteractionType
from .policy import Action, Role, can
from .utils import isoformat_or_none, utcnow

logger = logging.getLogger("uvicorn.error")

ANONYMOUS_TYPES = frozenset({InteractionType.LIKE, InteractionType.SHARE})
DEFAULT_REJECTION_REASON = "Content violation"
MODERATION_ACTIONS = ("approve", "reject")


@dataclass
class BulkModerationItem:
    interaction_id: str
    success: bool
    is_moderated: bool | None = None
    error: str | None = None
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "interaction_id": self.interaction_id,
            "success": self.success,
        }
        if self.success:
            payload["is_moderated"] = self.is_moderated
        else:
            payload["error"] = self.error
            payload["message"] = self.message
        return payload


def _allowed(session: Session, principal: Principal | None, event: Event, action: Action) -> bool:
    if principal is None:
        return False
    context = access_context(session, event=event, principal_id=principal.id)
    return can(principal.role, action, context)


def _require_readable(session: Session, event: Event, principal: Principal | None) -> None:
    if event.is_public:
        return
    if principal is None:
        raise AuthenticationRequired()
    if not _allowed(session, principal, event, Action.EVENT_READ):
        raise Forbidden()


def get_interaction(session: Session, event_id: str, interaction_id: str) -> Interaction:
    interaction = session.get(Interaction, interaction_id)
    if interaction is None or interaction.event_id != event_id:
        raise NotFound("Interaction not found")
    return interaction


def create_interaction(
    session: Session,
    *,
    event: Event,
    type: InteractionType | str,
    content: str | None = None,
    principal: Principal | None = None,
    participant_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Interaction:
    """Record an interaction on ``event``.

    Signed-in principals post as themselves. A participant who proved their
    registration posts as that participant. Anyone else may only like or
    share a public event.
    """
    kind = InteractionType(type)
    if event.is_public:
        if principal is None and participant_id is None and kind not in ANONYMOUS_TYPES:
            raise AuthenticationRequired(
                "Authentication required for this interaction type"
            )
    elif not _allowed(session, principal, event, Action.INTERACTION_CREATE):
        raise Forbidden("Event is not public")

    cleaned = (content or "").strip() or None
    if kind is InteractionType.COMMENT and not cleaned:
        raise ValueError("Comments need content")
    interaction = Interaction(
        event_id=event.id,
        participant_id=participant_id,
        user_id=principal.id if principal else None,
        type=kind.value,
        content=cleaned,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(interaction)
    session.flush()
    logger.info("New %s interaction %s on event %s", kind.value, interaction.id, event.id)
    return interaction


def list_interactions(
    session: Session,
    *,
    event: Event,
    principal: Principal | None = None,
    type: InteractionType | str | None = None,
    include_moderated: bool = False,
    limit: int = 100,
) -> list[Interaction]:
    _require_readable(session, event, principal)
    if include_moderated:
        if principal is None:
            raise AuthenticationRequired()
        if not _allowed(session, principal, event, Action.INTERACTION_MODERATE):
            raise Forbidden("Only moderators can see moderated interactions")

    stmt = select(Interaction).where(Interaction.event_id == event.id)
    if type:
        stmt = stmt.where(Interaction.type == InteractionType(type).value)
    if not include_moderated:
        stmt = stmt.where(Interaction.is_moderated.is_(False))
    stmt = stmt.order_by(Interaction.created_at.desc()).limit(max(1, limit))
    return list(session.scalars(stmt).all())


def _apply_moderation(
    interaction: Interaction, principal: Principal, action: str, reason: str | None
) -> None:
    if action == "approve":
        interaction.is_moderated = False
        interaction.moderated_by = None
        interaction.moderated_at = None
        interaction.moderation_reason = None
    else:
        interaction.is_moderated = True
        interaction.moderated_by = principal.id
        interaction.moderated_at = utcnow()
        interaction.moderation_reason = reason or DEFAULT_REJECTION_REASON


def _check_moderation_action(action: str) -> None:
    if action not in MODERATION_ACTIONS:
        raise ValueError("action must be 'approve' or 'reject'")


def moderate_interaction(
    session: Session,
    *,
    event: Event,
    interaction_id: str,
    principal: Principal,
    action: str,
    reason: str | None = None,
) -> Interaction:
    _check_moderation_action(action)
    if not _allowed(session, principal, event, Action.INTERACTION_MODERATE):
        raise Forbidden()
    interaction = get_interaction(session, event.id, interaction_id)
    _apply_moderation(interaction, principal, action, reason)
    session.add(interaction)
    session.flush()
    logger.info(
        "Interaction %s on event %s moderated (%s) by %s",
        interaction.id,
        event.id,
        action,
        principal.id,
    )
    return interaction


def bulk_moderate(
    session: Session,
    *,
    event: Event,
    interaction_ids: Sequence[str],
    principal: Principal,
    action: str,
    reason: str | None = None,
) -> list[BulkModerationItem]:
    """Moderate each interaction on its own; unknown ids are reported per item."""
    _check_moderation_action(action)
    if not _allowed(session, principal, event, Action.INTERACTION_MODERATE):
        raise Forbidden()
    results: list[BulkModerationItem] = []
    for interaction_id in interaction_ids:
        try:
            interaction = get_interaction(session, event.id, interaction_id)
        except RegistrationError as exc:
            results.append(
                BulkModerationItem(
                    interaction_id=interaction_id,
                    success=False,
                    error=exc.code,
                    message=exc.message,
                )
            )
            continue
        _apply_moderation(interaction, principal, action, reason)
        session.add(interaction)
        results.append(
            BulkModerationItem(
                interaction_id=interaction_id,
                success=True,
                is_moderated=interaction.is_moderated,
            )
        )
    session.flush()
    logger.info(
        "Bulk %s on event %s: %d/%d interactions updated",
        action,
        event.id,
        sum(1 for item in results if item.success),
        len(results),
    )
    return results


def delete_interaction(
    session: Session,
    *,
    event: Event,
    interaction_id: str,
    principal: Principal,
) -> None:
    """Delete an interaction.

    Authors may delete their own. Admins may delete anything; other roles
    holding ``interaction:delete`` may delete everything except comments.
    """
    interaction = get_interaction(session, event.id, interaction_id)
    is_author = interaction.user_id is not None and interaction.user_id == principal.id
    may_delete = _allowed(session, principal, event, Action.INTERACTION_DELETE) and (
        principal.role is Role.ADMIN or interaction.type != InteractionType.COMMENT.value
    )
    if not (is_author or may_delete):
        raise Forbidden()
    session.delete(interaction)
    session.flush()
    logger.info("Interaction %s on event %s deleted by %s", interaction_id, event.id, principal.id)


def interaction_type_counts(session: Session, event_id: str) -> list[dict[str, Any]]:
    rows = session.execute(
        select(
            Interaction.type,
            func.count(Interaction.id),
            func.sum(case((Interaction.is_moderated.is_(True), 1), else_=0)),
        )
        .where(Interaction.event_id == event_id)
        .group_by(Interaction.type)
        .order_by(Interaction.type)
    ).all()
    return [
        {"type": kind, "count": count, "moderated_count": int(moderated or 0)}
        for kind, count, moderated in rows
    ]


def interaction_stats(
    session: Session, *, event: Event, principal: Principal | None = None
) -> dict[str, Any]:
    _require_readable(session, event, principal)
    breakdown = interaction_type_counts(session, event.id)
    total = sum(item["count"] for item in breakdown)
    moderated = sum(item["moderated_count"] for item in breakdown)
    return {
        "total_interactions": total,
        "moderated_interactions": moderated,
        "type_breakdown": breakdown,
        "moderation_rate": round(moderated / total * 100, 2) if total else 0.0,
    }


def serialize_interaction(interaction: Interaction) -> dict[str, Any]:
    return {
        "id": interaction.id,
        "event_id": interaction.event_id,
        "participant_id": interaction.participant_id,
        "user_id": interaction.user_id,
        "type": interaction.type,
        "content": interaction.content,
        "is_moderated": interaction.is_moderated,
        "moderated_by": interaction.moderated_by,
        "moderated_at": isoformat_or_none(interaction.moderated_at),
        "moderation_reason": interaction.moderation_reason,
        "created_at": isoformat_or_none(interaction.created_at),
    }
