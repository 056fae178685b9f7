"""FastAPI application for EventDesk."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Literal
import tomllib

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .analytics import event_analytics, system_stats
from .auth import Principal, principal_from_headers, require_principal
from .capacity import (
    RegistrationCapacityManager,
    get_registration_by_token,
    list_registrations,
    registration_stats,
    serialize_registration,
    waitlist,
)
from .config import settings
from .crud import access_context
from .database import SessionLocal
from .errors import (
    AuthenticationRequired,
    Forbidden,
    NotFound,
    RegistrationConflict,
    RegistrationError,
)
from .interactions import (
    bulk_moderate,
    create_interaction,
    delete_interaction,
    interaction_stats,
    list_interactions,
    moderate_interaction,
    serialize_interaction,
)
from .models import Event, InteractionType, Participant
from .policy import Action, can
from .public import (
    popular_events,
    public_event_detail,
    public_event_stats,
    search_public_events,
    upcoming_events,
)
from .storage import init_db

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

ERROR_STATUS_CODES: dict[type[RegistrationError], int] = {
    NotFound: 404,
    AuthenticationRequired: 401,
    Forbidden: 403,
    RegistrationConflict: 409,
}


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventdesk")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title="EventDesk", version=APP_VERSION, lifespan=lifespan)

capacity_manager = RegistrationCapacityManager()


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_capacity_manager() -> RegistrationCapacityManager:
    return capacity_manager


# -------- error handling --------


def _status_for(exc: RegistrationError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[error_type]
    return 400


@app.exception_handler(RegistrationError)
async def registration_error_handler(request: Request, exc: RegistrationError):
    status = _status_for(exc)
    logger.info(
        "%s %s rejected with %s: %s",
        request.method,
        request.url.path,
        exc.code,
        exc.message,
    )
    return JSONResponse(exc.as_dict(), status_code=status)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers
    )


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- request payloads --------


class RSVPPayload(BaseModel):
    event_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., max_length=254, pattern=EMAIL_PATTERN)
    phone: str | None = Field(None, max_length=20)
    notes: str | None = Field(None, max_length=500)


class CheckInPayload(BaseModel):
    event_id: str = Field(..., min_length=1)
    participant_id: str = Field(..., min_length=1)
    notes: str | None = Field(None, max_length=200)


class BulkCheckInPayload(BaseModel):
    event_id: str = Field(..., min_length=1)
    participant_ids: list[str] = Field(..., min_length=1)


class CancelPayload(BaseModel):
    token: str = Field(..., min_length=1, max_length=64)


class InteractionPayload(BaseModel):
    type: InteractionType
    content: str | None = Field(None, max_length=1000)
    registration_token: str | None = Field(None, max_length=64)


class ModerationPayload(BaseModel):
    action: Literal["approve", "reject"]
    reason: str | None = Field(None, max_length=200)


class BulkModerationPayload(ModerationPayload):
    interaction_ids: list[str] = Field(..., min_length=1)


# -------- helpers --------


def _ensure_event(db: Session, event_id: str) -> Event:
    event = db.get(Event, event_id)
    if not event:
        raise NotFound("Event not found")
    return event


def _authorize(db: Session, principal: Principal, event: Event, action: Action) -> None:
    context = access_context(db, event=event, principal_id=principal.id)
    if not can(principal.role, action, context):
        logger.info(
            "Principal %s (%s) denied %s on event %s",
            principal.id,
            principal.role.value,
            action.value,
            event.id,
        )
        raise Forbidden()


def _serialize_participant(participant: Participant) -> dict:
    return {
        "id": participant.id,
        "name": participant.name,
        "email": participant.email,
        "phone": participant.phone,
    }


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# -------- JSON API (v1) --------


@app.get("/api/v1/version")
def api_version():
    return {"version": APP_VERSION}


@app.post("/api/v1/rsvp", status_code=201)
def api_create_rsvp(
    payload: RSVPPayload,
    request: Request,
    db: Session = Depends(get_db),
    manager: RegistrationCapacityManager = Depends(get_capacity_manager),
):
    event = _ensure_event(db, payload.event_id)
    if not event.is_public:
        raise Forbidden("Event is not public")
    try:
        result = manager.submit_rsvp(
            event.id,
            name=payload.name,
            email=payload.email,
            phone=payload.phone,
            notes=payload.notes,
            source="web",
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        **result.as_dict(),
        "registration": serialize_registration(result.registration),
        "registration_token": result.registration.registration_token,
        "participant": _serialize_participant(result.registration.participant),
    }


@app.post("/api/v1/events/{event_id}/rsvp/{participant_id}/cancel")
def api_cancel_rsvp(
    event_id: str,
    participant_id: str,
    payload: CancelPayload,
    manager: RegistrationCapacityManager = Depends(get_capacity_manager),
):
    result = manager.cancel(event_id, participant_id, token=payload.token)
    return {
        **result.as_dict(),
        "registration": serialize_registration(result.registration),
    }


@app.post("/api/v1/checkin")
def api_check_in(
    payload: CheckInPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
    manager: RegistrationCapacityManager = Depends(get_capacity_manager),
):
    event = _ensure_event(db, payload.event_id)
    _authorize(db, principal, event, Action.CHECKIN_MANAGE)
    result = manager.check_in(event.id, payload.participant_id)
    return {
        **result.as_dict(),
        "registration": serialize_registration(result.registration),
        "message": "Participant checked in successfully",
    }


@app.post("/api/v1/checkout")
def api_check_out(
    payload: CheckInPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
    manager: RegistrationCapacityManager = Depends(get_capacity_manager),
):
    event = _ensure_event(db, payload.event_id)
    _authorize(db, principal, event, Action.CHECKIN_MANAGE)
    result = manager.no_show(event.id, payload.participant_id)
    return {
        **result.as_dict(),
        "registration": serialize_registration(result.registration),
        "message": "Participant checked out successfully",
    }


@app.post("/api/v1/checkin/bulk")
def api_bulk_check_in(
    payload: BulkCheckInPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
    manager: RegistrationCapacityManager = Depends(get_capacity_manager),
):
    if len(payload.participant_ids) > settings.bulk_checkin_limit:
        raise HTTPException(
            status_code=400,
            detail=f"At most {settings.bulk_checkin_limit} participants per request",
        )
    event = _ensure_event(db, payload.event_id)
    _authorize(db, principal, event, Action.CHECKIN_MANAGE)
    results = manager.bulk_check_in(event.id, payload.participant_ids)
    return {"results": [item.as_dict() for item in results]}


@app.get("/api/v1/checkin/stats")
def api_check_in_stats(
    event_id: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
):
    event = _ensure_event(db, event_id)
    _authorize(db, principal, event, Action.REGISTRATION_READ)
    return registration_stats(db, event.id).as_dict()


@app.get("/api/v1/events/{event_id}/registrations")
def api_list_registrations(
    event_id: str,
    include_waitlist: bool = Query(False),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
):
    event = _ensure_event(db, event_id)
    _authorize(db, principal, event, Action.REGISTRATION_READ)
    registrations = list_registrations(
        db,
        event.id,
        include_waitlist=include_waitlist,
        limit=settings.registrations_page_limit,
    )
    return {
        "registrations": [serialize_registration(r) for r in registrations],
    }


@app.get("/api/v1/events/{event_id}/waitlist")
def api_event_waitlist(
    event_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
):
    event = _ensure_event(db, event_id)
    _authorize(db, principal, event, Action.REGISTRATION_READ)
    entries = waitlist(db, event.id)
    return {
        "event_id": event.id,
        "max_attendees": event.max_attendees,
        "allow_waitlist": event.allow_waitlist,
        "waitlist": [serialize_registration(r) for r in entries],
    }


# -------- interactions --------


@app.post("/api/v1/events/{event_id}/interactions", status_code=201)
def api_create_interaction(
    event_id: str,
    payload: InteractionPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    participant_id = None
    if payload.registration_token:
        registration = get_registration_by_token(db, payload.registration_token)
        if registration is None or registration.event_id != event.id:
            raise Forbidden("Registration token does not match this event")
        participant_id = registration.participant_id
    try:
        interaction = create_interaction(
            db,
            event=event,
            type=payload.type,
            content=payload.content,
            principal=principal_from_headers(request),
            participant_id=participant_id,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"interaction": serialize_interaction(interaction)}


@app.get("/api/v1/events/{event_id}/interactions")
def api_list_interactions(
    event_id: str,
    request: Request,
    type: InteractionType | None = Query(None),
    include_moderated: bool = Query(False),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    interactions = list_interactions(
        db,
        event=event,
        principal=principal_from_headers(request),
        type=type,
        include_moderated=include_moderated,
        limit=settings.interactions_page_limit,
    )
    return {"interactions": [serialize_interaction(i) for i in interactions]}


@app.get("/api/v1/events/{event_id}/interactions/stats")
def api_interaction_stats(
    event_id: str,
    request: Request,
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    return interaction_stats(db, event=event, principal=principal_from_headers(request))


@app.post("/api/v1/events/{event_id}/interactions/moderate")
def api_bulk_moderate(
    event_id: str,
    payload: BulkModerationPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
):
    if len(payload.interaction_ids) > settings.interactions_page_limit:
        raise HTTPException(
            status_code=400,
            detail=f"At most {settings.interactions_page_limit} interactions per request",
        )
    event = _ensure_event(db, event_id)
    results = bulk_moderate(
        db,
        event=event,
        interaction_ids=payload.interaction_ids,
        principal=principal,
        action=payload.action,
        reason=payload.reason,
    )
    return {"results": [item.as_dict() for item in results]}


@app.patch("/api/v1/events/{event_id}/interactions/{interaction_id}")
def api_moderate_interaction(
    event_id: str,
    interaction_id: str,
    payload: ModerationPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
):
    event = _ensure_event(db, event_id)
    interaction = moderate_interaction(
        db,
        event=event,
        interaction_id=interaction_id,
        principal=principal,
        action=payload.action,
        reason=payload.reason,
    )
    return {"interaction": serialize_interaction(interaction)}


@app.delete("/api/v1/events/{event_id}/interactions/{interaction_id}")
def api_delete_interaction(
    event_id: str,
    interaction_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
):
    event = _ensure_event(db, event_id)
    delete_interaction(
        db, event=event, interaction_id=interaction_id, principal=principal
    )
    return {"ok": True}


# -------- public events --------


@app.get("/api/v1/public/events/search")
def api_search_public_events(
    q: str | None = Query(None, max_length=200),
    tags: str | None = Query(None),
    location: str | None = Query(None, max_length=200),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    limit: int = Query(20, ge=1),
    offset: int = Query(0, ge=0),
    type: Literal["search", "popular", "upcoming"] = Query("search"),
    db: Session = Depends(get_db),
):
    limit = min(limit, settings.public_search_limit)
    if type == "popular":
        return {"events": popular_events(db, limit=limit)}
    if type == "upcoming":
        return {"events": upcoming_events(db, limit=limit)}
    return search_public_events(
        db,
        query=q,
        tags=(tags or "").split(","),
        location=location,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
        max_limit=settings.public_search_limit,
    )


@app.get("/api/v1/public/events/{event_id}")
def api_public_event(event_id: str, db: Session = Depends(get_db)):
    return {"event": public_event_detail(db, event_id)}


@app.get("/api/v1/public/events/{event_id}/stats")
def api_public_event_stats(event_id: str, db: Session = Depends(get_db)):
    return public_event_stats(db, event_id)


# -------- admin --------


@app.get("/api/v1/admin/events/{event_id}/analytics")
def api_event_analytics(
    event_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
):
    return event_analytics(db, event_id=event_id, principal=principal)


@app.get("/api/v1/admin/stats")
def api_system_stats(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_principal),
):
    return system_stats(db, principal=principal)
