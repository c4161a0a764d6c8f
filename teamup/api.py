"""FastAPI application for TeamUp."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any
import tomllib

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.websockets import WebSocketDisconnect

from .channel import ConversationChannel, DeliveredMessage
from .config import settings
from .crud import (
    create_event,
    delete_event,
    get_event,
    get_user_by_token,
    list_events,
    update_event,
)
from .database import SessionLocal
from .errors import TeamUpError, UnauthorizedError
from .ledger import ParticipationLedger
from .models import Event, Participation, User
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .utils import clamp_page

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("teamup")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.channel = ConversationChannel(
        loop=asyncio.get_running_loop(), logger=logger
    )
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="TeamUp", version=APP_VERSION, lifespan=lifespan)


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


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def optional_user(request: Request, db: Session = Depends(get_db)) -> User | None:
    return get_user_by_token(db, _get_bearer_token(request))


def current_user(user: User | None = Depends(optional_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def get_channel(request: Request) -> ConversationChannel:
    return request.app.state.channel


# Error handlers --------------------------------------------------------


@app.exception_handler(TeamUpError)
async def teamup_error_handler(request: Request, exc: TeamUpError):
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


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


# Serialization ---------------------------------------------------------


def _serialize_user(user: User, *, include_counters: bool = False):
    payload = {
        "id": user.id,
        "name": user.name,
        "profile_picture_url": user.profile_picture_url,
    }
    if include_counters:
        payload.update(
            {
                "email": user.email,
                "number_event_created": user.number_event_created,
                "number_event_joined": user.number_event_joined,
                "number_message_sent": user.number_message_sent,
            }
        )
    return payload


def _serialize_event(event: Event):
    return {
        "id": event.id,
        "name": event.name,
        "type": event.type,
        "description": event.description,
        "level_needed": event.level_needed,
        "location_name": event.location_name,
        "latitude": event.latitude,
        "longitude": event.longitude,
        "picture_url": event.picture_url,
        "competent_trainer": event.competent_trainer,
        "date": event.scheduled_at.isoformat(),
        "max_participants": event.max_participants,
        "participant_count": event.participant_count,
        "visibility": event.visibility,
        "created_by": event.created_by,
        "created_at": event.created_at.isoformat(),
        "updated_at": event.updated_at.isoformat(),
    }


def _serialize_participation(participation: Participation, event: Event | None = None):
    payload = {
        "id": participation.id,
        "event_id": participation.event_id,
        "user_id": participation.user_id,
        "role": participation.role,
        "joined_at": participation.joined_at.isoformat(),
    }
    if event is not None:
        payload["event"] = _serialize_event(event)
    return payload


def _serialize_messages(messages: list[DeliveredMessage]):
    return [message.to_dict() for message in messages]


# Payloads --------------------------------------------------------------


class EventCreatePayload(BaseModel):
    name: str
    date: Any
    type: str | None = None
    description: str | None = None
    level_needed: str | None = None
    location_name: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    picture_url: str | None = None
    competent_trainer: bool = False
    max_participants: int | str | None = None
    visibility: str | None = "public"


class EventUpdatePayload(BaseModel):
    name: str | None = None
    date: Any = None
    type: str | None = None
    description: str | None = None
    level_needed: str | None = None
    location_name: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    picture_url: str | None = None
    competent_trainer: bool | None = None
    max_participants: int | str | None = None
    visibility: str | None = None


class RoleChangePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId")
    user_id: str = Field(alias="userId")
    role: str


class MessageCreatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="id_event")
    content: str
    user_id: str | None = Field(default=None, alias="id_user")
    sent_at: Any = None


class MessageUpdatePayload(BaseModel):
    id: str
    content: str


# Users -----------------------------------------------------------------


@app.get("/me")
def api_me(user: User = Depends(current_user)):
    return {"user": _serialize_user(user, include_counters=True)}


# Events ----------------------------------------------------------------


@app.post("/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        event = create_event(
            db,
            organizer=user,
            name=payload.name,
            date=payload.date,
            type=payload.type,
            description=payload.description,
            level_needed=payload.level_needed,
            location_name=payload.location_name,
            latitude=payload.latitude,
            longitude=payload.longitude,
            picture_url=payload.picture_url,
            competent_trainer=payload.competent_trainer,
            max_participants=payload.max_participants,
            visibility=payload.visibility,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    logger.info("Event %s created by %s", event.id, user.id)
    return {"event": _serialize_event(event)}


@app.get("/events")
def api_list_events(
    created_by: str | None = Query(default=None, alias="createdBy"),
    sport: str | None = None,
    limit: int | None = None,
    offset: int = 0,
    user: User | None = Depends(optional_user),
    db: Session = Depends(get_db),
):
    if created_by == "me":
        if user is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        created_by = user.id
    size = clamp_page(limit, default=settings.events_page_size, maximum=200)
    events = list_events(db, created_by=created_by, sport=sport, limit=size, offset=offset)
    if created_by and (user is None or user.id != created_by):
        events = [event for event in events if event.visibility == "public"]
    return {"events": [_serialize_event(event) for event in events]}


@app.get("/events/{event_id}")
def api_get_event(event_id: str, db: Session = Depends(get_db)):
    return {"event": _serialize_event(get_event(db, event_id))}


@app.put("/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    changes = payload.model_dump(exclude_unset=True)
    try:
        event = update_event(db, event, editor=user, **changes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"event": _serialize_event(event)}


@app.delete("/events/{event_id}", status_code=204)
def api_delete_event(
    event_id: str,
    request: Request,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    delete_event(db, event, requester=user)
    db.commit()
    logger.info("Event %s deleted by %s", event_id, user.id)
    get_channel(request).notify(event_id)
    return Response(status_code=204)


# Participation ---------------------------------------------------------


@app.post("/events/{event_id}/join")
def api_join_event(
    event_id: str,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    participation = ParticipationLedger(db, logger=logger).join(event_id, user.id)
    return {
        "success": True,
        "message": "Registration confirmed.",
        "participation": _serialize_participation(participation),
    }


@app.post("/events/{event_id}/leave")
def api_leave_event(
    event_id: str,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    ParticipationLedger(db, logger=logger).leave(event_id, user.id)
    return {"success": True, "message": "Registration cancelled."}


@app.get("/events/{event_id}/stats")
def api_event_stats(
    event_id: str,
    user_id: str | None = Query(default=None, alias="userId"),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    stats = ParticipationLedger(db, logger=logger).stats_for(event_id, user_id or user.id)
    return stats.to_dict()


@app.get("/userEvents")
def api_list_user_events(
    event_id: str | None = Query(default=None, alias="eventId"),
    user_id: str | None = Query(default=None, alias="userId"),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    ledger = ParticipationLedger(db, logger=logger)
    if event_id:
        get_event(db, event_id)
        return {
            "userEvents": [info.to_dict() for info in ledger.participants_of(event_id)]
        }
    if user_id:
        rows = ledger.participations_for_user(user_id)
        if user_id != user.id:
            rows = [(p, e) for p, e in rows if e.visibility == "public"]
        return {"userEvents": [_serialize_participation(p, e) for p, e in rows]}
    raise HTTPException(status_code=400, detail="eventId or userId is required")


@app.put("/userEvents")
def api_change_role(
    payload: RoleChangePayload,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    participation = ParticipationLedger(db, logger=logger).set_role(
        payload.event_id, user.id, payload.user_id, payload.role
    )
    return {"success": True, "participation": _serialize_participation(participation)}


@app.delete("/userEvents")
def api_leave_user_event(
    event_id: str = Query(alias="eventId"),
    user_id: str = Query(alias="userId"),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    if user_id != user.id:
        raise UnauthorizedError("You can only cancel your own registration.")
    ParticipationLedger(db, logger=logger).leave(event_id, user.id)
    return {"success": True, "message": "Registration cancelled."}


# Messages --------------------------------------------------------------


@app.get("/messages")
def api_list_messages(
    request: Request,
    event_id: str | None = Query(default=None, alias="eventId"),
    limit: int | None = None,
    offset: int = 0,
):
    if not event_id:
        raise HTTPException(status_code=400, detail="eventId is required")
    messages = get_channel(request).list_messages(event_id, limit=limit, offset=offset)
    return {"messages": _serialize_messages(messages)}


@app.post("/messages")
def api_send_message(
    payload: MessageCreatePayload,
    request: Request,
    user: User = Depends(current_user),
):
    if payload.user_id and payload.user_id != user.id:
        raise UnauthorizedError("You can only post as yourself.")
    message = get_channel(request).send(
        payload.event_id, user.id, payload.content, sent_at=payload.sent_at
    )
    return {
        "success": True,
        "messageId": message.id,
        "message": {
            "id": message.id,
            "event_id": message.event_id,
            "author_id": message.author_id,
            "content": message.content,
            "sent_at": message.sent_at.isoformat(),
            "from_organizer": message.from_organizer,
        },
    }


@app.put("/messages")
def api_edit_message(
    payload: MessageUpdatePayload,
    request: Request,
    user: User = Depends(current_user),
):
    message = get_channel(request).edit(payload.id, user.id, payload.content)
    return {
        "success": True,
        "message": {
            "id": message.id,
            "content": message.content,
            "edited_at": message.edited_at.isoformat() if message.edited_at else None,
        },
    }


@app.delete("/messages")
def api_delete_message(
    request: Request,
    message_id: str = Query(alias="id"),
    user: User = Depends(current_user),
):
    get_channel(request).delete(message_id, user.id)
    return {"success": True}


@app.websocket("/ws/events/{event_id}/messages")
async def ws_event_messages(websocket: WebSocket, event_id: str):
    """Push the full message list of an event on every change."""
    await websocket.accept()
    channel: ConversationChannel = websocket.app.state.channel
    queue: asyncio.Queue[dict] = asyncio.Queue()

    def on_messages(messages: list[DeliveredMessage]) -> None:
        queue.put_nowait({"type": "messages", "messages": _serialize_messages(messages)})

    def on_error(exc: Exception) -> None:
        if isinstance(exc, TeamUpError):
            payload = exc.to_payload()
        else:
            payload = {"error": "FeedInterrupted", "message": "Message feed interrupted."}
        queue.put_nowait({"type": "error", **payload})

    subscription = channel.subscribe(event_id, on_messages, on_error)

    async def forward() -> None:
        while True:
            await websocket.send_json(await queue.get())

    sender = asyncio.create_task(forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        subscription.unsubscribe()
        sender.cancel()
