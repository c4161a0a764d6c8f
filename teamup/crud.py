"""CRUD helpers for users and events."""

from __future__ import annotations

import secrets
from collections.abc import Mapping
from datetime import date, datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import EventNotFoundError, UnauthorizedError, UserNotFoundError
from .ledger import ParticipationLedger
from .models import Event, User
from .temporal import Instant, parse, resolve

SPORT_TYPES = {
    "football",
    "basketball",
    "tennis",
    "running",
    "cycling",
    "swimming",
    "fitness",
    "yoga",
    "climbing",
    "hiking",
    "volleyball",
    "badminton",
    "ping-pong",
    "other",
}
LEVELS = {"debutant", "intermediaire", "confirme", "expert"}
VISIBILITIES = {"public", "private"}

_EVENT_FIELDS = (
    "name",
    "type",
    "description",
    "level_needed",
    "location_name",
    "latitude",
    "longitude",
    "picture_url",
    "competent_trainer",
    "date",
    "max_participants",
    "visibility",
)


def _normalize_max_participants(raw: str | int | None) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, str) and not raw.strip():
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("Invalid maximum participants") from exc
    return value if value > 0 else None


def _normalize_choice(raw: str | None, allowed: set[str], *, default: str, label: str) -> str:
    value = (raw or "").strip().lower() or default
    if value not in allowed:
        raise ValueError(f"Invalid {label}")
    return value


def _normalize_level(raw: str | None) -> str | None:
    value = (raw or "").strip().lower()
    if not value:
        return None
    if value not in LEVELS:
        raise ValueError("Invalid level")
    return value


def _storable_date(raw: object) -> object:
    """Return a JSON-safe version of a schedule value, keeping its wire shape."""
    if raw is None:
        raise ValueError("date is required")
    if parse(raw) is None:
        raise ValueError("Invalid date")
    if isinstance(raw, (Instant, datetime, date)):
        return resolve(raw).isoformat()
    if isinstance(raw, Mapping):
        return dict(raw)
    return raw


# Users -----------------------------------------------------------------


def create_user(
    session: Session,
    *,
    name: str,
    email: str | None = None,
    profile_picture_url: str | None = None,
) -> User:
    """Create and persist a user with a fresh API token."""
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Name is required")
    user = User(
        name=cleaned,
        email=(email or "").strip().lower() or None,
        profile_picture_url=profile_picture_url,
        api_token=secrets.token_urlsafe(32),
    )
    session.add(user)
    session.flush()
    return user


def get_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise UserNotFoundError()
    return user


def get_user_by_token(session: Session, token: str | None) -> User | None:
    if not token:
        return None
    stmt = select(User).where(User.api_token == token)
    return session.scalars(stmt).first()


# Events ----------------------------------------------------------------


def get_event(session: Session, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if event is None:
        raise EventNotFoundError()
    return event


def create_event(
    session: Session,
    *,
    organizer: User,
    name: str,
    date: object,
    type: str | None = None,
    description: str | None = None,
    level_needed: str | None = None,
    location_name: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    picture_url: str | None = None,
    competent_trainer: bool = False,
    max_participants: int | str | None = None,
    visibility: str | None = None,
    ledger: ParticipationLedger | None = None,
) -> Event:
    """Create an event and enroll its organizer in the same transaction."""
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Name is required")
    event = Event(
        created_by=organizer.id,
        name=cleaned,
        type=_normalize_choice(type, SPORT_TYPES, default="other", label="sport type"),
        description=description,
        level_needed=_normalize_level(level_needed),
        location_name=location_name,
        latitude=latitude,
        longitude=longitude,
        picture_url=picture_url,
        competent_trainer=bool(competent_trainer),
        date=_storable_date(date),
        max_participants=_normalize_max_participants(max_participants),
        visibility=_normalize_choice(
            visibility, VISIBILITIES, default="public", label="visibility"
        ),
        participant_count=0,
    )
    session.add(event)
    session.flush()

    ledger = ledger or ParticipationLedger(session)
    ledger.enroll_organizer(event)
    organizer.number_event_created = (organizer.number_event_created or 0) + 1
    session.flush()
    return event


def update_event(session: Session, event: Event, *, editor: User, **changes) -> Event:
    """Apply organizer edits; unknown keys are ignored."""
    if event.created_by != editor.id:
        raise UnauthorizedError()
    for key in _EVENT_FIELDS:
        if key not in changes:
            continue
        value = changes[key]
        if key == "name":
            value = (value or "").strip()
            if not value:
                raise ValueError("Name is required")
        elif key == "type":
            value = _normalize_choice(value, SPORT_TYPES, default="other", label="sport type")
        elif key == "visibility":
            value = _normalize_choice(value, VISIBILITIES, default="public", label="visibility")
        elif key == "level_needed":
            value = _normalize_level(value)
        elif key == "max_participants":
            value = _normalize_max_participants(value)
        elif key == "date":
            value = _storable_date(value)
        elif key == "competent_trainer":
            value = bool(value)
        setattr(event, key, value)
    session.add(event)
    session.flush()
    return event


def delete_event(session: Session, event: Event, *, requester: User) -> None:
    """Delete an event with its participations and messages."""
    if event.created_by != requester.id:
        raise UnauthorizedError()
    organizer = session.get(User, event.created_by)
    if organizer is not None:
        organizer.number_event_created = max(0, (organizer.number_event_created or 0) - 1)
    session.delete(event)
    session.flush()


def list_events(
    session: Session,
    *,
    created_by: str | None = None,
    sport: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> Sequence[Event]:
    """Public events, or every event of one creator, sorted by schedule."""
    stmt = select(Event)
    if created_by:
        stmt = stmt.where(Event.created_by == created_by)
    else:
        stmt = stmt.where(Event.visibility == "public")
    if sport:
        stmt = stmt.where(Event.type == sport.strip().lower())

    # Stored dates keep their wire shape, so ordering happens after resolving.
    events = sorted(session.scalars(stmt).all(), key=lambda e: (e.scheduled_at, e.id))
    start = max(0, offset or 0)
    if limit and limit > 0:
        return events[start : start + limit]
    return events[start:]
