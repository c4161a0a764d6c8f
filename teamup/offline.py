"""Client-local snapshot of a user's events for use without connectivity.

The snapshot is a single JSON blob under a fixed storage key. It is always
replaced wholesale by :meth:`OfflineCache.save`; nothing merges into it.
Reads check ownership and age before handing data back.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import settings
from .models import Role
from .temporal import Instant, now, resolve
from .utils import humanize_age


class CachedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    type: str = "other"
    description: str | None = None
    location_name: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    date: str
    picture_url: str | None = None
    created_by: str
    level_needed: str | None = None
    competent_trainer: bool = False
    max_participants: int | None = None
    visibility: str = "public"
    cached_at: str
    user_role: Role
    joined_at: str

    @property
    def scheduled_at(self) -> Instant:
        return resolve(self.date)


class OfflineSnapshot(BaseModel):
    events: list[CachedEvent] = Field(default_factory=list)
    last_sync: str
    user_id: str

    @property
    def last_sync_at(self) -> Instant:
        return resolve(self.last_sync)


@dataclass
class CacheInfo:
    has_cache: bool
    event_count: int
    last_sync: Instant | None
    age: timedelta

    def to_dict(self) -> dict:
        return {
            "hasCache": self.has_cache,
            "eventCount": self.event_count,
            "lastSync": self.last_sync.isoformat() if self.last_sync else None,
            "age": int(self.age.total_seconds() * 1000),
            "ageLabel": humanize_age(self.age) if self.has_cache else None,
        }


class JsonFileStore:
    """Key/value blob store backed by one JSON file per key."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


def _field(source: object, name: str, default: object = None) -> object:
    if isinstance(source, Mapping):
        return source.get(name, default)
    return getattr(source, name, default)


def _cached_event(
    source: object, *, role: Role, joined_at: object, cached_at: Instant
) -> CachedEvent:
    return CachedEvent(
        id=str(_field(source, "id")),
        name=str(_field(source, "name") or ""),
        type=_field(source, "type") or "other",
        description=_field(source, "description"),
        location_name=_field(source, "location_name"),
        latitude=_field(source, "latitude"),
        longitude=_field(source, "longitude"),
        date=resolve(_field(source, "date")).isoformat(),
        picture_url=_field(source, "picture_url"),
        created_by=str(_field(source, "created_by") or ""),
        level_needed=_field(source, "level_needed"),
        competent_trainer=bool(_field(source, "competent_trainer", False)),
        max_participants=_field(source, "max_participants"),
        visibility=_field(source, "visibility") or "public",
        cached_at=cached_at.isoformat(),
        user_role=role,
        joined_at=resolve(joined_at).isoformat(),
    )


def _split_joined(entry: object) -> tuple[object, object]:
    """Return ``(event, joined_at)`` for a joined-participation entry.

    Accepts ``(participation, event)`` pairs, mappings or objects with an
    ``event`` member, or a bare event.
    """
    if isinstance(entry, tuple) and len(entry) == 2:
        participation, event = entry
        return event, _field(participation, "joined_at")
    event = _field(entry, "event")
    if event is None:
        event = entry
    return event, _field(entry, "joined_at") or _field(event, "date")


class OfflineCache:
    def __init__(
        self,
        store: JsonFileStore,
        *,
        storage_key: str | None = None,
        retention: timedelta | None = None,
        clock: Callable[[], Instant] = now,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.storage_key = storage_key or settings.offline_storage_key
        self.retention = retention if retention is not None else settings.offline_retention
        self.clock = clock
        self.logger = logger or logging.getLogger("uvicorn.error")

    def save(
        self,
        user_id: str,
        created_events: Iterable[object],
        joined_participations: Iterable[object],
    ) -> OfflineSnapshot:
        """Replace the stored snapshot with the given events."""
        stamp = self.clock()
        events = [
            _cached_event(
                event,
                role=Role.ORGANIZER,
                joined_at=_field(event, "created_at") or _field(event, "date"),
                cached_at=stamp,
            )
            for event in created_events
        ]
        for entry in joined_participations:
            event, joined_at = _split_joined(entry)
            events.append(
                _cached_event(
                    event, role=Role.PARTICIPANT, joined_at=joined_at, cached_at=stamp
                )
            )
        snapshot = OfflineSnapshot(
            events=events, last_sync=stamp.isoformat(), user_id=user_id
        )
        self.store.set(self.storage_key, snapshot.model_dump_json())
        self.logger.info(
            "Saved %s events for offline use (user %s)", len(events), user_id
        )
        return snapshot

    def load(self, user_id: str) -> OfflineSnapshot | None:
        raw = self.store.get(self.storage_key)
        if raw is None:
            return None
        try:
            snapshot = OfflineSnapshot.model_validate_json(raw)
        except ValidationError:
            self.logger.warning("Ignoring unreadable offline snapshot")
            return None

        if snapshot.user_id != user_id:
            self.logger.info("Offline snapshot belongs to another user; clearing it")
            self.clear()
            return None
        if self.clock() - snapshot.last_sync_at > self.retention:
            self.logger.info("Offline snapshot from %s expired; clearing it", snapshot.last_sync)
            self.clear()
            return None
        return snapshot

    def clear(self) -> None:
        self.store.remove(self.storage_key)

    def info(self, user_id: str) -> CacheInfo:
        snapshot = self.load(user_id)
        if snapshot is None:
            return CacheInfo(has_cache=False, event_count=0, last_sync=None, age=timedelta(0))
        last_sync = snapshot.last_sync_at
        return CacheInfo(
            has_cache=True,
            event_count=len(snapshot.events),
            last_sync=last_sync,
            age=self.clock() - last_sync,
        )

    def created_events(self, user_id: str) -> list[CachedEvent]:
        snapshot = self.load(user_id)
        if snapshot is None:
            return []
        return [e for e in snapshot.events if e.user_role is Role.ORGANIZER]

    def joined_events(self, user_id: str) -> list[CachedEvent]:
        snapshot = self.load(user_id)
        if snapshot is None:
            return []
        return [e for e in snapshot.events if e.user_role is Role.PARTICIPANT]

    def has_events(self, user_id: str) -> bool:
        snapshot = self.load(user_id)
        return snapshot is not None and bool(snapshot.events)
