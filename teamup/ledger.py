"""Participation lifecycle: join, leave, roles, stats and capacity."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from .config import settings
from .errors import (
    AlreadyRegisteredError,
    CapacityExceededError,
    DuplicateOrganizerError,
    EventNotFoundError,
    InvalidRoleError,
    JoinConflictError,
    NotRegisteredError,
    OrganizerCannotLeaveError,
    ParticipationNotFoundError,
    SelfJoinAsOrganizerError,
    TeamUpError,
    UnauthorizedError,
    UserNotFoundError,
)
from .models import Event, Participation, Role, User
from .temporal import Instant, now

T = TypeVar("T")


@dataclass
class ParticipantInfo:
    user_id: str
    event_id: str
    role: Role
    joined_at: Instant
    name: str | None = None
    profile_picture_url: str | None = None

    @classmethod
    def from_row(cls, participation: Participation, user: User | None) -> ParticipantInfo:
        return cls(
            user_id=participation.user_id,
            event_id=participation.event_id,
            role=Role(participation.role),
            joined_at=participation.joined_at,
            name=user.name if user else None,
            profile_picture_url=user.profile_picture_url if user else None,
        )

    def to_dict(self) -> dict:
        user = None
        if self.name is not None or self.profile_picture_url is not None:
            user = {"name": self.name, "profile_picture_url": self.profile_picture_url}
        return {
            "user_id": self.user_id,
            "event_id": self.event_id,
            "role": self.role.value,
            "joined_at": self.joined_at.isoformat(),
            "user": user,
        }


@dataclass
class EventStats:
    event_id: str
    organizer: ParticipantInfo | None
    participants: list[ParticipantInfo] = field(default_factory=list)
    observers: list[ParticipantInfo] = field(default_factory=list)
    viewer_role: Role | None = None
    repaired: bool = False

    @property
    def total_participants(self) -> int:
        return len(self.participants) + (1 if self.organizer else 0)

    def to_dict(self) -> dict:
        return {
            "totalParticipants": self.total_participants,
            "organizer": self.organizer.to_dict() if self.organizer else None,
            "participants": [p.to_dict() for p in self.participants],
            "observers": [p.to_dict() for p in self.observers],
            "userRole": self.viewer_role.value if self.viewer_role else None,
        }


def coerce_role(raw: str | Role) -> Role:
    try:
        return Role((raw.value if isinstance(raw, Role) else str(raw)).strip().lower())
    except ValueError as exc:
        raise InvalidRoleError() from exc


class ParticipationLedger:
    """Owns every write to ``user_events`` and the event's participant counter.

    Capacity is guarded optimistically: each write that changes the number of
    participant-role records also rewrites ``Event.participant_count``, which
    bumps the event's version column. A concurrent writer that committed in
    between makes our flush fail with :class:`StaleDataError`; the whole
    check-and-insert is then replayed against fresh state.

    Mutating operations own their transaction and commit on success.
    """

    def __init__(
        self,
        session: Session,
        *,
        logger: logging.Logger | None = None,
        max_attempts: int | None = None,
    ):
        self.session = session
        self.logger = logger or logging.getLogger("uvicorn.error")
        self.max_attempts = max(1, max_attempts or settings.join_max_attempts)

    # Lookups -----------------------------------------------------------

    def role_of(self, event_id: str, user_id: str | None) -> Role | None:
        """Return the user's role on the event, or None when unrelated.

        The event creator is reported as organizer even while their record is
        missing.
        """
        if not user_id:
            return None
        participation = self._find(event_id, user_id)
        if participation is not None:
            return Role(participation.role)
        event = self.session.get(Event, event_id)
        if event is not None and event.created_by == user_id:
            return Role.ORGANIZER
        return None

    def participants_of(self, event_id: str) -> list[ParticipantInfo]:
        stmt = (
            select(Participation, User)
            .outerjoin(User, User.id == Participation.user_id)
            .where(Participation.event_id == event_id)
        )
        rows = self.session.execute(stmt).all()
        infos = [ParticipantInfo.from_row(p, u) for p, u in rows]
        infos.sort(key=lambda info: (info.joined_at, info.user_id))
        return infos

    def participations_for_user(self, user_id: str) -> list[tuple[Participation, Event]]:
        stmt = (
            select(Participation, Event)
            .join(Event, Event.id == Participation.event_id)
            .where(Participation.user_id == user_id)
        )
        rows = [(p, e) for p, e in self.session.execute(stmt).all()]
        rows.sort(key=lambda row: (row[1].scheduled_at, row[1].id))
        return rows

    def stats_for(self, event_id: str, viewer_id: str | None) -> EventStats:
        event = self._require_event(event_id)
        stats = self._collect_stats(event, viewer_id)
        if (
            stats.organizer is None
            and stats.viewer_role is None
            and viewer_id
            and event.created_by == viewer_id
        ):
            self._repair_organizer(event)
            stats = self._collect_stats(event, viewer_id)
            stats.repaired = True
        return stats

    # Mutations ---------------------------------------------------------

    def join(self, event_id: str, user_id: str) -> Participation:
        participation = self._with_retries(
            "join", event_id, lambda: self._join_once(event_id, user_id)
        )
        self.logger.info("User %s joined event %s", user_id, event_id)
        return participation

    def leave(self, event_id: str, user_id: str) -> None:
        self._with_retries("leave", event_id, lambda: self._leave_once(event_id, user_id))
        self.logger.info("User %s left event %s", user_id, event_id)

    def set_role(
        self, event_id: str, actor_id: str, target_user_id: str, role: str | Role
    ) -> Participation:
        """Change a registered user's role; only the organizer may do this."""
        new_role = coerce_role(role)
        participation = self._with_retries(
            "role change",
            event_id,
            lambda: self._set_role_once(event_id, actor_id, target_user_id, new_role),
        )
        self.logger.info(
            "Organizer %s set role of %s on event %s to %s",
            actor_id,
            target_user_id,
            event_id,
            new_role.value,
        )
        return participation

    def enroll_organizer(self, event: Event) -> Participation:
        """Ensure the creator holds the organizer record. Flushes, does not commit."""
        participation = self._find(event.id, event.created_by)
        if participation is None:
            participation = Participation(
                event_id=event.id,
                user_id=event.created_by,
                role=Role.ORGANIZER.value,
                joined_at=event.created_at or now(),
            )
            self.session.add(participation)
        elif participation.role != Role.ORGANIZER.value:
            was_participant = participation.role == Role.PARTICIPANT.value
            participation.role = Role.ORGANIZER.value
            if was_participant:
                self._set_participant_count(event, self._participant_count(event) - 1)
        self.session.flush()
        return participation

    def reconcile_event(self, event: Event) -> tuple[bool, bool]:
        """Repair the organizer record and the participant counter.

        Returns ``(organizer_repaired, count_fixed)``. Flushes, does not commit.
        """
        organizer_repaired = False
        stmt = select(Participation.id).where(
            Participation.event_id == event.id,
            Participation.role == Role.ORGANIZER.value,
        )
        if self.session.scalars(stmt).first() is None:
            self.enroll_organizer(event)
            organizer_repaired = True
        count = self._participant_count(event)
        count_fixed = event.participant_count != count
        if count_fixed:
            self._set_participant_count(event, count)
            self.session.flush()
        return organizer_repaired, count_fixed

    # Internals ---------------------------------------------------------

    def _with_retries(self, action: str, event_id: str, operation: Callable[[], T]) -> T:
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = operation()
                self.session.commit()
                return result
            except (StaleDataError, IntegrityError) as exc:
                self.session.rollback()
                last_error = exc
                self.logger.warning(
                    "Concurrent update while processing %s on event %s (attempt %s/%s)",
                    action,
                    event_id,
                    attempt,
                    self.max_attempts,
                )
            except TeamUpError:
                self.session.rollback()
                raise
        raise JoinConflictError() from last_error

    def _join_once(self, event_id: str, user_id: str) -> Participation:
        event = self._require_event(event_id, refresh=True)
        user = self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError()
        if self._find(event_id, user_id) is not None:
            raise AlreadyRegisteredError()
        if event.created_by == user_id:
            raise SelfJoinAsOrganizerError()
        count = self._participant_count(event)
        if event.max_participants is not None and count >= event.max_participants:
            raise CapacityExceededError()

        participation = Participation(
            event_id=event.id,
            user_id=user_id,
            role=Role.PARTICIPANT.value,
            joined_at=now(),
        )
        self.session.add(participation)
        self._set_participant_count(event, count + 1)
        user.number_event_joined = (user.number_event_joined or 0) + 1
        self.session.flush()
        return participation

    def _leave_once(self, event_id: str, user_id: str) -> None:
        event = self._require_event(event_id, refresh=True)
        participation = self._find(event_id, user_id)
        if event.created_by == user_id or (
            participation is not None and participation.role == Role.ORGANIZER.value
        ):
            raise OrganizerCannotLeaveError()
        if participation is None:
            raise NotRegisteredError()

        if participation.role == Role.PARTICIPANT.value:
            self._set_participant_count(event, self._participant_count(event) - 1)
        self.session.delete(participation)
        user = self.session.get(User, user_id)
        if user is not None:
            user.number_event_joined = max(0, (user.number_event_joined or 0) - 1)
        self.session.flush()

    def _set_role_once(
        self, event_id: str, actor_id: str, target_user_id: str, new_role: Role
    ) -> Participation:
        event = self._require_event(event_id, refresh=True)
        if self.role_of(event_id, actor_id) is not Role.ORGANIZER:
            raise UnauthorizedError()
        if new_role is Role.ORGANIZER:
            raise DuplicateOrganizerError()
        participation = self._find(event_id, target_user_id)
        if participation is None:
            raise ParticipationNotFoundError()
        if participation.role == Role.ORGANIZER.value:
            raise DuplicateOrganizerError()
        if participation.role == new_role.value:
            return participation

        count = self._participant_count(event)
        if new_role is Role.PARTICIPANT:
            if event.max_participants is not None and count >= event.max_participants:
                raise CapacityExceededError()
            count += 1
        else:
            count -= 1
        participation.role = new_role.value
        self._set_participant_count(event, count)
        self.session.flush()
        return participation

    def _repair_organizer(self, event: Event) -> None:
        event_id = event.id
        try:
            self.enroll_organizer(event)
            self.session.commit()
        except IntegrityError:
            # Another request repaired it first.
            self.session.rollback()
            if self._find(event_id, event.created_by) is None:
                raise
            return
        self.logger.warning(
            "Event %s had no organizer record; re-enrolled creator %s",
            event_id,
            event.created_by,
        )

    def _collect_stats(self, event: Event, viewer_id: str | None) -> EventStats:
        stats = EventStats(event_id=event.id, organizer=None)
        for info in self.participants_of(event.id):
            if viewer_id and info.user_id == viewer_id:
                stats.viewer_role = info.role
            if info.role is Role.ORGANIZER:
                stats.organizer = info
            elif info.role is Role.PARTICIPANT:
                stats.participants.append(info)
            else:
                stats.observers.append(info)
        return stats

    def _require_event(self, event_id: str, *, refresh: bool = False) -> Event:
        if refresh:
            event = self.session.get(Event, event_id, populate_existing=True)
        else:
            event = self.session.get(Event, event_id)
        if event is None:
            raise EventNotFoundError()
        return event

    def _find(self, event_id: str, user_id: str) -> Participation | None:
        stmt = select(Participation).where(
            Participation.event_id == event_id, Participation.user_id == user_id
        )
        return self.session.scalars(stmt).first()

    def _participant_count(self, event: Event) -> int:
        stmt = (
            select(func.count())
            .select_from(Participation)
            .where(
                Participation.event_id == event.id,
                Participation.role == Role.PARTICIPANT.value,
            )
        )
        return int(self.session.scalar(stmt) or 0)

    def _set_participant_count(self, event: Event, value: int) -> None:
        event.participant_count = max(0, value)
        # Force the versioned UPDATE even when the stored value already matches.
        flag_modified(event, "participant_count")
