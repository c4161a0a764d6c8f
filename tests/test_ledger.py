from __future__ import annotations

import logging

import pytest
from sqlalchemy import delete, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from teamup import database
from teamup.errors import (
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
    UnauthorizedError,
)
from teamup.ledger import ParticipationLedger
from teamup.models import Event, Participation, Role, User


def _participations(session, event_id):
    session.expire_all()
    stmt = select(Participation).where(Participation.event_id == event_id)
    return {p.user_id: p.role for p in session.scalars(stmt)}


def test_event_creation_enrolls_organizer(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    event = make_event(organizer)

    assert _participations(session, event.id) == {organizer.id: "organizer"}
    assert organizer.number_event_created == 1
    assert event.participant_count == 0


def test_join_creates_participant_and_counts(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    player = make_user("Pat Player")
    event = make_event(organizer)
    ledger = ParticipationLedger(session)

    participation = ledger.join(event.id, player.id)

    assert participation.role == Role.PARTICIPANT.value
    assert participation.joined_at is not None
    session.expire_all()
    assert session.get(User, player.id).number_event_joined == 1
    assert session.get(Event, event.id).participant_count == 1
    assert ledger.role_of(event.id, player.id) is Role.PARTICIPANT


def test_second_join_is_rejected_without_changing_state(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    player = make_user("Pat Player")
    event = make_event(organizer)
    ledger = ParticipationLedger(session)

    ledger.join(event.id, player.id)
    before = _participations(session, event.id)
    with pytest.raises(AlreadyRegisteredError):
        ledger.join(event.id, player.id)

    assert _participations(session, event.id) == before
    assert session.get(User, player.id).number_event_joined == 1
    assert session.get(Event, event.id).participant_count == 1


def test_join_precondition_order(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    player = make_user("Pat Player")
    event = make_event(organizer, max_participants=1)
    ledger = ParticipationLedger(session)

    with pytest.raises(EventNotFoundError):
        ledger.join("missing-event", player.id)
    # The enrolled organizer already holds a record.
    with pytest.raises(AlreadyRegisteredError):
        ledger.join(event.id, organizer.id)

    ledger.join(event.id, player.id)
    # Already registered wins over a full event.
    with pytest.raises(AlreadyRegisteredError):
        ledger.join(event.id, player.id)


def test_capacity_counts_participants_only(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    first, second, third = (make_user(f"Player {i}") for i in range(3))
    event = make_event(organizer, max_participants=2)
    ledger = ParticipationLedger(session)

    ledger.join(event.id, first.id)
    ledger.join(event.id, second.id)
    with pytest.raises(CapacityExceededError):
        ledger.join(event.id, third.id)

    assert set(_participations(session, event.id)) == {organizer.id, first.id, second.id}


def test_concurrent_join_at_capacity_boundary(monkeypatch, session, make_user, make_event):
    """A rival join landing between our count and our write must not overbook."""
    organizer = make_user("Olive Organizer")
    first, rival, late = (make_user(name) for name in ("First", "Rival", "Late"))
    event = make_event(organizer, max_participants=2)
    ParticipationLedger(session).join(event.id, first.id)

    original_count = ParticipationLedger._participant_count
    raced = []

    def racing_count(self, event_obj):
        count = original_count(self, event_obj)
        if not raced:
            raced.append(True)
            with Session(bind=database.engine, expire_on_commit=False) as other:
                ParticipationLedger(other).join(event_obj.id, rival.id)
        return count

    monkeypatch.setattr(ParticipationLedger, "_participant_count", racing_count)

    with pytest.raises(CapacityExceededError):
        ParticipationLedger(session).join(event.id, late.id)

    members = _participations(session, event.id)
    assert set(members) == {organizer.id, first.id, rival.id}
    assert session.get(Event, event.id).participant_count == 2
    assert session.get(User, late.id).number_event_joined == 0


def test_concurrent_join_below_capacity_retries_and_succeeds(
    monkeypatch, session, make_user, make_event
):
    organizer = make_user("Olive Organizer")
    rival, player = make_user("Rival"), make_user("Player")
    event = make_event(organizer, max_participants=5)

    original_count = ParticipationLedger._participant_count
    calls = []

    def racing_count(self, event_obj):
        count = original_count(self, event_obj)
        calls.append(count)
        if len(calls) == 1:
            with Session(bind=database.engine, expire_on_commit=False) as other:
                ParticipationLedger(other).join(event_obj.id, rival.id)
        return count

    monkeypatch.setattr(ParticipationLedger, "_participant_count", racing_count)

    ParticipationLedger(session).join(event.id, player.id)

    session.expire_all()
    assert session.get(Event, event.id).participant_count == 2
    # First attempt read a stale count; the retry saw the rival's registration.
    assert calls[0] == 0 and calls[-1] == 1


def test_retries_are_bounded(monkeypatch, session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    player = make_user("Pat Player")
    event = make_event(organizer)
    ledger = ParticipationLedger(session, max_attempts=2)

    def always_stale(self, event_id, user_id):
        raise StaleDataError("simulated concurrent update")

    monkeypatch.setattr(ParticipationLedger, "_join_once", always_stale)
    with pytest.raises(JoinConflictError):
        ledger.join(event.id, player.id)


def test_leave_removes_record_and_decrements(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    player = make_user("Pat Player")
    event = make_event(organizer)
    ledger = ParticipationLedger(session)
    ledger.join(event.id, player.id)

    ledger.leave(event.id, player.id)

    assert _participations(session, event.id) == {organizer.id: "organizer"}
    assert session.get(User, player.id).number_event_joined == 0
    assert session.get(Event, event.id).participant_count == 0
    assert ledger.role_of(event.id, player.id) is None


def test_leave_requires_registration(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    stranger = make_user("Stranger")
    event = make_event(organizer)

    with pytest.raises(NotRegisteredError):
        ParticipationLedger(session).leave(event.id, stranger.id)
    with pytest.raises(EventNotFoundError):
        ParticipationLedger(session).leave("missing-event", stranger.id)


@pytest.mark.parametrize("participants", [0, 1, 3])
def test_organizer_can_never_leave(session, make_user, make_event, participants):
    organizer = make_user("Olive Organizer")
    event = make_event(organizer)
    ledger = ParticipationLedger(session)
    for index in range(participants):
        ledger.join(event.id, make_user(f"Player {index}").id)

    with pytest.raises(OrganizerCannotLeaveError):
        ledger.leave(event.id, organizer.id)
    assert _participations(session, event.id)[organizer.id] == "organizer"


def test_organizer_cannot_leave_even_without_record(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    event = make_event(organizer)
    session.execute(delete(Participation).where(Participation.event_id == event.id))
    session.commit()

    with pytest.raises(OrganizerCannotLeaveError):
        ParticipationLedger(session).leave(event.id, organizer.id)


def test_creator_cannot_join_own_event(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    event = make_event(organizer)
    session.execute(delete(Participation).where(Participation.event_id == event.id))
    session.commit()

    with pytest.raises(SelfJoinAsOrganizerError):
        ParticipationLedger(session).join(event.id, organizer.id)
    assert _participations(session, event.id) == {}


def test_role_of_falls_back_to_creator(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    stranger = make_user("Stranger")
    event = make_event(organizer)
    session.execute(delete(Participation).where(Participation.event_id == event.id))
    session.commit()
    ledger = ParticipationLedger(session)

    assert ledger.role_of(event.id, organizer.id) is Role.ORGANIZER
    assert ledger.role_of(event.id, stranger.id) is None
    assert ledger.role_of(event.id, None) is None


def test_stats_separates_organizer_and_participants(session, make_user, make_event):
    organizer = make_user("Olive Organizer", profile_picture_url="https://img/olive.png")
    first, second = make_user("First"), make_user("Second")
    event = make_event(organizer)
    ledger = ParticipationLedger(session)
    ledger.join(event.id, first.id)
    ledger.join(event.id, second.id)

    stats = ledger.stats_for(event.id, first.id)

    assert stats.organizer.user_id == organizer.id
    assert stats.organizer.profile_picture_url == "https://img/olive.png"
    assert {p.user_id for p in stats.participants} == {first.id, second.id}
    assert stats.viewer_role is Role.PARTICIPANT
    assert stats.total_participants == 3
    assert not stats.repaired
    payload = stats.to_dict()
    assert payload["totalParticipants"] == 3
    assert payload["userRole"] == "participant"
    assert payload["organizer"]["user"]["name"] == "Olive Organizer"


def test_stats_for_unrelated_viewer(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    viewer = make_user("Viewer")
    event = make_event(organizer)

    stats = ParticipationLedger(session).stats_for(event.id, viewer.id)

    assert stats.viewer_role is None
    assert stats.total_participants == 1
    with pytest.raises(EventNotFoundError):
        ParticipationLedger(session).stats_for("missing-event", viewer.id)


def test_stats_repairs_missing_organizer_for_creator(session, make_user, make_event, caplog):
    organizer = make_user("Olive Organizer")
    event = make_event(organizer)
    session.execute(delete(Participation).where(Participation.event_id == event.id))
    session.commit()
    logger = logging.getLogger("teamup.tests.ledger")

    with caplog.at_level(logging.WARNING, logger="teamup.tests.ledger"):
        stats = ParticipationLedger(session, logger=logger).stats_for(event.id, organizer.id)

    assert stats.repaired
    assert stats.viewer_role is Role.ORGANIZER
    assert stats.organizer.user_id == organizer.id
    assert _participations(session, event.id) == {organizer.id: "organizer"}
    assert "no organizer record" in caplog.text


def test_stats_does_not_repair_for_other_viewers(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    viewer = make_user("Viewer")
    event = make_event(organizer)
    session.execute(delete(Participation).where(Participation.event_id == event.id))
    session.commit()

    stats = ParticipationLedger(session).stats_for(event.id, viewer.id)

    assert stats.organizer is None
    assert not stats.repaired
    assert _participations(session, event.id) == {}


def test_organizer_moves_participant_to_observer_and_back(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    player, other = make_user("Pat Player"), make_user("Other")
    event = make_event(organizer, max_participants=1)
    ledger = ParticipationLedger(session)
    ledger.join(event.id, player.id)

    ledger.set_role(event.id, organizer.id, player.id, "observer")
    assert ledger.role_of(event.id, player.id) is Role.OBSERVER
    assert session.get(Event, event.id).participant_count == 0

    # The freed seat can be taken, after which promotion is refused.
    ledger.join(event.id, other.id)
    with pytest.raises(CapacityExceededError):
        ledger.set_role(event.id, organizer.id, player.id, Role.PARTICIPANT)

    stats = ledger.stats_for(event.id, player.id)
    assert [o.user_id for o in stats.observers] == [player.id]
    assert stats.total_participants == 2


def test_role_changes_are_organizer_only(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    player, other = make_user("Pat Player"), make_user("Other")
    event = make_event(organizer)
    ledger = ParticipationLedger(session)
    ledger.join(event.id, player.id)
    ledger.join(event.id, other.id)

    with pytest.raises(UnauthorizedError):
        ledger.set_role(event.id, player.id, other.id, "observer")
    with pytest.raises(DuplicateOrganizerError):
        ledger.set_role(event.id, organizer.id, player.id, "organizer")
    with pytest.raises(DuplicateOrganizerError):
        ledger.set_role(event.id, organizer.id, organizer.id, "observer")
    with pytest.raises(InvalidRoleError):
        ledger.set_role(event.id, organizer.id, player.id, "captain")
    with pytest.raises(ParticipationNotFoundError):
        ledger.set_role(event.id, organizer.id, make_user("Nobody").id, "observer")


def test_participations_for_user_sorted_by_schedule(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    player = make_user("Pat Player")
    later = make_event(organizer, name="Later", date={"seconds": 1900000000})
    sooner = make_event(organizer, name="Sooner", date="2029-01-01T09:00:00Z")
    ledger = ParticipationLedger(session)
    ledger.join(later.id, player.id)
    ledger.join(sooner.id, player.id)

    rows = ledger.participations_for_user(player.id)

    assert [event.name for _, event in rows] == ["Sooner", "Later"]


def test_reconcile_event_repairs_organizer_and_counter(session, make_user, make_event):
    organizer = make_user("Olive Organizer")
    player = make_user("Pat Player")
    event = make_event(organizer)
    ledger = ParticipationLedger(session)
    ledger.join(event.id, player.id)
    session.execute(
        delete(Participation).where(
            Participation.event_id == event.id, Participation.role == "organizer"
        )
    )
    session.commit()
    event = session.get(Event, event.id, populate_existing=True)
    event.participant_count = 7
    session.commit()

    repaired, recounted = ledger.reconcile_event(event)
    session.commit()

    assert repaired and recounted
    assert _participations(session, event.id)[organizer.id] == "organizer"
    assert session.get(Event, event.id).participant_count == 1
