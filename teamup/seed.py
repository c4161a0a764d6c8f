"""Development helpers for populating fake users, events and conversations."""

from __future__ import annotations

import random
from datetime import timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .channel import ConversationChannel
from .crud import LEVELS, SPORT_TYPES, create_event, create_user
from .database import get_session
from .errors import CapacityExceededError
from .ledger import ParticipationLedger
from .models import Event, User
from .storage import init_db
from .temporal import Instant, now

_event_suffixes = [
    "Pickup Game",
    "Morning Session",
    "Training",
    "Meetup",
    "Challenge",
    "Open Session",
]
_chat_lines = [
    "Who is bringing the ball?",
    "I can give someone a lift.",
    "Running ten minutes late, start without me.",
    "Same spot as last time?",
    "Don't forget water, it'll be hot.",
    "Great session everyone!",
    "Is the court booked for two hours?",
]


def seed_fake_data(
    *,
    user_count: int = 12,
    event_count: int = 8,
    max_participants_per_event: int = 5,
    max_messages_per_event: int = 6,
) -> dict[str, int]:
    """Populate the SQLite database with synthetic users, events and chats."""
    if user_count < 2:
        raise ValueError("user_count must be >= 2")
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_participants_per_event < 0:
        raise ValueError("max_participants_per_event must be >= 0")
    if max_messages_per_event < 0:
        raise ValueError("max_messages_per_event must be >= 0")

    init_db()
    fake = Faker()
    stats = {"users": 0, "events": 0, "participations": 0, "messages": 0}
    channel = ConversationChannel()

    with get_session() as session:
        users = [_create_user(session, fake) for _ in range(user_count)]
        session.commit()
        stats["users"] = len(users)

        ledger = ParticipationLedger(session)
        for _ in range(event_count):
            organizer = random.choice(users)
            event = _create_event(session, fake, organizer)
            session.commit()
            stats["events"] += 1

            members = [organizer.id]
            others = [u for u in users if u.id != organizer.id]
            joiners = random.sample(
                others, k=min(len(others), random.randint(0, max_participants_per_event))
            )
            for user in joiners:
                try:
                    ledger.join(event.id, user.id)
                except CapacityExceededError:
                    break
                members.append(user.id)
                stats["participations"] += 1

            stats["messages"] += _create_messages(
                channel, event, members, max_messages_per_event
            )

    return stats


def _create_user(session: Session, fake: Faker) -> User:
    return create_user(
        session,
        name=fake.name(),
        email=fake.unique.email(),
        profile_picture_url=fake.image_url() if random.random() < 0.5 else None,
    )


def _random_date_shape(instant: Instant) -> object:
    """Store schedules in the assorted shapes older clients wrote."""
    seconds = instant.epoch_ms // 1000
    return random.choice(
        [
            instant.isoformat(),
            instant.epoch_ms,
            {"seconds": seconds, "nanoseconds": 0},
            {"_seconds": seconds, "_nanoseconds": 0},
        ]
    )


def _create_event(session: Session, fake: Faker, organizer: User) -> Event:
    sport = random.choice(sorted(SPORT_TYPES))
    scheduled = now() + timedelta(days=random.randint(-7, 30), minutes=random.randint(0, 23 * 60))
    return create_event(
        session,
        organizer=organizer,
        name=f"{fake.city()} {sport.title()} {random.choice(_event_suffixes)}",
        date=_random_date_shape(scheduled),
        type=sport,
        description=fake.paragraph(),
        level_needed=random.choice(sorted(LEVELS)),
        location_name=fake.street_address(),
        latitude=float(fake.latitude()),
        longitude=float(fake.longitude()),
        competent_trainer=random.random() < 0.3,
        max_participants=random.choice([None, 4, 6, 10]),
        visibility="private" if random.random() < 0.1 else "public",
    )


def _create_messages(
    channel: ConversationChannel, event: Event, members: list[str], max_messages: int
) -> int:
    if max_messages <= 0:
        return 0
    total = random.randint(0, max_messages)
    for _ in range(total):
        channel.send(event.id, random.choice(members), random.choice(_chat_lines))
    return total
