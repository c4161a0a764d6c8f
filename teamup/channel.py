"""Per-event conversation feed with live fan-out to subscribers."""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from . import database
from .config import settings
from .errors import (
    EmptyContentError,
    EventNotFoundError,
    MessageNotFoundError,
    TeamUpError,
    UnauthorizedError,
    UserNotFoundError,
)
from .ledger import ParticipationLedger
from .models import Event, Message, Role, User
from .temporal import Instant, now, resolve
from .utils import clamp_page

MessagesCallback = Callable[[list["DeliveredMessage"]], None]
ErrorCallback = Callable[[Exception], None]


@dataclass
class DeliveredMessage:
    id: str
    event_id: str
    author_id: str
    content: str
    sent_at: Instant
    edited_at: Instant | None
    from_organizer: bool
    is_organizer: bool
    author_role: Role | None = None
    author_name: str | None = None
    author_avatar: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "author_id": self.author_id,
            "content": self.content,
            "sent_at": self.sent_at.isoformat(),
            "edited_at": self.edited_at.isoformat() if self.edited_at else None,
            "from_organizer": self.from_organizer,
            "is_organizer": self.is_organizer,
            "author_role": self.author_role.value if self.author_role else None,
            "user": {
                "name": self.author_name,
                "profile_picture_url": self.author_avatar,
            },
        }


class Subscription:
    """Handle returned by :meth:`ConversationChannel.subscribe`."""

    def __init__(
        self,
        channel: ConversationChannel,
        event_id: str,
        on_messages: MessagesCallback,
        on_error: ErrorCallback | None,
    ):
        self.channel = channel
        self.event_id = event_id
        self.on_messages = on_messages
        self.on_error = on_error
        self._active = True
        self._delivered_ticket = 0

    @property
    def active(self) -> bool:
        return self._active

    def refresh(self) -> None:
        """Ask for a fresh delivery, e.g. after ``on_error`` reported a failure."""
        if self._active:
            self.channel._schedule(self.event_id, [self])

    def _claim(self, ticket: int) -> bool:
        """Accept a snapshot unless a newer one was already handed over."""
        if not self._active or ticket <= self._delivered_ticket:
            return False
        self._delivered_ticket = ticket
        return True

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self.channel._remove(self)

    __call__ = unsubscribe


class ConversationChannel:
    """Message storage, permission checks and subscriber fan-out.

    Every change to an event's messages re-delivers the complete, sorted list
    to that event's subscribers. Deliveries run on ``loop`` and read the
    database in a worker thread; writes may come from any thread.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        logger: logging.Logger | None = None,
    ):
        self.loop = loop
        self.logger = logger or logging.getLogger("uvicorn.error")
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()
        self._tickets = itertools.count(1)

    # Subscriptions -----------------------------------------------------

    def subscribe(
        self,
        event_id: str,
        on_messages: MessagesCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        subscription = Subscription(self, event_id, on_messages, on_error)
        with self._lock:
            self._subscriptions.setdefault(event_id, []).append(subscription)
        self._schedule(event_id, [subscription])
        return subscription

    def subscriber_count(self, event_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(event_id, []))

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.event_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscriptions.pop(subscription.event_id, None)

    def notify(self, event_id: str) -> None:
        with self._lock:
            subscribers = list(self._subscriptions.get(event_id, []))
        if subscribers:
            self._schedule(event_id, subscribers)

    def _schedule(self, event_id: str, subscriptions: list[Subscription]) -> None:
        if self.loop is None or self.loop.is_closed():
            return
        with self._lock:
            ticket = next(self._tickets)
        future = asyncio.run_coroutine_threadsafe(
            self._deliver(event_id, subscriptions, ticket), self.loop
        )
        future.add_done_callback(self._report_failure)

    async def _deliver(
        self, event_id: str, subscriptions: list[Subscription], ticket: int
    ) -> None:
        # One query per change, run off the loop, shared by every subscriber.
        try:
            messages = await asyncio.to_thread(self.messages_for, event_id)
        except (SQLAlchemyError, TeamUpError) as exc:
            self.logger.warning("Message feed for event %s interrupted: %s", event_id, exc)
            for subscription in subscriptions:
                if subscription._claim(ticket) and subscription.on_error is not None:
                    subscription.on_error(exc)
            return
        for subscription in subscriptions:
            if subscription._claim(ticket):
                subscription.on_messages(messages)

    def _report_failure(self, future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error("Message delivery failed", exc_info=exc)

    # Reads -------------------------------------------------------------

    def messages_for(self, event_id: str) -> list[DeliveredMessage]:
        """Return every message of the event, oldest first, with live role flags."""
        with database.get_session() as session:
            if session.get(Event, event_id) is None:
                raise EventNotFoundError()
            stmt = (
                select(Message, User)
                .outerjoin(User, User.id == Message.author_id)
                .where(Message.event_id == event_id)
            )
            rows = session.execute(stmt).all()
            rows.sort(key=lambda row: (row[0].sent_at, row[0].received_at, row[0].id))

            ledger = ParticipationLedger(session, logger=self.logger)
            roles: dict[str, Role | None] = {}
            delivered = []
            for message, author in rows:
                if message.author_id not in roles:
                    roles[message.author_id] = ledger.role_of(event_id, message.author_id)
                role = roles[message.author_id]
                delivered.append(
                    DeliveredMessage(
                        id=message.id,
                        event_id=message.event_id,
                        author_id=message.author_id,
                        content=message.content,
                        sent_at=message.sent_at,
                        edited_at=message.edited_at,
                        from_organizer=bool(message.from_organizer),
                        is_organizer=role is Role.ORGANIZER,
                        author_role=role,
                        author_name=author.name if author else None,
                        author_avatar=author.profile_picture_url if author else None,
                    )
                )
            return delivered

    def list_messages(
        self, event_id: str, *, limit: int | None = None, offset: int = 0
    ) -> list[DeliveredMessage]:
        """Newest-first page of messages."""
        size = clamp_page(
            limit,
            default=settings.messages_page_size,
            maximum=settings.messages_max_page_size,
        )
        start = max(0, offset or 0)
        newest_first = list(reversed(self.messages_for(event_id)))
        return newest_first[start : start + size]

    # Writes ------------------------------------------------------------

    def send(
        self,
        event_id: str,
        author_id: str,
        text: str,
        *,
        sent_at: object = None,
    ) -> Message:
        content = (text or "").strip()
        if not content:
            raise EmptyContentError()
        with database.get_session() as session:
            event = session.get(Event, event_id)
            if event is None:
                raise EventNotFoundError()
            author = session.get(User, author_id)
            if author is None:
                raise UserNotFoundError()
            role = ParticipationLedger(session, logger=self.logger).role_of(
                event_id, author_id
            )
            if role is None:
                raise UnauthorizedError("Only registered members can post in this event.")
            message = Message(
                event_id=event_id,
                author_id=author_id,
                content=content,
                sent_at=self._stamp(event, sent_at),
                from_organizer=role is Role.ORGANIZER,
            )
            session.add(message)
            author.number_message_sent = (author.number_message_sent or 0) + 1
            session.flush()
        self.logger.info("Message %s posted to event %s", message.id, event_id)
        self.notify(event_id)
        return message

    def edit(self, message_id: str, editor_id: str, text: str) -> Message:
        content = (text or "").strip()
        if not content:
            raise EmptyContentError()
        with database.get_session() as session:
            message = self._authorized_message(session, message_id, editor_id)
            message.content = content
            message.edited_at = now()
            session.flush()
            event_id = message.event_id
        self.notify(event_id)
        return message

    def delete(self, message_id: str, requester_id: str) -> None:
        with database.get_session() as session:
            message = self._authorized_message(session, message_id, requester_id)
            event_id = message.event_id
            author = session.get(User, message.author_id)
            if author is not None:
                author.number_message_sent = max(0, (author.number_message_sent or 0) - 1)
            session.delete(message)
        self.logger.info("Message %s deleted by %s", message_id, requester_id)
        self.notify(event_id)

    def _stamp(self, event: Event, sent_at: object) -> Instant:
        """Server time, unless the client clock falls inside the accepted window."""
        received = now()
        if sent_at is None:
            return received
        claimed = resolve(sent_at)
        if event.created_at <= claimed <= received + settings.message_clock_skew:
            return claimed
        self.logger.info(
            "Ignoring sent_at %s for event %s outside %s..%s",
            claimed,
            event.id,
            event.created_at,
            received + settings.message_clock_skew,
        )
        return received

    def _authorized_message(self, session, message_id: str, user_id: str) -> Message:
        message = session.get(Message, message_id)
        if message is None:
            raise MessageNotFoundError()
        if message.author_id == user_id:
            return message
        role = ParticipationLedger(session, logger=self.logger).role_of(
            message.event_id, user_id
        )
        if role is not Role.ORGANIZER:
            raise UnauthorizedError()
        return message
