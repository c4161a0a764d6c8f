"""Periodic integrity sweep over participation data."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from .database import get_session
from .ledger import ParticipationLedger
from .models import Event
from .temporal import is_past, now

# Use uvicorn's error logger so sweep messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")

SWEEP_BATCH_SIZE = 200


def run_integrity_sweep(*, batch_size: int = SWEEP_BATCH_SIZE) -> dict:
    """Re-enroll missing organizers and re-derive participant counters.

    Events are walked in id order, one committed batch at a time, so a long
    sweep never holds the write lock for long.
    """
    stats = {
        "events_checked": 0,
        "organizers_repaired": 0,
        "counts_fixed": 0,
        "past_events": 0,
        "batches": 0,
        "conflicts": 0,
    }
    reference = now()
    logger.info("Integrity sweep started (batch_size=%d)", batch_size)

    with get_session() as session:
        ledger = ParticipationLedger(session, logger=logger)
        last_id: str | None = None
        while True:
            query = select(Event).order_by(Event.id)
            if last_id is not None:
                query = query.where(Event.id > last_id)
            batch = session.scalars(query.limit(batch_size)).all()
            if not batch:
                break
            last_id = batch[-1].id
            stats["batches"] += 1
            repaired = fixed = 0
            for event in batch:
                stats["events_checked"] += 1
                if is_past(event.scheduled_at, reference):
                    stats["past_events"] += 1
            try:
                for event in batch:
                    organizer_repaired, count_fixed = ledger.reconcile_event(event)
                    if organizer_repaired:
                        logger.warning(
                            "Re-enrolled missing organizer %s on event %s",
                            event.created_by,
                            event.id,
                        )
                        repaired += 1
                    if count_fixed:
                        logger.debug("Recounted participants on event %s", event.id)
                        fixed += 1
                session.commit()
            except (StaleDataError, IntegrityError):
                # A join or leave landed mid-batch; the next sweep picks it up.
                session.rollback()
                stats["conflicts"] += 1
                logger.warning(
                    "Integrity sweep batch ending at %s hit a concurrent write", last_id
                )
                continue
            stats["organizers_repaired"] += repaired
            stats["counts_fixed"] += fixed

    logger.info(
        "Integrity sweep finished: %d events, %d organizers repaired, %d counters fixed",
        stats["events_checked"],
        stats["organizers_repaired"],
        stats["counts_fixed"],
    )
    return stats
