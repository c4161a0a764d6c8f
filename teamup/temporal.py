"""Timestamp normalization shared by every TeamUp component.

The backing store and its callers hand us "when" in many shapes: ISO
strings, epoch numbers, two timestamp-object layouts (``seconds`` and the
legacy ``_seconds``) and native ``datetime`` values.  Everything that
compares, sorts or expires data goes through :func:`resolve` and works with
:class:`Instant` values only.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from email.utils import parsedate_to_datetime
from enum import Enum

logger = logging.getLogger("uvicorn.error")

# Numbers below this are read as epoch seconds rather than milliseconds.
EPOCH_SECONDS_THRESHOLD = 2_000_000_000

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_ONE_MS = timedelta(milliseconds=1)
_ISO_MINUTE_PREFIX = re.compile(r"^\s*(\d{4}-\d{2}-\d{2}T\d{2}:\d{2})")
MIN_EPOCH_MS = (datetime(1, 1, 1, tzinfo=UTC) - _EPOCH) // _ONE_MS
MAX_EPOCH_MS = (datetime(9999, 12, 31, 23, 59, 59, 999000, tzinfo=UTC) - _EPOCH) // _ONE_MS


@dataclass(frozen=True, order=True, slots=True)
class Instant:
    """A point in time with millisecond resolution."""

    epoch_ms: int

    @classmethod
    def from_datetime(cls, value: datetime) -> Instant:
        """Build an instant from a datetime; naive values are taken as UTC."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return cls((value - _EPOCH) // _ONE_MS)

    def to_datetime(self) -> datetime:
        """Return an aware UTC datetime."""
        return _EPOCH + timedelta(milliseconds=self.epoch_ms)

    def to_naive_utc(self) -> datetime:
        return self.to_datetime().replace(tzinfo=None)

    def isoformat(self) -> str:
        dt = self.to_datetime()
        return (
            f"{dt.year:04d}-{dt.month:02d}-{dt.day:02d}T"
            f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d}."
            f"{dt.microsecond // 1000:03d}Z"
        )

    def __add__(self, other: timedelta) -> Instant:
        if not isinstance(other, timedelta):
            return NotImplemented
        return Instant(self.epoch_ms + other // _ONE_MS)

    def __sub__(self, other):
        if isinstance(other, Instant):
            return timedelta(milliseconds=self.epoch_ms - other.epoch_ms)
        if isinstance(other, timedelta):
            return Instant(self.epoch_ms - other // _ONE_MS)
        return NotImplemented

    def __str__(self) -> str:
        return self.isoformat()


class Ordering(str, Enum):
    BEFORE = "before"
    EQUAL = "equal"
    AFTER = "after"


def now() -> Instant:
    return Instant.from_datetime(datetime.now(UTC))


def resolve(value: object) -> Instant:
    """Convert any supported timestamp shape into an :class:`Instant`.

    Never raises: absent input means "now", and input that cannot be parsed
    or lies outside the representable range degrades to "now" with a warning.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return now()
    parsed = parse(value)
    if parsed is None:
        logger.warning("Unrecognized timestamp %r resolved to now", value)
        return now()
    return parsed


def parse(value: object) -> Instant | None:
    """Strict variant of :func:`resolve`: None when ``value`` is unusable."""
    if value is None:
        return None
    if isinstance(value, Instant):
        return value

    for key in ("seconds", "_seconds"):
        seconds = _timestamp_seconds(value, key)
        if seconds is not None:
            return _bounded(seconds * 1000)

    if isinstance(value, str):
        return _parse_string(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _parse_number(value)
    return _parse_other(value)


def compare(a: object, b: object) -> Ordering:
    left, right = resolve(a), resolve(b)
    if left < right:
        return Ordering.BEFORE
    if left > right:
        return Ordering.AFTER
    return Ordering.EQUAL


def is_past(instant: object, reference: object = None) -> bool:
    """Return True when ``instant`` lies strictly before ``reference`` (default now)."""
    return resolve(instant) < resolve(reference)


def to_iso(value: object) -> str:
    return resolve(value).isoformat()


def _bounded(epoch_ms: int) -> Instant | None:
    # Instants must stay renderable as datetimes (years 1 to 9999).
    if MIN_EPOCH_MS <= epoch_ms <= MAX_EPOCH_MS:
        return Instant(epoch_ms)
    return None


def _timestamp_seconds(value: object, key: str) -> int | None:
    if isinstance(value, (str, bytes, int, float, datetime, date)):
        return None
    if isinstance(value, Mapping):
        raw = value.get(key)
    else:
        raw = getattr(value, key, None)
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    return None


def _parse_text(text: str) -> datetime | None:
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None


def _parse_string(raw: str) -> Instant | None:
    text = raw.strip()
    if not text:
        return None
    parsed = _parse_text(text)
    if parsed is None:
        match = _ISO_MINUTE_PREFIX.match(text)
        if match:
            parsed = _parse_text(match.group(1))
    if parsed is None:
        return _parse_other(text)
    return _bounded(Instant.from_datetime(parsed).epoch_ms)


def _parse_number(value: int | float) -> Instant | None:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if abs(value) < EPOCH_SECONDS_THRESHOLD:
        value = value * 1000
    return _bounded(math.floor(value))


def _parse_other(value: object) -> Instant | None:
    if isinstance(value, datetime):
        return _bounded(Instant.from_datetime(value).epoch_ms)
    if isinstance(value, date):
        return Instant.from_datetime(datetime.combine(value, time.min))
    if isinstance(value, str):
        try:
            return _parse_number(float(value))
        except ValueError:
            return None
    converter = getattr(value, "to_datetime", None)
    if callable(converter):
        try:
            converted = converter()
        except (TypeError, ValueError):
            converted = None
        if isinstance(converted, datetime):
            return _bounded(Instant.from_datetime(converted).epoch_ms)
    return None
