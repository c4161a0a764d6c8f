"""Utility helpers for TeamUp."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def humanize_age(delta: timedelta) -> str:
    """Return a friendly string such as '3 hours ago' for an elapsed span."""
    seconds = abs(delta.total_seconds())

    units = [
        ("week", 7 * 24 * 3600),
        ("day", 24 * 3600),
        ("hour", 3600),
        ("minute", 60),
    ]

    for name, step in units:
        amount = int(seconds // step)
        if amount >= 1:
            label = name if amount == 1 else f"{name}s"
            return f"{amount} {label} ago"
    return "moments ago"


def clamp_page(limit: int | None, *, default: int, maximum: int) -> int:
    """Return a usable page size between 1 and ``maximum``."""
    try:
        value = int(limit) if limit is not None else default
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, maximum))
