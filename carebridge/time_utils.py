"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Union

DateLike = Union[date, datetime, str]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Return ISO 8601 text for ``dt`` with a ``Z`` suffix, or ``None``."""

    if dt is None:
        return None
    text = ensure_utc(dt).isoformat()
    if text.endswith("+00:00"):
        return text[:-6] + "Z"
    return text


def parse_date(value: Optional[DateLike]) -> Optional[date]:
    """Coerce ``value`` into a ``date``.

    Accepts ``date``/``datetime`` instances and ISO strings (either a bare
    ``YYYY-MM-DD`` or a full timestamp). Empty values yield ``None``; text
    that cannot be parsed raises ``ValueError``.
    """

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return date.fromisoformat(text)
    except ValueError:
        return datetime.fromisoformat(text).date()


__all__ = ["utc_now", "ensure_utc", "iso_timestamp", "parse_date"]
