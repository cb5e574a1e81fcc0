"""The single timestamp type used across the ledger.

An *instant* is a timezone-aware ``datetime`` in UTC. Values coming from the
outside (request payloads, AI responses, database rows) are converted with
``to_instant`` once, at the edge; business logic only ever compares instants.
"""

from datetime import date, datetime, time, timezone
from typing import Union

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

InstantLike = Union[datetime, date, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_instant(value: InstantLike) -> datetime:
    """Normalize a datetime, date or ISO-8601 string to an aware UTC datetime.

    Naive datetimes are taken to be UTC already. Dates become midnight UTC.
    Strings may carry a trailing ``Z``.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc
        return to_instant(parsed)
    raise TypeError(f"Cannot convert {type(value).__name__} to an instant")


class UTCDateTime(TypeDecorator):
    """Stores instants as naive UTC and hands them back as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return to_instant(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return to_instant(value)
