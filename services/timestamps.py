"""Conversion between native datetimes and the document store's timestamp values."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True, order=True)
class Timestamp:
    """Store-side timestamp: whole seconds since the epoch plus nanoseconds."""

    seconds: int
    nanos: int = 0

    @classmethod
    def from_datetime(cls, value: datetime) -> "Timestamp":
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        delta = value - _EPOCH
        seconds = delta.days * 86400 + delta.seconds
        return cls(seconds=seconds, nanos=delta.microseconds * 1000)

    @classmethod
    def now(cls) -> "Timestamp":
        return cls.from_datetime(datetime.now(timezone.utc))

    def to_datetime(self) -> datetime:
        return _EPOCH + timedelta(seconds=self.seconds, microseconds=self.nanos // 1000)


def to_store(data: Any) -> Any:
    """Return a copy of ``data`` with every ``datetime`` replaced by a :class:`Timestamp`.

    Mappings are walked recursively. Lists are passed through untouched so that
    list-of-primitive fields never get reinterpreted as records.
    """

    if isinstance(data, datetime):
        return Timestamp.from_datetime(data)
    if isinstance(data, dict):
        converted = {}
        for key, value in data.items():
            if isinstance(value, list):
                converted[key] = list(value)
            else:
                converted[key] = to_store(value)
        return converted
    return data


def from_store(data: Any) -> Any:
    """Inverse of :func:`to_store`: every :class:`Timestamp` becomes an aware UTC ``datetime``.

    The round trip is exact only for timezone-aware values. A naive
    ``datetime`` was stored as UTC and so comes back aware, in UTC.
    """

    if isinstance(data, Timestamp):
        return data.to_datetime()
    if isinstance(data, dict):
        return {key: from_store(value) for key, value in data.items()}
    if isinstance(data, list):
        return [from_store(entry) if isinstance(entry, (dict, Timestamp)) else entry for entry in data]
    return data


__all__ = ["Timestamp", "from_store", "to_store"]
