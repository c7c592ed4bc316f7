"""Date formatting and difference helpers.

Convenience helpers exposed through :meth:`SyncCoordinator.format` and
:meth:`SyncCoordinator.diff`.  Inputs may be aware datetimes, ISO 8601
strings, or epoch **milliseconds**; naive datetimes are taken as UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import format_datetime
from typing import Literal

from smoothclock._virtual_clock import to_iso

type TimeLike = datetime | str | int | float
type TimeFormat = Literal["iso", "locale", "timestamp", "utc", "date", "time", "str"]

TIME_FORMATS: tuple[str, ...] = ("iso", "locale", "timestamp", "utc", "date", "time", "str")


def to_datetime(value: TimeLike) -> datetime:
    """Coerce *value* to an aware UTC datetime.

    Raises:
        ValueError: If a string is not valid ISO 8601.
        TypeError: For unsupported input types.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        return to_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=UTC)
    msg = f"Cannot interpret {type(value).__name__} as a time"
    raise TypeError(msg)


def format_time(value: TimeLike, fmt: TimeFormat | str = "iso") -> str:
    """Render *value* in one of :data:`TIME_FORMATS`.

    ``locale``, ``date`` and ``time`` use the host's local timezone and
    locale conventions; the others are UTC.  Unknown formats fall back
    to ``str()``.
    """
    moment = to_datetime(value)
    match fmt:
        case "iso":
            return to_iso(moment)
        case "locale":
            return moment.astimezone().strftime("%c")
        case "timestamp":
            return str(round(moment.timestamp() * 1000))
        case "utc":
            return format_datetime(moment.astimezone(UTC), usegmt=True)
        case "date":
            return moment.astimezone().strftime("%x")
        case "time":
            return moment.astimezone().strftime("%X")
        case _:
            return str(moment)


def time_diff(first: TimeLike, second: TimeLike) -> float:
    """Absolute difference between two times, in milliseconds."""
    delta = to_datetime(second) - to_datetime(first)
    return abs(delta.total_seconds() * 1000.0)
