"""Exception taxonomy and structured error payloads.

Exceptions::

    SmoothClockError
    ├── ConfigurationError          ← invalid or contradictory settings
    ├── NotSynchronizedError        ← read before the first successful sync
    ├── SourceUnreachableError      ← one failed query attempt (recoverable)
    └── AllSourcesUnreachableError  ← every attempted source failed

Only ``ConfigurationError``, ``NotSynchronizedError`` and
``AllSourcesUnreachableError`` ever reach callers.  Per-attempt
``SourceUnreachableError`` instances are reported through
:class:`~smoothclock.ErrorEvent` and collected on the terminal error.

Advisory conditions (source disagreement, stale anchor) are events,
not exceptions.

Payload schema (relay replies, CLI output)::

    {
        "error_type": "all_sources_unreachable",
        "message": "Human-readable error description",
        "source": "pool.ntp.org" | null,
        "timestamp": "2026-02-14T12:34:56+00:00",
        "details": {}
    }

Consumers may supply their own ``error_type_map``; unknown exceptions
fall back to the generic ``"error"`` type.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SmoothClockError(Exception):
    """Base class for all smoothclock errors."""


class ConfigurationError(SmoothClockError, ValueError):
    """Settings are invalid or contradict each other."""


class NotSynchronizedError(SmoothClockError):
    """The clock was read before any synchronization succeeded."""

    def __init__(self, message: str = "Clock not synchronized. Call sync() first.") -> None:
        super().__init__(message)


class SourceUnreachableError(SmoothClockError):
    """A single query attempt against a reference source failed.

    Attributes:
        source: The source identifier that failed.
        attempt: 1-based attempt number for this source.
    """

    def __init__(self, source: str, reason: str, *, attempt: int = 1) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.attempt = attempt
        self.reason = reason


class AllSourcesUnreachableError(SmoothClockError):
    """No attempted source produced a sample.

    Attributes:
        failures: Every per-attempt failure, in query order.
    """

    def __init__(self, failures: Sequence[SourceUnreachableError] = ()) -> None:
        super().__init__("Unable to synchronize with any time source")
        self.failures: tuple[SourceUnreachableError, ...] = tuple(failures)

    @property
    def sources(self) -> tuple[str, ...]:
        """Distinct failed sources, in query order."""
        return tuple(dict.fromkeys(f.source for f in self.failures))


DEFAULT_ERROR_TYPES: dict[type[Exception], str] = {
    ConfigurationError: "configuration_error",
    NotSynchronizedError: "not_synchronized",
    SourceUnreachableError: "source_unreachable",
    AllSourcesUnreachableError: "all_sources_unreachable",
}

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload, ready for JSON serialisation."""

    error_type: str
    message: str
    source: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Serialise to a plain dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(self.to_dict())


# ---------------------------------------------------------------------------
# Payload builder
# ---------------------------------------------------------------------------


def build_error_payload(
    error: Exception,
    *,
    error_type_map: dict[type[Exception], str] | None = None,
    source: str | None = None,
    details: dict[str, object] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    Looks up the exact class of the exception; subclasses are not matched.

    Args:
        error: The exception to convert.
        error_type_map: Mapping from exception types to machine-readable
            ``error_type`` strings.  Defaults to :data:`DEFAULT_ERROR_TYPES`;
            falls back to ``"error"`` for unmapped types.
        source: Source identifier to include.  Taken from the error
            itself when it is a :class:`SourceUnreachableError`.
        details: Additional context to attach.  For
            :class:`AllSourcesUnreachableError` the failed sources are
            added under ``"sources"`` unless already present.
        clock: Callable returning a :class:`~datetime.datetime`.
            Defaults to ``datetime.now(UTC)``.

    Returns:
        A frozen dataclass ready for serialisation.
    """
    resolved_map = DEFAULT_ERROR_TYPES if error_type_map is None else error_type_map
    error_type = resolved_map.get(type(error), "error")
    if source is None and isinstance(error, SourceUnreachableError):
        source = error.source
    resolved_details: dict[str, object] = dict(details or {})
    if isinstance(error, AllSourcesUnreachableError):
        resolved_details.setdefault("sources", list(error.sources))
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorPayload(
        error_type=error_type,
        message=str(error),
        source=source,
        timestamp=now.isoformat(),
        details=resolved_details,
    )
