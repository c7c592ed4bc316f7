"""Typed lifecycle events and the subscriber registry.

Every observable occurrence is a frozen dataclass; the union of all of
them is :data:`ClockEvent`.  Subscribers register per event class, so
a handler for :class:`SyncEvent` is statically known to receive a
``SyncEvent``::

    bus = EventBus()
    unsubscribe = bus.subscribe(SyncEvent, lambda e: print(e.real_offset_ms))
    ...
    unsubscribe()

Delivery semantics:

- **Synchronous** — ``emit()`` calls handlers inline, in subscription
  order (FIFO per event class), followed by catch-all handlers.
- **Isolated** — a handler that raises is logged and skipped; the
  remaining handlers still run and the emitter never sees the error.
- **Snapshot** — handlers added or removed during an ``emit()`` take
  effect from the next emission.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SyncEvent:
    """A synchronization completed and its result was applied."""

    source: str
    real_offset_ms: float
    applied_offset_ms: float
    correction_in_progress: bool
    coherence_variance_ms: float


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    """A query attempt failed, or a whole synchronization failed.

    ``source`` is set for per-attempt failures and ``None`` for
    failures that are not tied to one source.
    """

    error: Exception
    source: str | None = None


@dataclass(frozen=True, slots=True)
class SourceOffset:
    """One source's measured offset, as reported in coherence warnings."""

    source: str
    offset_ms: float


@dataclass(frozen=True, slots=True)
class CoherenceWarning:
    """Sampled sources disagreed by more than the coherence threshold."""

    variance_ms: float
    offsets: tuple[SourceOffset, ...]


@dataclass(frozen=True, slots=True)
class DriftWarning:
    """The synchronization anchor is older than the drift threshold."""

    elapsed_ms: float


class CorrectionOutcome(StrEnum):
    """How a gradual correction ended."""

    CONVERGED = "converged"
    TIMEOUT = "timeout"
    FORCED = "forced"


@dataclass(frozen=True, slots=True)
class CorrectionComplete:
    """A gradual correction reached its target."""

    final_offset_ms: float
    outcome: CorrectionOutcome

    @property
    def converged(self) -> bool:
        """True when the target was reached by convergence."""
        return self.outcome is CorrectionOutcome.CONVERGED


type ClockEvent = SyncEvent | ErrorEvent | CoherenceWarning | DriftWarning | CorrectionComplete
"""Tagged union of every event the core emits."""

EVENT_TYPES: tuple[type, ...] = (
    SyncEvent,
    ErrorEvent,
    CoherenceWarning,
    DriftWarning,
    CorrectionComplete,
)

# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class EventBus:
    """Registry of event subscribers with per-class FIFO delivery."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable[..., object]]] = {
            kind: [] for kind in EVENT_TYPES
        }
        self._catch_all: list[Callable[[ClockEvent], object]] = []

    def subscribe[E](
        self,
        kind: type[E],
        handler: Callable[[E], object],
    ) -> Callable[[], None]:
        """Register *handler* for events of class *kind*.

        Returns:
            A zero-argument callable that removes the subscription.

        Raises:
            TypeError: If *kind* is not one of the event classes.
        """
        if kind not in self._handlers:
            msg = f"{kind!r} is not an event type"
            raise TypeError(msg)
        self._handlers[kind].append(handler)
        return lambda: self.unsubscribe(kind, handler)

    def subscribe_all(self, handler: Callable[[ClockEvent], object]) -> Callable[[], None]:
        """Register *handler* for every event class."""
        self._catch_all.append(handler)
        return lambda: self._remove(self._catch_all, handler)

    def unsubscribe[E](self, kind: type[E], handler: Callable[[E], object]) -> None:
        """Remove a subscription.  Unknown handlers are ignored."""
        self._remove(self._handlers.get(kind, []), handler)

    def subscriber_count(self, kind: type | None = None) -> int:
        """Number of handlers for *kind*, or catch-all handlers when ``None``."""
        if kind is None:
            return len(self._catch_all)
        return len(self._handlers.get(kind, []))

    def emit(self, event: ClockEvent) -> None:
        """Deliver *event* to its subscribers, isolating handler failures."""
        handlers = [*self._handlers.get(type(event), []), *self._catch_all]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed for %s",
                    handler,
                    type(event).__name__,
                )

    @staticmethod
    def _remove(handlers: list[Callable[..., object]], handler: Callable[..., object]) -> None:
        if handler in handlers:
            handlers.remove(handler)
