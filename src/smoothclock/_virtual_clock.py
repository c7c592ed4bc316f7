"""Anchor-based virtual clock — the read model.

After every successful synchronization the coordinator installs a
:class:`SyncAnchor`: a monotonic and a wall-clock reading taken
back-to-back.  Reads then never consult the wall clock again::

    now = anchor.wall_time + (monotonic() - anchor.monotonic) + active_offset

so a manual or NTP-driven change to the host clock between syncs cannot
make the virtual clock jump.  ``active_offset`` comes from the
:class:`~smoothclock.CorrectionEngine` and moves gradually while a
correction is running.

Staleness: reads past ``drift_warning_ms`` since the anchor emit one
:class:`~smoothclock.DriftWarning` per anchor.  Installing a new anchor
re-arms the warning.  The threshold belongs to the anchor: an anchor
installed with its own threshold keeps it until the next anchor
replaces it, and never changes the clock's default.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from smoothclock._clock import ClockPort
from smoothclock._correction import CorrectionEngine
from smoothclock._errors import NotSynchronizedError
from smoothclock._events import DriftWarning, EventBus

logger = logging.getLogger(__name__)

DEFAULT_DRIFT_WARNING_MS = 3_600_000.0


@dataclass(frozen=True, slots=True)
class SyncAnchor:
    """Local clock readings captured when a synchronization completed.

    ``monotonic`` and ``wall_time`` are seconds; offsets are milliseconds.
    """

    monotonic: float
    wall_time: float
    real_offset_ms: float
    applied_offset_ms: float

    @property
    def synced_at(self) -> datetime:
        """Local wall-clock time of the synchronization (UTC)."""
        return datetime.fromtimestamp(self.wall_time, tz=UTC)


def to_iso(value: datetime) -> str:
    """Render *value* as ISO 8601 UTC with millisecond precision and ``Z``."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class VirtualClock:
    """Continuously advancing clock derived from the latest anchor.

    Args:
        clock: Local clock port.
        engine: Correction engine providing the active offset.
        events: Bus receiving drift warnings.
        drift_warning_ms: Default anchor age that triggers a drift warning.
    """

    def __init__(
        self,
        clock: ClockPort,
        engine: CorrectionEngine,
        events: EventBus,
        *,
        drift_warning_ms: float = DEFAULT_DRIFT_WARNING_MS,
    ) -> None:
        self._clock = clock
        self._engine = engine
        self._events = events
        self.drift_warning_ms = drift_warning_ms
        self._anchor: SyncAnchor | None = None
        self._anchor_drift_warning_ms = drift_warning_ms
        self._drift_warned = False

    @property
    def anchor(self) -> SyncAnchor | None:
        """The current anchor, or ``None`` before the first sync."""
        return self._anchor

    @property
    def is_synchronized(self) -> bool:
        """True once an anchor has been installed."""
        return self._anchor is not None

    def install_anchor(
        self,
        real_offset_ms: float,
        *,
        drift_warning_ms: float | None = None,
    ) -> SyncAnchor:
        """Capture a new anchor from the local clock and make it current.

        Args:
            real_offset_ms: Offset measured by the synchronization.
            drift_warning_ms: Drift threshold for this anchor only;
                ``None`` uses :attr:`drift_warning_ms`.
        """
        monotonic = self._clock.now()
        wall_time = self._clock.time()
        anchor = SyncAnchor(
            monotonic=monotonic,
            wall_time=wall_time,
            real_offset_ms=real_offset_ms,
            applied_offset_ms=self._engine.active_offset_ms,
        )
        self._anchor = anchor
        self._anchor_drift_warning_ms = (
            self.drift_warning_ms if drift_warning_ms is None else drift_warning_ms
        )
        self._drift_warned = False
        return anchor

    def elapsed_ms(self) -> float:
        """Milliseconds since the anchor (``0`` before the first sync)."""
        if self._anchor is None:
            return 0.0
        return (self._clock.now() - self._anchor.monotonic) * 1000.0

    def now(self) -> datetime:
        """Return the current synchronized time.

        Raises:
            NotSynchronizedError: If no synchronization has succeeded yet.
        """
        anchor = self._anchor
        if anchor is None:
            raise NotSynchronizedError
        elapsed_ms = (self._clock.now() - anchor.monotonic) * 1000.0
        self._check_drift(elapsed_ms)
        epoch_ms = anchor.wall_time * 1000.0 + elapsed_ms + self._engine.active_offset_ms
        return datetime.fromtimestamp(epoch_ms / 1000.0, tz=UTC)

    def timestamp(self) -> str:
        """Return :meth:`now` as an ISO 8601 string."""
        return to_iso(self.now())

    def offset(self) -> float:
        """Return the active offset in milliseconds; ``0.0`` if unsynchronized."""
        if self._anchor is None:
            return 0.0
        return self._engine.active_offset_ms

    def _check_drift(self, elapsed_ms: float) -> None:
        if self._drift_warned or elapsed_ms <= self._anchor_drift_warning_ms:
            return
        self._drift_warned = True
        logger.warning(
            "Long elapsed time since last sync (%.1f minutes), consider re-syncing",
            elapsed_ms / 60_000.0,
        )
        self._events.emit(DriftWarning(elapsed_ms=elapsed_ms))
