"""Synchronization orchestrator — the public face of smoothclock.

:class:`SyncCoordinator` is the composition root: it owns one
:class:`OffsetSampler`, one :class:`CorrectionEngine` and one
:class:`VirtualClock`, wires them to a shared :class:`EventBus`, and
schedules periodic re-synchronization.

Typical usage::

    import smoothclock

    clock = smoothclock.SyncCoordinator(servers=("time.google.com",))
    clock.events.subscribe(smoothclock.SyncEvent, print)

    await clock.sync()
    clock.start_auto_sync(60_000)

    clock.now()        # aware UTC datetime
    clock.timestamp()  # "2026-02-14T12:34:56.789Z"
    clock.offset()     # milliseconds

``sync()`` pipeline::

    merge settings ─► sample sources ─► submit to engine ─► new anchor ─► SyncEvent
         │                 │
         ▼                 ▼
  ConfigurationError   AllSourcesUnreachableError (state untouched)

The only suspension point is sampling.  Everything after it runs
without yielding to the event loop, so readers never see a
half-applied synchronization.  Overlapping ``sync()`` calls are not
serialized: the most recently *completed* one sets the target.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from types import TracebackType
from typing import Any, Self

from smoothclock._clock import ClockPort, SystemClock
from smoothclock._correction import CorrectionEngine, CorrectionPolicy, CorrectionState
from smoothclock._errors import AllSourcesUnreachableError, SourceUnreachableError
from smoothclock._events import ErrorEvent, EventBus, SyncEvent
from smoothclock._format import TimeLike, format_time, time_diff
from smoothclock._probe import NtpProbe, ReferenceTimeProbe
from smoothclock._sampler import OffsetSample, OffsetSampler
from smoothclock._scheduler import LoopScheduler, SchedulerPort
from smoothclock._settings import SyncSettings, merge_sync_settings
from smoothclock._virtual_clock import SyncAnchor, VirtualClock, to_iso

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of one successful :meth:`SyncCoordinator.sync` call.

    ``offset_ms`` is the measured offset; ``corrected_offset_ms`` is the
    offset readers see right after the sync (they differ while a gradual
    correction runs).  ``offset_diff_ms`` is the distance between the new
    measurement and the previously applied offset (``0`` on first sync).
    """

    source: str
    offset_ms: float
    corrected_offset_ms: float
    reference_time: datetime
    system_time: datetime
    gradual_correction: bool
    offset_diff_ms: float
    coherence_variance_ms: float
    samples: tuple[OffsetSample, ...] = ()
    failures: tuple[SourceUnreachableError, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Serialise to JSON-compatible primitives."""
        return {
            "source": self.source,
            "offset_ms": self.offset_ms,
            "corrected_offset_ms": self.corrected_offset_ms,
            "reference_time": to_iso(self.reference_time),
            "system_time": to_iso(self.system_time),
            "gradual_correction": self.gradual_correction,
            "offset_diff_ms": self.offset_diff_ms,
            "coherence_variance_ms": self.coherence_variance_ms,
            "samples": [
                {"source": s.source, "offset_ms": s.offset_ms} for s in self.samples
            ],
            "failed_attempts": len(self.failures),
        }


@dataclass(frozen=True, slots=True)
class CorrectionConfig:
    """Smooth-correction parameters reported in :class:`SyncStats`."""

    smooth_correction: bool
    max_correction_jump_ms: float
    correction_rate: float
    max_offset_threshold_ms: float


@dataclass(frozen=True, slots=True)
class SyncStats:
    """Point-in-time synchronization statistics."""

    synchronized: bool
    last_sync: datetime | None
    offset_ms: float
    corrected_offset_ms: float
    target_offset_ms: float
    correction_in_progress: bool
    uptime_ms: float
    config: CorrectionConfig

    def to_dict(self) -> dict[str, object]:
        """Serialise to JSON-compatible primitives."""
        data = asdict(self)
        data["last_sync"] = to_iso(self.last_sync) if self.last_sync else None
        return data


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class SyncCoordinator:
    """Synchronized virtual clock with smooth correction and auto-sync.

    Each instance is independent; create as many as needed.

    Args:
        settings: Default sync settings.  Keyword *overrides* are merged
            on top and validated.
        probe: Reference-time probe.  Defaults to :class:`NtpProbe`.
        clock: Local clock.  Defaults to :class:`SystemClock`.
        scheduler: Timer source for correction ticks.  Defaults to
            :class:`LoopScheduler` (requires a running event loop when a
            gradual correction starts).
        events: Event bus.  A fresh one is created when omitted.
        **overrides: Field overrides for *settings*.

    Raises:
        ConfigurationError: If the merged settings are invalid.
    """

    def __init__(
        self,
        settings: SyncSettings | None = None,
        *,
        probe: ReferenceTimeProbe | None = None,
        clock: ClockPort | None = None,
        scheduler: SchedulerPort | None = None,
        events: EventBus | None = None,
        **overrides: Any,
    ) -> None:
        self._settings = merge_sync_settings(settings or SyncSettings(), overrides)
        self._clock: ClockPort = clock if clock is not None else SystemClock()
        self._events = events if events is not None else EventBus()
        self._probe: ReferenceTimeProbe = probe if probe is not None else NtpProbe()
        self._sampler = OffsetSampler(self._probe, self._clock, self._events)
        self._engine = CorrectionEngine(
            self._clock,
            scheduler if scheduler is not None else LoopScheduler(),
            self._events,
        )
        self._virtual = VirtualClock(
            self._clock,
            self._engine,
            self._events,
            drift_warning_ms=self._settings.drift_warning_ms,
        )
        self._real_offset_ms = 0.0
        self._auto_sync_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    # -- read-only properties -----------------------------------------------

    @property
    def settings(self) -> SyncSettings:
        """Current default sync settings."""
        return self._settings

    @property
    def events(self) -> EventBus:
        """Event bus for subscribing to lifecycle events."""
        return self._events

    @property
    def correction_state(self) -> CorrectionState:
        """Snapshot of the correction engine state."""
        return self._engine.state

    @property
    def anchor(self) -> SyncAnchor | None:
        """Current synchronization anchor, or ``None`` before the first sync."""
        return self._virtual.anchor

    @property
    def auto_sync_running(self) -> bool:
        """True while periodic synchronization is scheduled."""
        return self._auto_sync_task is not None and not self._auto_sync_task.done()

    # -- synchronization ----------------------------------------------------

    async def sync(self, **overrides: Any) -> SyncResult:
        """Measure the offset against the configured sources and apply it.

        Args:
            **overrides: Per-call :class:`SyncSettings` field overrides.
                They never change the defaults; a ``drift_warning_ms``
                override covers the anchor this sync installs.

        Raises:
            ConfigurationError: If the overrides are invalid (before any I/O).
            AllSourcesUnreachableError: If no source answered.  Clock state
                is left exactly as it was.
        """
        settings = merge_sync_settings(self._settings, overrides)
        policy = CorrectionPolicy.from_settings(settings)

        try:
            selected = await self._sampler.sample(settings)
        except AllSourcesUnreachableError as exc:
            logger.error("Synchronization error: %s", exc)
            self._events.emit(ErrorEvent(error=exc))
            raise

        # No await below this line.
        first_sync = not self._virtual.is_synchronized
        previous_applied = self._engine.state.applied_offset_ms
        self._engine.submit(selected.offset_ms, policy)
        self._real_offset_ms = selected.offset_ms
        self._virtual.install_anchor(
            selected.offset_ms,
            drift_warning_ms=settings.drift_warning_ms,
        )

        state = self._engine.state
        result = SyncResult(
            source=selected.source,
            offset_ms=selected.offset_ms,
            corrected_offset_ms=state.applied_offset_ms,
            reference_time=selected.sample.reference_time,
            system_time=selected.sample.local_time,
            gradual_correction=state.in_progress,
            offset_diff_ms=0.0 if first_sync else abs(selected.offset_ms - previous_applied),
            coherence_variance_ms=selected.coherence_variance_ms,
            samples=selected.samples,
            failures=selected.failures,
        )
        logger.info(
            "Synchronized with %s (offset: %.1fms)",
            result.source,
            result.offset_ms,
        )
        self._events.emit(
            SyncEvent(
                source=result.source,
                real_offset_ms=result.offset_ms,
                applied_offset_ms=result.corrected_offset_ms,
                correction_in_progress=result.gradual_correction,
                coherence_variance_ms=result.coherence_variance_ms,
            ),
        )

        if settings.auto_sync and not self.auto_sync_running:
            self.start_auto_sync(settings.auto_sync_interval_ms)

        return result

    def start_auto_sync(self, interval_ms: float | None = None) -> None:
        """Schedule ``sync()`` every *interval_ms* milliseconds.

        The first sync happens one interval from now; later syncs keep a
        fixed rate regardless of how long each one takes.  Calling this
        while auto-sync is running restarts it with the new interval.
        Must be called from inside a running event loop.

        Raises:
            ValueError: If *interval_ms* is not positive.
        """
        interval = self._settings.auto_sync_interval_ms if interval_ms is None else interval_ms
        if interval <= 0:
            msg = f"interval_ms must be positive, got {interval}"
            raise ValueError(msg)
        if self._auto_sync_task is not None:
            self._auto_sync_task.cancel()
        self._auto_sync_task = asyncio.create_task(
            self._auto_sync_loop(interval),
            name="smoothclock-auto-sync",
        )
        logger.info("Auto-sync enabled (%gs)", interval / 1000.0)

    def stop_auto_sync(self) -> None:
        """Stop scheduling syncs.  An in-flight sync still completes."""
        if self._auto_sync_task is None:
            return
        self._auto_sync_task.cancel()
        self._auto_sync_task = None
        logger.info("Auto-sync disabled")

    async def _auto_sync_loop(self, interval_ms: float) -> None:
        """Sync at a fixed rate, forever.

        Deadlines sit on a fixed grid, so a slow sync does not stretch
        the period.  A sync that overruns one or more deadlines skips
        them instead of starting back-to-back syncs.

        Each sync runs in its own shielded task so cancelling the loop
        (``stop_auto_sync``) never aborts a sync mid-flight.
        """
        loop = asyncio.get_running_loop()
        interval = interval_ms / 1000.0
        deadline = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            task = asyncio.create_task(self._scheduled_sync())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            await asyncio.shield(task)
            deadline += interval
            while deadline <= loop.time():
                deadline += interval

    async def _scheduled_sync(self) -> None:
        """Run one auto-sync; failures are reported, never raised."""
        try:
            await self.sync()
        except asyncio.CancelledError:
            raise
        except AllSourcesUnreachableError:
            # Already logged and published as an ErrorEvent by sync().
            return
        except Exception as exc:
            logger.error("Auto-sync error: %s", exc)
            self._events.emit(ErrorEvent(error=exc))

    # -- correction control -------------------------------------------------

    def set_smooth_correction(
        self,
        enabled: bool,
        *,
        max_correction_jump_ms: float | None = None,
        correction_rate: float | None = None,
        max_offset_threshold_ms: float | None = None,
    ) -> None:
        """Enable or disable smooth correction and tune its parameters.

        Only affects future syncs.  Omitted parameters keep their values.

        Raises:
            ConfigurationError: If the resulting settings are invalid.
        """
        update: dict[str, Any] = {"smooth_correction": enabled}
        if max_correction_jump_ms is not None:
            update["max_correction_jump_ms"] = max_correction_jump_ms
        if correction_rate is not None:
            update["correction_rate"] = correction_rate
        if max_offset_threshold_ms is not None:
            update["max_offset_threshold_ms"] = max_offset_threshold_ms
        self._settings = merge_sync_settings(self._settings, update)

        if enabled:
            logger.info(
                "Smooth correction enabled (max jump %gms, rate %g%%, force threshold %gms)",
                self._settings.max_correction_jump_ms,
                self._settings.correction_rate * 100,
                self._settings.max_offset_threshold_ms,
            )
        else:
            logger.info("Smooth correction disabled")

    def force_correction(self) -> bool:
        """Finish a running gradual correction immediately.

        Returns:
            True if a correction was finished, False if none was running.
        """
        return self._engine.force_correction()

    # -- read surface -------------------------------------------------------

    def now(self) -> datetime:
        """Current synchronized time (aware UTC).

        Raises:
            NotSynchronizedError: Before the first successful sync.
        """
        return self._virtual.now()

    def timestamp(self) -> str:
        """Current synchronized time as ISO 8601 (``...Z``).

        Raises:
            NotSynchronizedError: Before the first successful sync.
        """
        return self._virtual.timestamp()

    def offset(self) -> float:
        """Active offset from local time in ms (``0.0`` when unsynchronized)."""
        return self._virtual.offset()

    def is_synchronized(self) -> bool:
        """True once a sync has succeeded."""
        return self._virtual.is_synchronized

    def stats(self) -> SyncStats:
        """Snapshot of synchronization state and correction configuration."""
        state = self._engine.state
        anchor = self._virtual.anchor
        return SyncStats(
            synchronized=anchor is not None,
            last_sync=anchor.synced_at if anchor is not None else None,
            offset_ms=self._real_offset_ms,
            corrected_offset_ms=state.applied_offset_ms,
            target_offset_ms=state.target_offset_ms,
            correction_in_progress=state.in_progress,
            uptime_ms=self._virtual.elapsed_ms(),
            config=CorrectionConfig(
                smooth_correction=self._settings.smooth_correction,
                max_correction_jump_ms=self._settings.max_correction_jump_ms,
                correction_rate=self._settings.correction_rate,
                max_offset_threshold_ms=self._settings.max_offset_threshold_ms,
            ),
        )

    def format(self, value: TimeLike | None = None, fmt: str = "iso") -> str:
        """Format *value* (default: :meth:`now`).  See :func:`format_time`."""
        return format_time(self.now() if value is None else value, fmt)

    def diff(self, first: TimeLike, second: TimeLike | None = None) -> float:
        """Absolute difference in ms between *first* and *second* (default: now)."""
        return time_diff(first, self.now() if second is None else second)

    # -- teardown -----------------------------------------------------------

    async def aclose(self) -> None:
        """Stop auto-sync, wait for in-flight auto-syncs, cancel correction ticks."""
        self.stop_auto_sync()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._engine.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
