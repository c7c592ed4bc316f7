"""Gradual offset correction engine.

Moves the *applied* offset (what readers see) toward the *target*
offset (what was last measured) without discontinuities that would
break timers, logs or animations downstream.

State machine::

    ┌─────────┐  submit(R): moderate change, smooth enabled  ┌────────────┐
    │ Settled │ ───────────────────────────────────────────► │ Converging │
    │         │ ◄─────────────────────────────────────────── │            │
    └─────────┘   converged │ timeout │ forced │ instant R   └────────────┘

Everything else — the first submission, smooth correction disabled, a
change within ``max_jump_ms`` or at/above ``force_threshold_ms`` — is an
instant jump that leaves the engine Settled.

Each tick while Converging:

1. ``delta = target - applied``
2. ``|delta| < convergence_threshold_ms`` → snap, :attr:`CONVERGED`
3. elapsed since entering Converging ``> max_duration_ms`` → snap,
   :attr:`TIMEOUT`
4. otherwise ``applied += delta * rate`` and the next tick is scheduled
   ``clamp(|delta| * 0.1, 50, 200)`` ms later.

Pending ticks carry a generation token.  Forced completion, a
superseding submission, an instant jump and :meth:`close` all bump the
generation and cancel the timer handle, so a stale callback that still
fires is a no-op.

The engine never raises; completions are reported as
:class:`~smoothclock.CorrectionComplete` events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from smoothclock._clock import ClockPort
from smoothclock._events import CorrectionComplete, CorrectionOutcome, EventBus
from smoothclock._scheduler import SchedulerPort, TimerHandle
from smoothclock._settings import SyncSettings

logger = logging.getLogger(__name__)

MIN_TICK_INTERVAL_MS = 50.0
MAX_TICK_INTERVAL_MS = 200.0
TICK_INTERVAL_FACTOR = 0.1

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CorrectionPolicy:
    """Correction parameters for one submission."""

    smooth: bool = True
    max_jump_ms: float = 1000.0
    force_threshold_ms: float = 5000.0
    rate: float = 0.1
    convergence_threshold_ms: float = 0.5
    max_duration_ms: float = 30_000.0

    def __post_init__(self) -> None:
        if not 0 < self.rate <= 1:
            msg = f"rate must be in (0, 1], got {self.rate}"
            raise ValueError(msg)
        if self.force_threshold_ms <= self.max_jump_ms:
            msg = "force_threshold_ms must be greater than max_jump_ms"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> CorrectionPolicy:
        """Extract the correction parameters from sync settings."""
        return cls(
            smooth=settings.smooth_correction,
            max_jump_ms=settings.max_correction_jump_ms,
            force_threshold_ms=settings.max_offset_threshold_ms,
            rate=settings.correction_rate,
            convergence_threshold_ms=settings.convergence_threshold_ms,
            max_duration_ms=settings.max_correction_duration_ms,
        )


class CorrectionDecision(StrEnum):
    """How a submitted offset was applied."""

    INSTANT = "instant"
    SMOOTH = "smooth"


@dataclass(frozen=True, slots=True)
class CorrectionState:
    """Snapshot of the engine state.

    Invariant: when ``in_progress`` is False, ``applied_offset_ms ==
    target_offset_ms``.
    """

    target_offset_ms: float
    applied_offset_ms: float
    in_progress: bool
    started_at: float | None

    @property
    def remaining_ms(self) -> float:
        """Absolute error still to be corrected."""
        return abs(self.target_offset_ms - self.applied_offset_ms)


def tick_interval_ms(delta_ms: float) -> float:
    """Delay before the next tick for a remaining error of *delta_ms*."""
    return max(MIN_TICK_INTERVAL_MS, min(MAX_TICK_INTERVAL_MS, abs(delta_ms) * TICK_INTERVAL_FACTOR))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CorrectionEngine:
    """Discrete-time control loop over the applied offset.

    Args:
        clock: Monotonic clock for the correction timeout.
        scheduler: Timer source for subsequent ticks.
        events: Bus receiving :class:`CorrectionComplete` events.
    """

    def __init__(self, clock: ClockPort, scheduler: SchedulerPort, events: EventBus) -> None:
        self._clock = clock
        self._scheduler = scheduler
        self._events = events
        self._target_ms = 0.0
        self._applied_ms = 0.0
        self._in_progress = False
        self._started_at: float | None = None
        self._initialised = False
        self._policy = CorrectionPolicy()
        self._generation = 0
        self._timer: TimerHandle | None = None
        self._ticks = 0

    # -- read side ----------------------------------------------------------

    @property
    def state(self) -> CorrectionState:
        """Current state snapshot."""
        return CorrectionState(
            target_offset_ms=self._target_ms,
            applied_offset_ms=self._applied_ms,
            in_progress=self._in_progress,
            started_at=self._started_at,
        )

    @property
    def in_progress(self) -> bool:
        """True while Converging."""
        return self._in_progress

    @property
    def active_offset_ms(self) -> float:
        """Offset readers should apply right now."""
        return self._applied_ms if self._in_progress else self._target_ms

    @property
    def ticks(self) -> int:
        """Ticks executed in the current (or last) correction run."""
        return self._ticks

    # -- write side ---------------------------------------------------------

    def decide(self, real_offset_ms: float, policy: CorrectionPolicy) -> CorrectionDecision:
        """Classify *real_offset_ms* relative to the current applied offset."""
        if not self._initialised or not policy.smooth:
            return CorrectionDecision.INSTANT
        diff = abs(real_offset_ms - self._applied_ms)
        if policy.max_jump_ms < diff < policy.force_threshold_ms:
            return CorrectionDecision.SMOOTH
        return CorrectionDecision.INSTANT

    def submit(self, real_offset_ms: float, policy: CorrectionPolicy) -> CorrectionDecision:
        """Apply a freshly measured offset.

        A submission while Converging replaces the target.  The timeout
        origin is kept unless the engine was Settled.
        """
        decision = self.decide(real_offset_ms, policy)
        self._initialised = True
        self._policy = policy

        if decision is CorrectionDecision.INSTANT:
            if self._in_progress:
                logger.debug(
                    "Correction toward %.3fms superseded by instant jump to %.3fms",
                    self._target_ms,
                    real_offset_ms,
                )
            self._invalidate()
            self._target_ms = real_offset_ms
            self._applied_ms = real_offset_ms
            self._in_progress = False
            self._started_at = None
            return decision

        self._invalidate()
        if not self._in_progress:
            self._in_progress = True
            self._started_at = self._clock.now()
            self._ticks = 0
            logger.info(
                "Starting smooth correction %.3fms -> %.3fms",
                self._applied_ms,
                real_offset_ms,
            )
        self._target_ms = real_offset_ms
        self._tick(self._generation)
        return decision

    def force_correction(self) -> bool:
        """Snap to the target immediately.

        Returns:
            True if a correction was in progress, False if this was a no-op.
        """
        if not self._in_progress:
            return False
        self._finish(CorrectionOutcome.FORCED)
        logger.info("Forced correction applied (%.3fms)", self._applied_ms)
        return True

    def close(self) -> None:
        """Cancel any pending tick.  The offsets are left as they are."""
        self._invalidate()

    # -- internals ----------------------------------------------------------

    def _invalidate(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self, generation: int) -> None:
        if generation != self._generation or not self._in_progress:
            return
        self._timer = None
        self._ticks += 1
        policy = self._policy
        delta = self._target_ms - self._applied_ms

        if abs(delta) < policy.convergence_threshold_ms:
            self._finish(CorrectionOutcome.CONVERGED)
            logger.info("Correction converged after %d ticks", self._ticks)
            return

        assert self._started_at is not None  # set on entering Converging
        elapsed_ms = (self._clock.now() - self._started_at) * 1000.0
        if elapsed_ms > policy.max_duration_ms:
            self._finish(CorrectionOutcome.TIMEOUT)
            logger.warning("Correction timeout, applying final offset %.3fms", self._applied_ms)
            return

        self._applied_ms += delta * policy.rate
        delay_ms = tick_interval_ms(delta)
        self._timer = self._scheduler.call_later(
            delay_ms / 1000.0,
            lambda: self._tick(generation),
        )

    def _finish(self, outcome: CorrectionOutcome) -> None:
        self._invalidate()
        self._applied_ms = self._target_ms
        self._in_progress = False
        self._started_at = None
        self._events.emit(
            CorrectionComplete(final_offset_ms=self._applied_ms, outcome=outcome),
        )
