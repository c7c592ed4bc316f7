"""Offset acquisition and coherence validation.

:class:`OffsetSampler` turns a list of reference sources into one
representative offset::

    sources ──► query (retries × timeout) ──► samples ──► coherence check ──► SelectedOffset

Sources are queried sequentially, in configured order, so the first
configured source keeps priority when the results agree.  A failing
attempt is never fatal: it is logged, published as an
:class:`~smoothclock.ErrorEvent`, and the next attempt (or source) is
tried.  Only when *no* attempt succeeds does sampling fail with
:class:`~smoothclock.AllSourcesUnreachableError`.

Selection rule:

- one sample → that sample, variance ``0``;
- several samples within ``coherence_threshold_ms`` → the first;
- several samples spread wider → :class:`~smoothclock.CoherenceWarning`
  and the median sample, which tolerates a single outlier.

The sampler never touches clock state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from smoothclock._clock import ClockPort
from smoothclock._errors import AllSourcesUnreachableError, SourceUnreachableError
from smoothclock._events import CoherenceWarning, ErrorEvent, EventBus, SourceOffset
from smoothclock._probe import ReferenceTimeProbe
from smoothclock._settings import SyncSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OffsetSample:
    """One successful query.

    ``offset_ms`` is ``reference_time - local_time``: positive when the
    local clock is behind the source.
    """

    source: str
    offset_ms: float
    reference_time: datetime
    local_time: datetime


@dataclass(frozen=True, slots=True)
class SelectedOffset:
    """Outcome of one sampling round."""

    sample: OffsetSample
    samples: tuple[OffsetSample, ...]
    coherence_variance_ms: float = 0.0
    coherent: bool = True
    failures: tuple[SourceUnreachableError, ...] = ()

    @property
    def source(self) -> str:
        """Source of the selected sample."""
        return self.sample.source

    @property
    def offset_ms(self) -> float:
        """Selected offset in milliseconds."""
        return self.sample.offset_ms


# ---------------------------------------------------------------------------
# Selection helpers
# ---------------------------------------------------------------------------


def offset_spread(samples: tuple[OffsetSample, ...]) -> float:
    """Return ``max - min`` of the sample offsets (``0`` for fewer than two)."""
    if len(samples) < 2:
        return 0.0
    offsets = [s.offset_ms for s in samples]
    return max(offsets) - min(offsets)


def median_sample(samples: tuple[OffsetSample, ...]) -> OffsetSample:
    """Return the first sample whose offset is the median offset.

    For an even count the upper median (``sorted[n // 2]``) is used so
    the result is always a measured value, never an interpolation.
    """
    offsets = sorted(s.offset_ms for s in samples)
    median = offsets[len(offsets) // 2]
    return next(s for s in samples if s.offset_ms == median)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class OffsetSampler:
    """Queries reference sources and selects one offset.

    Args:
        probe: Reference-time probe used for every query.
        clock: Local clock; its wall reading is taken right after each
            probe answer to compute the offset.
        events: Event bus for per-attempt errors and coherence warnings.
    """

    def __init__(self, probe: ReferenceTimeProbe, clock: ClockPort, events: EventBus) -> None:
        self._probe = probe
        self._clock = clock
        self._events = events

    @staticmethod
    def sources_for(settings: SyncSettings) -> tuple[str, ...]:
        """Sources that one sampling round will query."""
        if settings.coherence_validation:
            return settings.servers[: settings.coherence_sample_limit]
        return settings.servers

    async def sample(self, settings: SyncSettings) -> SelectedOffset:
        """Run one sampling round.

        Raises:
            AllSourcesUnreachableError: If every attempt failed.
        """
        samples: list[OffsetSample] = []
        failures: list[SourceUnreachableError] = []

        for source in self.sources_for(settings):
            result = await self._query_source(source, settings, failures)
            if result is not None:
                samples.append(result)

        if not samples:
            raise AllSourcesUnreachableError(failures)

        return self._select(tuple(samples), tuple(failures), settings)

    async def _query_source(
        self,
        source: str,
        settings: SyncSettings,
        failures: list[SourceUnreachableError],
    ) -> OffsetSample | None:
        """Try *source* up to ``settings.retries`` times."""
        timeout = settings.timeout_ms / 1000.0
        for attempt in range(1, settings.retries + 1):
            try:
                reference = await asyncio.wait_for(
                    self._probe.query(source, settings.timeout_ms),
                    timeout,
                )
            except asyncio.CancelledError:
                raise
            except TimeoutError:
                failure = SourceUnreachableError(
                    source,
                    f"Timeout after {settings.timeout_ms:g}ms",
                    attempt=attempt,
                )
            except Exception as exc:
                failure = SourceUnreachableError(source, str(exc) or type(exc).__name__, attempt=attempt)
                failure.__cause__ = exc
            else:
                return self._build_sample(source, reference)

            failures.append(failure)
            logger.warning(
                "Query to %s failed (attempt %d/%d): %s",
                source,
                attempt,
                settings.retries,
                failure.reason,
            )
            self._events.emit(ErrorEvent(error=failure, source=source))
        return None

    def _build_sample(self, source: str, reference: datetime) -> OffsetSample:
        local = self._clock.time()
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=UTC)
        offset_ms = (reference.timestamp() - local) * 1000.0
        return OffsetSample(
            source=source,
            offset_ms=offset_ms,
            reference_time=reference,
            local_time=datetime.fromtimestamp(local, tz=UTC),
        )

    def _select(
        self,
        samples: tuple[OffsetSample, ...],
        failures: tuple[SourceUnreachableError, ...],
        settings: SyncSettings,
    ) -> SelectedOffset:
        variance = offset_spread(samples)
        if variance <= settings.coherence_threshold_ms:
            return SelectedOffset(
                sample=samples[0],
                samples=samples,
                coherence_variance_ms=variance,
                failures=failures,
            )

        logger.warning(
            "Time sources disagree: variance %.1fms across %d samples",
            variance,
            len(samples),
        )
        self._events.emit(
            CoherenceWarning(
                variance_ms=variance,
                offsets=tuple(SourceOffset(s.source, s.offset_ms) for s in samples),
            ),
        )
        return SelectedOffset(
            sample=median_sample(samples),
            samples=samples,
            coherence_variance_ms=variance,
            coherent=False,
            failures=failures,
        )
