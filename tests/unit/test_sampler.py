"""Tests for smoothclock._sampler — offset acquisition and coherence.

Test Techniques Used:
    - Specification-based Testing: Sequential sampling and selection rule
    - Boundary Value Analysis: Coherence threshold edges, retry counts
    - Error Condition Testing: Timeouts, failures, all sources down
    - Event Verification: ErrorEvent / CoherenceWarning emission
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from smoothclock._errors import AllSourcesUnreachableError, SourceUnreachableError
from smoothclock._events import CoherenceWarning, ErrorEvent, EventBus
from smoothclock._sampler import (
    OffsetSample,
    OffsetSampler,
    median_sample,
    offset_spread,
)
from smoothclock.testing import EventRecorder, FakeClock, FakeProbe, make_sync_settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

EPOCH = datetime(2026, 1, 1, tzinfo=UTC)


def _sample(source: str, offset_ms: float) -> OffsetSample:
    return OffsetSample(source=source, offset_ms=offset_ms, reference_time=EPOCH, local_time=EPOCH)


@pytest.fixture
def sampler(fake_probe: FakeProbe, fake_clock: FakeClock, event_log: EventRecorder) -> OffsetSampler:
    """OffsetSampler wired to the fake probe with events recorded."""
    events = EventBus()
    events.subscribe_all(event_log)
    return OffsetSampler(fake_probe, fake_clock, events)


# ---------------------------------------------------------------------------
# Pure selection helpers
# ---------------------------------------------------------------------------


class TestSelectionHelpers:
    """Technique: Specification-based Testing."""

    def test_spread_of_single_sample_is_zero(self) -> None:
        assert offset_spread((_sample("a", 40.0),)) == 0.0

    def test_spread_is_max_minus_min(self) -> None:
        samples = (_sample("a", 40.0), _sample("b", 45.0), _sample("c", 9000.0))
        assert offset_spread(samples) == 8960.0

    def test_median_of_three_rejects_outlier(self) -> None:
        samples = (_sample("a", 40.0), _sample("b", 45.0), _sample("c", 9000.0))
        assert median_sample(samples).source == "b"

    def test_median_of_two_is_upper(self) -> None:
        samples = (_sample("a", 10.0), _sample("b", 500.0))
        assert median_sample(samples).source == "b"

    def test_median_picks_first_on_tie(self) -> None:
        samples = (_sample("a", 5.0), _sample("b", 20.0), _sample("c", 20.0))
        assert median_sample(samples).source == "b"


# ---------------------------------------------------------------------------
# Source selection
# ---------------------------------------------------------------------------


class TestSourcesFor:
    """Technique: Boundary Value Analysis — sample limit."""

    def test_limit_applies_with_coherence(self) -> None:
        settings = make_sync_settings(servers=("a", "b", "c", "d"), coherence_sample_limit=2)
        assert OffsetSampler.sources_for(settings) == ("a", "b")

    def test_all_sources_without_coherence(self) -> None:
        settings = make_sync_settings(
            servers=("a", "b", "c", "d"),
            coherence_validation=False,
            coherence_sample_limit=2,
        )
        assert OffsetSampler.sources_for(settings) == ("a", "b", "c", "d")


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


class TestSample:
    """Technique: Specification-based Testing — one sampling round."""

    async def test_coherent_samples_select_first(
        self,
        sampler: OffsetSampler,
        fake_probe: FakeProbe,
        event_log: EventRecorder,
    ) -> None:
        fake_probe.offsets.update({"a": 40.0, "b": 45.0, "c": 50.0})
        selected = await sampler.sample(make_sync_settings(servers=("a", "b", "c")))
        assert selected.source == "a"
        assert selected.offset_ms == pytest.approx(40.0, abs=0.01)
        assert selected.coherent is True
        assert selected.coherence_variance_ms == pytest.approx(10.0, abs=0.01)
        assert event_log.of_type(CoherenceWarning) == []

    async def test_sources_queried_in_order(
        self,
        sampler: OffsetSampler,
        fake_probe: FakeProbe,
    ) -> None:
        await sampler.sample(make_sync_settings(servers=("x", "y", "z")))
        assert [source for source, _ in fake_probe.calls] == ["x", "y", "z"]

    async def test_incoherent_samples_select_median(
        self,
        sampler: OffsetSampler,
        fake_probe: FakeProbe,
        event_log: EventRecorder,
    ) -> None:
        fake_probe.offsets.update({"a": 40.0, "b": 45.0, "c": 9000.0})
        selected = await sampler.sample(make_sync_settings(servers=("a", "b", "c")))
        assert selected.source == "b"
        assert selected.coherent is False
        assert selected.coherence_variance_ms == pytest.approx(8960.0, abs=0.01)

        (warning,) = event_log.of_type(CoherenceWarning)
        assert warning.variance_ms == pytest.approx(8960.0, abs=0.01)
        assert [o.source for o in warning.offsets] == ["a", "b", "c"]

    async def test_spread_equal_to_threshold_is_coherent(
        self,
        sampler: OffsetSampler,
        event_log: EventRecorder,
    ) -> None:
        selected = await sampler.sample(
            make_sync_settings(servers=("a", "b"), coherence_threshold_ms=0.0),
        )
        assert selected.coherence_variance_ms == 0.0
        assert selected.coherent is True
        assert event_log.of_type(CoherenceWarning) == []

    async def test_coherence_disabled_queries_every_source(
        self,
        sampler: OffsetSampler,
        fake_probe: FakeProbe,
        event_log: EventRecorder,
    ) -> None:
        fake_probe.offsets.update({"a": 0.0, "b": 5000.0, "c": 9000.0, "d": 1.0})
        selected = await sampler.sample(
            make_sync_settings(servers=("a", "b", "c", "d"), coherence_validation=False),
        )
        assert len(selected.samples) == 4
        assert selected.source == "b"
        assert len(event_log.of_type(CoherenceWarning)) == 1

    async def test_offset_sign(self, sampler: OffsetSampler, fake_probe: FakeProbe) -> None:
        """A source ahead of the local clock yields a positive offset."""
        fake_probe.offsets["a"] = -250.0
        selected = await sampler.sample(make_sync_settings(servers=("a",)))
        assert selected.offset_ms == pytest.approx(-250.0, abs=0.01)
        assert selected.sample.local_time == datetime.fromtimestamp(
            fake_probe.clock.time(),
            tz=UTC,
        )


class TestSampleFailures:
    """Technique: Error Condition Testing."""

    async def test_retries_until_success(
        self,
        sampler: OffsetSampler,
        fake_probe: FakeProbe,
        event_log: EventRecorder,
    ) -> None:
        fake_probe.fail("a", times=2)
        selected = await sampler.sample(make_sync_settings(servers=("a",), retries=3))
        assert selected.source == "a"
        assert fake_probe.calls_for("a") == 3
        assert [f.attempt for f in selected.failures] == [1, 2]
        errors = event_log.of_type(ErrorEvent)
        assert [e.source for e in errors] == ["a", "a"]

    async def test_failed_source_skipped(
        self,
        sampler: OffsetSampler,
        fake_probe: FakeProbe,
    ) -> None:
        fake_probe.fail("a")
        fake_probe.offsets["b"] = 12.0
        selected = await sampler.sample(make_sync_settings(servers=("a", "b"), retries=2))
        assert selected.source == "b"
        assert fake_probe.calls_for("a") == 2
        assert all(isinstance(f, SourceUnreachableError) for f in selected.failures)

    async def test_failure_chains_cause(
        self,
        sampler: OffsetSampler,
        fake_probe: FakeProbe,
    ) -> None:
        cause = OSError("Name or service not known")
        fake_probe.fail("a", cause)
        with pytest.raises(AllSourcesUnreachableError) as exc_info:
            await sampler.sample(make_sync_settings(servers=("a",), retries=1))
        (failure,) = exc_info.value.failures
        assert failure.reason == "Name or service not known"
        assert failure.__cause__ is cause

    async def test_timeout_reason(
        self,
        sampler: OffsetSampler,
        fake_probe: FakeProbe,
    ) -> None:
        fake_probe.hang("a")
        with pytest.raises(AllSourcesUnreachableError) as exc_info:
            await sampler.sample(make_sync_settings(servers=("a",), retries=2, timeout_ms=10))
        assert [f.reason for f in exc_info.value.failures] == [
            "Timeout after 10ms",
            "Timeout after 10ms",
        ]

    async def test_all_sources_unreachable(
        self,
        sampler: OffsetSampler,
        fake_probe: FakeProbe,
        event_log: EventRecorder,
    ) -> None:
        for source in ("a", "b"):
            fake_probe.fail(source)
        with pytest.raises(AllSourcesUnreachableError) as exc_info:
            await sampler.sample(make_sync_settings(servers=("a", "b"), retries=2))
        assert exc_info.value.sources == ("a", "b")
        assert len(exc_info.value.failures) == 4
        assert len(event_log.of_type(ErrorEvent)) == 4

    async def test_naive_reference_treated_as_utc(
        self,
        fake_clock: FakeClock,
    ) -> None:
        class NaiveProbe:
            async def query(self, source: str, timeout_ms: float) -> datetime:
                return datetime.fromtimestamp(fake_clock.time(), tz=UTC).replace(tzinfo=None)

        sampler = OffsetSampler(NaiveProbe(), fake_clock, EventBus())
        selected = await sampler.sample(make_sync_settings(servers=("a",)))
        assert selected.offset_ms == pytest.approx(0.0, abs=0.01)
        assert selected.sample.reference_time.tzinfo is UTC
