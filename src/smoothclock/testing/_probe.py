"""Scripted reference-time probe.

:class:`FakeProbe` satisfies :class:`~smoothclock.ReferenceTimeProbe`
without touching the network.  Each source answers with the fake
clock's wall reading shifted by a configured offset, so the sampler
measures exactly that offset.  Sources can be scripted to fail a
number of times, fail forever, or never answer (to exercise the
per-attempt timeout).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

from smoothclock.testing._clock import FakeClock


@dataclass
class FakeProbe:
    """Test double for ReferenceTimeProbe.

    Attributes:
        clock: Clock whose wall reading answers are derived from.
        offsets: Per-source offset in milliseconds.
        default_offset_ms: Offset for sources not listed in *offsets*.
        calls: Every ``(source, timeout_ms)`` query, in order.

    Example::

        probe = FakeProbe(clock, offsets={"a": 40.0, "b": 45.0})
        probe.fail("b", times=2)        # two failed attempts, then 45.0
        probe.fail("c")                 # always fails
        probe.hang("d")                 # never answers
    """

    clock: FakeClock = field(default_factory=FakeClock)
    offsets: dict[str, float] = field(default_factory=dict)
    default_offset_ms: float = 0.0
    calls: list[tuple[str, float]] = field(default_factory=list)
    _errors: dict[str, tuple[BaseException, int | None]] = field(
        default_factory=dict,
        repr=False,
    )
    _hanging: set[str] = field(default_factory=set, repr=False)

    def set_offset(self, source: str, offset_ms: float) -> None:
        """Answer *source* queries with *offset_ms* from now on."""
        self.offsets[source] = offset_ms
        self._errors.pop(source, None)
        self._hanging.discard(source)

    def fail(
        self,
        source: str,
        error: BaseException | None = None,
        *,
        times: int | None = None,
    ) -> None:
        """Make *source* raise *error* (default ``OSError``).

        Args:
            source: Source to script.
            error: Exception raised by each failing query.
            times: Number of failing queries before the source recovers;
                ``None`` fails forever.
        """
        exc = error if error is not None else OSError(f"{source} unreachable")
        self._errors[source] = (exc, times)

    def hang(self, source: str) -> None:
        """Make *source* never answer."""
        self._hanging.add(source)

    def calls_for(self, source: str) -> int:
        """Number of queries sent to *source*."""
        return sum(1 for s, _ in self.calls if s == source)

    async def query(self, source: str, timeout_ms: float) -> datetime:
        """Answer with the scripted offset, error or silence."""
        self.calls.append((source, timeout_ms))
        if source in self._hanging:
            await asyncio.Event().wait()
        scripted = self._errors.get(source)
        if scripted is not None:
            exc, remaining = scripted
            if remaining is None:
                raise exc
            if remaining > 0:
                self._errors[source] = (exc, remaining - 1)
                raise exc
            del self._errors[source]
        offset_ms = self.offsets.get(source, self.default_offset_ms)
        return datetime.fromtimestamp(self.clock.time() + offset_ms / 1000.0, tz=UTC)
