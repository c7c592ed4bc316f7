"""Public test-support utilities for smoothclock.

Re-exports test doubles and factories so that consumer test suites
can import everything from a single ``smoothclock.testing`` namespace
instead of reaching into private modules.

Provided symbols:

- :class:`FakeClock` — deterministic monotonic and wall clock.
- :class:`FakeScheduler` — manual timer source driven by a FakeClock.
- :class:`FakeProbe` — scripted reference-time probe.
- :class:`EventRecorder` — catch-all event subscriber for assertions.
- :func:`make_settings` — factory for ``Settings`` without ``.env`` files.
- :func:`make_sync_settings` — ``SyncSettings`` with test sources.
"""

from smoothclock.testing._clock import FakeClock
from smoothclock.testing._events import EventRecorder
from smoothclock.testing._probe import FakeProbe
from smoothclock.testing._scheduler import FakeScheduler, FakeTimer
from smoothclock.testing._settings import TEST_SERVERS, make_settings, make_sync_settings

__all__ = [
    "TEST_SERVERS",
    "EventRecorder",
    "FakeClock",
    "FakeProbe",
    "FakeScheduler",
    "FakeTimer",
    "make_settings",
    "make_sync_settings",
]
