"""Clock port and system adapter.

Provides ClockPort (Protocol) and SystemClock, the two local time
readings every synchronization needs:

- ``now()`` — monotonic seconds, for measuring elapsed time between a
  synchronization anchor and a later read.
- ``time()`` — wall-clock seconds since the Unix epoch, the local
  reading that measured offsets are relative to.

**Why both?** time.monotonic() is immune to NTP adjustments and
manual system-clock changes, so the virtual clock advances from an
anchor using monotonic deltas only.  The wall reading is taken once per
anchor, back-to-back with the monotonic one (PEP 418).
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Local time source for the synchronization core.

    The default implementation wraps ``time.monotonic()`` and
    ``time.time()``.  Tests inject a deterministic fake clock for
    reproducible timing.
    """

    def now(self) -> float:
        """Return monotonic time in seconds.

        Returns:
            A float representing seconds from an arbitrary epoch.
            Only the *difference* between two calls is meaningful.
        """
        ...

    def time(self) -> float:
        """Return local wall-clock time in seconds since the Unix epoch."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()`` and ``time.time()``.

    Satisfies :class:`ClockPort` via structural subtyping — no
    base-class inheritance required (PEP 544).

    Usage::

        clock = SystemClock()
        start = clock.now()
        # ... some work ...
        elapsed = clock.now() - start
    """

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()

    def time(self) -> float:
        """Return wall-clock time in seconds since the epoch."""
        return time.time()
