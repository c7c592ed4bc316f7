"""Cancellable timer port and asyncio adapter.

The correction engine advances on timer callbacks rather than on a
self-rescheduling coroutine.  Every scheduled callback returns a
:class:`TimerHandle` that the owner keeps and cancels when the pending
tick becomes obsolete (forced completion, a superseding target, or
teardown).

``LoopScheduler`` delegates to :meth:`asyncio.AbstractEventLoop.call_later`,
whose :class:`asyncio.TimerHandle` already satisfies the handle
protocol.  Tests inject :class:`smoothclock.testing.FakeScheduler`,
which fires timers against a :class:`~smoothclock.testing.FakeClock`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol, runtime_checkable


@runtime_checkable
class TimerHandle(Protocol):
    """Handle to a pending callback."""

    def cancel(self) -> None:
        """Prevent the callback from running.  Idempotent."""
        ...


@runtime_checkable
class SchedulerPort(Protocol):
    """Schedules one-shot callbacks after a delay."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run *callback* once after *delay* seconds.

        Args:
            delay: Seconds to wait.  Non-positive values run the
                callback on the next scheduler turn.
            callback: Zero-argument callable.

        Returns:
            A handle whose ``cancel()`` drops the pending call.
        """
        ...


class LoopScheduler:
    """Production scheduler backed by the running asyncio event loop.

    The loop is looked up lazily on every call so one instance can be
    created outside a running loop (e.g. at import or construction time)
    and used later from inside it.
    """

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Schedule *callback* on the running loop.

        Raises:
            RuntimeError: If no event loop is running.
        """
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay, 0.0), callback)
