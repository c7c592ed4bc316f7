"""Minimal smoothclock setup for step-through debugging.

Run this script to set breakpoints inside the library and follow the
full lifecycle without network access:

  1. Sync       — sampling, coherence check, engine decision, new anchor
  2. Correct    — gradual correction ticks on the event loop
  3. Relay      — WebSocket broadcast on ws://localhost:8080
  4. Tear down  — stop auto-sync, stop relay, cancel pending ticks

Suggested breakpoints for first exploration:

  _coordinator.py    → sync()          # top of orchestration
  _sampler.py        → _select()       # coherence / median selection
  _correction.py     → submit()        # instant vs smooth decision
  _correction.py     → _tick()         # each correction step
  _virtual_clock.py  → now()           # anchor arithmetic

The script uses a simulated reference source whose offset wanders
between syncs, so every correction branch shows up after a few
rounds.  Press Ctrl+C in the terminal to trigger graceful shutdown.
"""

from __future__ import annotations

import asyncio
import random
import signal
from datetime import UTC, datetime, timedelta

import smoothclock
from smoothclock import LoggingSettings


class WanderingProbe:
    """Simulated reference source; each answer picks a new offset."""

    OFFSETS_MS = (0.0, 40.0, 800.0, 2500.0, -1800.0, 7000.0)

    async def query(self, source: str, timeout_ms: float) -> datetime:
        await asyncio.sleep(random.uniform(0.01, 0.05))  # network latency
        offset = random.choice(self.OFFSETS_MS)
        return datetime.now(UTC) + timedelta(milliseconds=offset)


def _print_event(event: smoothclock.ClockEvent) -> None:
    print(f"[event] {event}")


if __name__ == "__main__":
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        print("\n[signal] Shutdown requested")
        shutdown_event.set()

    async def main() -> None:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, _signal_handler)
        loop.add_signal_handler(signal.SIGTERM, _signal_handler)

        clock = smoothclock.SyncCoordinator(
            servers=("sim-a", "sim-b", "sim-c"),
            probe=WanderingProbe(),
        )
        smoothclock.configure_logging(
            LoggingSettings(level="DEBUG", format="text"),
            service="debugapp",
            time_source=clock,
        )
        clock.events.subscribe_all(_print_event)
        relay = smoothclock.ClockRelay(clock)

        # Set a breakpoint on the next line to step into the library:
        await clock.sync()
        clock.start_auto_sync(5_000)  # short interval for debugging
        await relay.start("localhost", 8080)
        try:
            await shutdown_event.wait()
        finally:
            await relay.stop()
            await clock.aclose()

    asyncio.run(main())
