"""Tests for smoothclock._relay — the WebSocket time relay.

Test Techniques Used:
    - Specification-based Testing: Message protocol (getTime, sync, errors)
    - Mock-based Isolation: Recording connection instead of a socket
    - Error Condition Testing: Invalid JSON, unknown commands, failed syncs
    - Lifecycle Testing: start/stop idempotence against a real server
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime

import pytest

from smoothclock._coordinator import SyncCoordinator
from smoothclock._errors import NotSynchronizedError
from smoothclock._relay import ClockRelay
from smoothclock.testing import TEST_SERVERS, FakeClock, FakeProbe, FakeScheduler

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingConnection:
    """Stands in for a ServerConnection; keeps decoded sent messages."""

    def __init__(self) -> None:
        self.sent: list[dict[str, object]] = []

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))


class HeldProbe(FakeProbe):
    """FakeProbe whose answers wait while ``hold`` is cleared."""

    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock)
        self.hold = asyncio.Event()
        self.hold.set()

    async def query(self, source: str, timeout_ms: float) -> datetime:
        await self.hold.wait()
        return await super().query(source, timeout_ms)


async def _settle(relay: ClockRelay) -> None:
    """Wait for every sync the relay has started."""
    await asyncio.gather(*relay._sync_tasks)


@pytest.fixture
def relay(coordinator: SyncCoordinator) -> ClockRelay:
    return ClockRelay(coordinator, broadcast_interval=0.01)


@pytest.fixture
def connection() -> RecordingConnection:
    return RecordingConnection()


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    """Technique: Specification-based Testing."""

    def test_invalid_interval(self, coordinator: SyncCoordinator) -> None:
        with pytest.raises(ValueError, match="broadcast_interval"):
            ClockRelay(coordinator, broadcast_interval=0)

    def test_time_message_requires_sync(self, relay: ClockRelay) -> None:
        with pytest.raises(NotSynchronizedError):
            relay.time_message()

    async def test_time_message(self, relay: ClockRelay, coordinator: SyncCoordinator) -> None:
        await coordinator.sync()
        message = json.loads(relay.time_message())
        assert message == {
            "type": "time",
            "data": {
                "timestamp": "2026-01-01T00:00:00.000Z",
                "offset": 0.0,
                "synchronized": True,
            },
        }

    def test_error_message_from_string(self) -> None:
        assert json.loads(ClockRelay.error_message("nope")) == {"type": "error", "message": "nope"}

    def test_error_message_from_exception(self) -> None:
        message = json.loads(ClockRelay.error_message(NotSynchronizedError()))
        assert message["type"] == "error"
        assert message["error_type"] == "not_synchronized"


class TestHandleMessage:
    """Technique: Mock-based Isolation — one inbound frame at a time."""

    async def test_get_time(
        self,
        relay: ClockRelay,
        coordinator: SyncCoordinator,
        connection: RecordingConnection,
    ) -> None:
        await coordinator.sync()
        await relay.handle_message(connection, '{"type": "getTime"}')
        (reply,) = connection.sent
        assert reply["type"] == "time"

    async def test_get_time_before_sync(
        self,
        relay: ClockRelay,
        connection: RecordingConnection,
    ) -> None:
        await relay.handle_message(connection, '{"type": "getTime"}')
        (reply,) = connection.sent
        assert reply["type"] == "error"
        assert reply["error_type"] == "not_synchronized"

    async def test_sync_command(
        self,
        relay: ClockRelay,
        coordinator: SyncCoordinator,
        fake_probe: FakeProbe,
        connection: RecordingConnection,
    ) -> None:
        fake_probe.default_offset_ms = 42.0
        await relay.handle_message(connection, b'{"type": "sync"}')
        await _settle(relay)
        (reply,) = connection.sent
        assert reply["type"] == "syncComplete"
        data = reply["data"]
        assert isinstance(data, dict)
        assert data["source"] == TEST_SERVERS[0]
        assert data["offset"] == pytest.approx(42.0, abs=0.01)
        assert coordinator.is_synchronized()

    async def test_sync_command_failure(
        self,
        relay: ClockRelay,
        fake_probe: FakeProbe,
        connection: RecordingConnection,
    ) -> None:
        for source in TEST_SERVERS:
            fake_probe.fail(source)
        await relay.handle_message(connection, '{"type": "sync"}')
        await _settle(relay)
        (reply,) = connection.sent
        assert reply["type"] == "error"
        assert reply["error_type"] == "all_sources_unreachable"

    async def test_get_time_answered_while_sync_pending(
        self,
        fake_clock: FakeClock,
        connection: RecordingConnection,
    ) -> None:
        probe = HeldProbe(fake_clock)
        coordinator = SyncCoordinator(
            servers=("a",),
            probe=probe,
            clock=fake_clock,
            scheduler=FakeScheduler(fake_clock),
        )
        relay = ClockRelay(coordinator)
        await coordinator.sync()

        probe.hold.clear()
        probe.default_offset_ms = 25.0
        await relay.handle_message(connection, '{"type": "sync"}')
        await relay.handle_message(connection, '{"type": "getTime"}')
        assert [reply["type"] for reply in connection.sent] == ["time"]

        probe.hold.set()
        await _settle(relay)
        assert [reply["type"] for reply in connection.sent] == ["time", "syncComplete"]

    async def test_stop_cancels_pending_sync(
        self,
        fake_clock: FakeClock,
        connection: RecordingConnection,
    ) -> None:
        probe = HeldProbe(fake_clock)
        probe.hold.clear()
        coordinator = SyncCoordinator(
            servers=("a",),
            probe=probe,
            clock=fake_clock,
            scheduler=FakeScheduler(fake_clock),
        )
        relay = ClockRelay(coordinator)
        await relay.handle_message(connection, '{"type": "sync"}')
        (pending,) = relay._sync_tasks

        await relay.stop()

        assert pending.cancelled()
        assert connection.sent == []
        assert coordinator.is_synchronized() is False

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2"])
    async def test_invalid_json(
        self,
        relay: ClockRelay,
        connection: RecordingConnection,
        raw: str,
    ) -> None:
        await relay.handle_message(connection, raw)
        assert connection.sent == [{"type": "error", "message": "Invalid JSON format"}]

    @pytest.mark.parametrize("raw", ['{"type": "reboot"}', "[]", '"getTime"', "{}"])
    async def test_unknown_command(
        self,
        relay: ClockRelay,
        connection: RecordingConnection,
        raw: str,
    ) -> None:
        await relay.handle_message(connection, raw)
        assert connection.sent == [
            {"type": "error", "message": "Unknown command. Use: getTime, sync"},
        ]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Technique: Lifecycle Testing — real server on an ephemeral port."""

    async def test_start_and_stop(self, relay: ClockRelay) -> None:
        port = await relay.start("127.0.0.1", 0)
        assert port > 0
        assert relay.is_running
        await relay.stop()
        assert relay.is_running is False
        await relay.stop()

    async def test_double_start_rejected(self, relay: ClockRelay) -> None:
        await relay.start("127.0.0.1", 0)
        try:
            with pytest.raises(RuntimeError, match="already started"):
                await relay.start("127.0.0.1", 0)
        finally:
            await relay.stop()
