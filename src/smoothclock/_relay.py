"""WebSocket relay broadcasting the synchronized time.

A thin pass-through over :class:`SyncCoordinator`: it only reads
``timestamp()`` and ``offset()`` (synchronous, non-blocking) and can
trigger ``sync()`` on request.

Protocol (JSON text frames)::

    server → client   {"type": "time", "data": {"timestamp": "...Z", "offset": 12.5, "synchronized": true}}
    client → server   {"type": "getTime"}     → one "time" message
    client → server   {"type": "sync"}        → {"type": "syncComplete", ...} or error
    server → client   {"type": "error", "message": "...", "error_type": "..."}

New clients receive the time immediately when the clock is
synchronized; all clients receive a broadcast every
``broadcast_interval`` seconds.  Send failures on one connection never
affect the others.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Protocol

from websockets.asyncio.server import Server, ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed

from smoothclock._coordinator import SyncCoordinator
from smoothclock._errors import NotSynchronizedError, build_error_payload

logger = logging.getLogger(__name__)

COMMANDS: tuple[str, ...] = ("getTime", "sync")


class _Sender(Protocol):
    async def send(self, message: str) -> None: ...


class ClockRelay:
    """Serves the coordinator's time to WebSocket clients.

    Args:
        coordinator: Clock whose time is relayed.
        broadcast_interval: Seconds between broadcasts.
    """

    def __init__(self, coordinator: SyncCoordinator, *, broadcast_interval: float = 1.0) -> None:
        if broadcast_interval <= 0:
            msg = f"broadcast_interval must be positive, got {broadcast_interval}"
            raise ValueError(msg)
        self._coordinator = coordinator
        self._broadcast_interval = broadcast_interval
        self._server: Server | None = None
        self._broadcast_task: asyncio.Task[None] | None = None
        self._clients: set[ServerConnection] = set()
        self._sync_tasks: set[asyncio.Task[None]] = set()

    @property
    def client_count(self) -> int:
        """Number of connected clients."""
        return len(self._clients)

    @property
    def is_running(self) -> bool:
        """True between :meth:`start` and :meth:`stop`."""
        return self._server is not None

    # -- lifecycle ----------------------------------------------------------

    async def start(self, host: str = "localhost", port: int = 8080) -> int:
        """Start listening and broadcasting.

        Returns:
            The bound port (useful with ``port=0``).

        Raises:
            RuntimeError: If the relay is already running.
        """
        if self._server is not None:
            msg = "WebSocket relay already started"
            raise RuntimeError(msg)
        self._server = await serve(self._handle_connection, host, port)
        bound_port = port
        sockets = list(self._server.sockets)
        if sockets:
            bound_port = sockets[0].getsockname()[1]
        self._broadcast_task = asyncio.create_task(
            self._broadcast_loop(),
            name="smoothclock-relay-broadcast",
        )
        logger.info("WebSocket relay started on %s:%d", host, bound_port)
        return bound_port

    async def stop(self) -> None:
        """Stop broadcasting, cancel pending syncs and close all connections.

        Idempotent.
        """
        for task in list(self._sync_tasks):
            task.cancel()
        if self._sync_tasks:
            await asyncio.gather(*self._sync_tasks, return_exceptions=True)
        if self._broadcast_task is not None:
            self._broadcast_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._broadcast_task
            self._broadcast_task = None
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            self._clients.clear()
            logger.info("WebSocket relay stopped")

    # -- messages -----------------------------------------------------------

    def time_message(self) -> str:
        """Serialise the current time as a ``time`` message.

        Raises:
            NotSynchronizedError: Before the first successful sync.
        """
        return json.dumps(
            {
                "type": "time",
                "data": {
                    "timestamp": self._coordinator.timestamp(),
                    "offset": self._coordinator.offset(),
                    "synchronized": self._coordinator.is_synchronized(),
                },
            },
        )

    @staticmethod
    def error_message(error: Exception | str) -> str:
        """Serialise an ``error`` message."""
        if isinstance(error, str):
            return json.dumps({"type": "error", "message": error})
        payload = build_error_payload(error)
        return json.dumps(
            {
                "type": "error",
                "message": payload.message,
                "error_type": payload.error_type,
            },
        )

    async def handle_message(self, connection: _Sender, raw: str | bytes) -> None:
        """Answer one inbound client message.

        ``sync`` runs in its own task and replies when it finishes, so
        later messages on the same connection are answered meanwhile.
        """
        try:
            data: Any = json.loads(raw)
        except ValueError:
            await connection.send(self.error_message("Invalid JSON format"))
            return

        command = data.get("type") if isinstance(data, dict) else None
        match command:
            case "getTime":
                try:
                    message = self.time_message()
                except NotSynchronizedError as exc:
                    message = self.error_message(exc)
                await connection.send(message)
            case "sync":
                task = asyncio.create_task(
                    self._sync_and_reply(connection),
                    name="smoothclock-relay-sync",
                )
                self._sync_tasks.add(task)
                task.add_done_callback(self._sync_tasks.discard)
            case _:
                await connection.send(
                    self.error_message(f"Unknown command. Use: {', '.join(COMMANDS)}"),
                )

    async def _sync_and_reply(self, connection: _Sender) -> None:
        try:
            result = await self._coordinator.sync()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reply = self.error_message(exc)
        else:
            reply = json.dumps(
                {
                    "type": "syncComplete",
                    "message": "Synchronization complete",
                    "data": {"source": result.source, "offset": result.offset_ms},
                },
            )
        # The client may have left while the sync was running.
        with contextlib.suppress(ConnectionClosed):
            await connection.send(reply)

    # -- internals ----------------------------------------------------------

    async def _handle_connection(self, connection: ServerConnection) -> None:
        self._clients.add(connection)
        logger.info("WebSocket client connected (%d total)", len(self._clients))
        try:
            with contextlib.suppress(ConnectionClosed):
                if self._coordinator.is_synchronized():
                    await connection.send(self.time_message())
                async for raw in connection:
                    await self.handle_message(connection, raw)
        finally:
            self._clients.discard(connection)
            logger.info("WebSocket client disconnected (%d remaining)", len(self._clients))

    async def _broadcast_loop(self) -> None:
        while True:
            await asyncio.sleep(self._broadcast_interval)
            if self._clients and self._coordinator.is_synchronized():
                broadcast(self._clients, self.time_message())
