"""Reference-time probe port and NTP adapter.

The synchronization core only needs one thing from the network: *what
time does this source say it is?*  :class:`ReferenceTimeProbe` captures
that as a single coroutine; retries, timeouts across attempts and
source selection live in :class:`~smoothclock.OffsetSampler`.

:class:`NtpProbe` answers with the server's transmit timestamp.  It
does not compute round-trip delay or dispersion.

``ntplib`` is synchronous, so each request runs in a worker thread via
:func:`asyncio.to_thread` and the event loop stays responsive while
waiting on the socket.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

import ntplib

logger = logging.getLogger(__name__)


@runtime_checkable
class ReferenceTimeProbe(Protocol):
    """Port contract for querying one reference-time source."""

    async def query(self, source: str, timeout_ms: float) -> datetime:
        """Return the source's current time as an aware UTC datetime.

        Args:
            source: Source identifier (e.g. an NTP host name).
            timeout_ms: Upper bound for this single query.

        Raises:
            Exception: Any failure (timeout, DNS, socket, protocol).
                Callers treat every exception as a failed attempt.
        """
        ...


class NtpProbe:
    """Production probe backed by ``ntplib``.

    Args:
        port: UDP port of the NTP service.
        version: NTP protocol version sent in requests.
    """

    def __init__(self, *, port: int | str = "ntp", version: int = 3) -> None:
        self._port = port
        self._version = version
        self._client = ntplib.NTPClient()

    async def query(self, source: str, timeout_ms: float) -> datetime:
        """Query *source* and return its transmit time."""
        timeout = timeout_ms / 1000.0
        response = await asyncio.to_thread(self._request, source, timeout)
        logger.debug("NTP response from %s (stratum %s)", source, response.stratum)
        return datetime.fromtimestamp(response.tx_time, tz=UTC)

    def _request(self, source: str, timeout: float) -> ntplib.NTPStats:
        """Blocking NTP request (runs in a worker thread).

        Raises:
            ntplib.NTPException: If the server does not answer in time
                or the reply is malformed.
            OSError: On name resolution or socket errors.
        """
        return self._client.request(
            source,
            version=self._version,
            port=self._port,
            timeout=timeout,
        )
