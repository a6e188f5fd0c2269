"""Persistent WebSocket connection to BeyondATC.

The connection cycles ``DISCONNECTED -> CONNECTING -> CONNECTED ->
DISCONNECTED``. Every connect failure or unexpected close counts as one
failed attempt and schedules the next try after
``min(1000 * 2**attempt, 30000)`` ms; a successful connect resets the
counter. Once ``max_retries`` retries have been used the connection parks in
``FAILED`` and only :meth:`TransportConnection.request_reconnect` restarts it.

Inbound frames are classified (see :mod:`atcbridge.transport.messages`) and
published on the bus: status lines on ``transport.status``, structured
messages on ``transport.message``, state changes on ``transport.state``.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Iterable, Optional

import aiohttp

from atcbridge.core.events import (
    TOPIC_CONNECTION,
    TOPIC_INBOUND,
    TOPIC_STATUS,
    EventBus,
    pack,
)
from atcbridge.core.models import Command
from atcbridge.core.time import RealTimeSource, TimeSource
from atcbridge.transport.messages import InboundKind, StatusPrefix, classify

__all__ = [
    "DEFAULT_URL",
    "ConnectionState",
    "TransportConnection",
    "reconnect_delay_ms",
]

logger = logging.getLogger(__name__)

DEFAULT_URL = "ws://localhost:41716"

_LOUD_PREFIXES = {StatusPrefix.CONNECTED, StatusPrefix.STATUS}


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


def reconnect_delay_ms(attempt: int, *, base_ms: int = 1000, cap_ms: int = 30000) -> int:
    """Backoff delay before retry number *attempt* (1-based)."""
    return int(min(base_ms * (2 ** max(0, attempt)), cap_ms))


class TransportConnection:
    """Owns the BeyondATC socket, its reconnect policy and inbound dispatch."""

    def __init__(
        self,
        url: str = DEFAULT_URL,
        *,
        bus: EventBus,
        ts: TimeSource | None = None,
        session: Optional[aiohttp.ClientSession] = None,
        max_retries: int = 5,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        connect_timeout_s: float = 5.0,
        heartbeat_s: float | None = None,
        greeting: Callable[[], Iterable[Command]] | None = None,
    ) -> None:
        self._url = url
        self._bus = bus
        self._ts = ts or RealTimeSource()
        self._ext_session = session
        self._max_retries = max(0, int(max_retries))
        self._base_delay_ms = int(base_delay_ms)
        self._max_delay_ms = int(max_delay_ms)
        self._connect_timeout_s = float(connect_timeout_s)
        self._heartbeat_s = heartbeat_s
        self._greeting = greeting

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._running = False
        self._stop_event = asyncio.Event()
        self._reconnect_event = asyncio.Event()

        self.status_count = 0
        self.message_count = 0
        self.malformed_count = 0

    # Properties ------------------------------------------------------------
    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._ws is not None

    def set_greeting(self, greeting: Callable[[], Iterable[Command]]) -> None:
        """Commands re-sent every time the connection comes up."""
        self._greeting = greeting

    # Reconnect policy -------------------------------------------------------
    def register_failure(self) -> int | None:
        """Count one failed attempt; return the retry delay in ms or None."""
        self._attempts += 1
        if self._attempts > self._max_retries:
            return None
        return reconnect_delay_ms(
            self._attempts, base_ms=self._base_delay_ms, cap_ms=self._max_delay_ms
        )

    def request_reconnect(self) -> bool:
        """External reconnect request; clears the retry budget.

        Only honoured while disconnected or failed, so a stray request
        cannot cut short a later backoff. Returns True when accepted.
        """
        if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            logger.info("Reconnect request ignored (state=%s)", self._state.value)
            return False
        logger.info("Reconnect requested (state=%s)", self._state.value)
        self._attempts = 0
        self._reconnect_event.set()
        return True

    # Lifecycle --------------------------------------------------------------
    async def run(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        session = self._ext_session or aiohttp.ClientSession()
        try:
            while not self._stop_event.is_set():
                self._reconnect_event.clear()
                await self._set_state(ConnectionState.CONNECTING)
                logger.info(
                    "Connecting to BeyondATC at %s (attempt %d/%d)",
                    self._url,
                    self._attempts + 1,
                    self._max_retries + 1,
                )
                try:
                    await self._connect_and_read(session)
                except asyncio.CancelledError:
                    raise
                except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                    logger.warning("BeyondATC connection error: %s", e or e.__class__.__name__)
                if self._stop_event.is_set():
                    break

                await self._set_state(ConnectionState.DISCONNECTED)
                delay_ms = self.register_failure()
                if delay_ms is None:
                    logger.error(
                        "Max connection attempts reached (%d); "
                        "ensure BeyondATC is running and request a reconnect",
                        self._max_retries,
                    )
                    await self._set_state(ConnectionState.FAILED)
                    await self._wait_for(None)
                    continue
                logger.info("Retrying BeyondATC in %.1f s", delay_ms / 1000.0)
                await self._wait_for(delay_ms / 1000.0)
        finally:
            self._running = False
            if self._ext_session is None:
                await session.close()
            if self._state is not ConnectionState.FAILED:
                await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        """Close the socket gracefully and end :meth:`run`."""
        self._stop_event.set()
        self._reconnect_event.set()
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()

    async def send(self, command: Command) -> bool:
        """Send one command; returns False when it could not be delivered."""
        ws = self._ws
        if ws is None or ws.closed or self._state is not ConnectionState.CONNECTED:
            logger.warning("BeyondATC not connected; %s not sent", command.command)
            return False
        try:
            await ws.send_str(command.to_json())
        except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as e:
            logger.warning("Sending %s to BeyondATC failed: %s", command.command, e)
            return False
        logger.debug("Sent %s", command.command)
        return True

    # Internals --------------------------------------------------------------
    async def _connect_and_read(self, session: aiohttp.ClientSession) -> None:
        ws = await asyncio.wait_for(
            session.ws_connect(self._url, heartbeat=self._heartbeat_s),
            timeout=self._connect_timeout_s,
        )
        self._ws = ws
        try:
            if self._stop_event.is_set():
                # stop() ran while the handshake was pending
                return
            self._attempts = 0
            await self._set_state(ConnectionState.CONNECTED)
            logger.info("Connected to BeyondATC")
            await self._send_greeting()
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("BeyondATC socket error: %s", ws.exception())
                    break
        finally:
            self._ws = None
            if not ws.closed:
                await ws.close()
        logger.info("BeyondATC connection closed (code=%s)", ws.close_code)

    async def _send_greeting(self) -> None:
        if self._greeting is None:
            return
        for command in self._greeting():
            await self.send(command)

    async def _dispatch(self, raw: str | bytes) -> None:
        inbound = classify(raw)
        if inbound.kind is InboundKind.STATUS:
            self.status_count += 1
            if inbound.prefix in _LOUD_PREFIXES:
                logger.info("BeyondATC status: %s", inbound.text)
            else:
                logger.debug("BeyondATC status: %s", inbound.text)
            assert inbound.prefix is not None
            await self._publish(
                TOPIC_STATUS,
                {
                    "prefix": inbound.prefix.value,
                    "value": inbound.status_value,
                    "text": inbound.text,
                },
            )
        elif inbound.kind is InboundKind.MESSAGE:
            self.message_count += 1
            await self._publish(TOPIC_INBOUND, inbound.payload)
        else:
            self.malformed_count += 1
            logger.warning(
                "Unexpected message format from BeyondATC (%s): %.200s",
                inbound.error,
                inbound.text,
            )

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        await self._publish(
            TOPIC_CONNECTION,
            {"state": state.value, "attempts": self._attempts, "url": self._url},
        )

    async def _publish(self, topic: str, obj: object) -> None:
        if self._bus.closed:
            return
        await self._bus.publish(topic, pack(obj))

    async def _wait_for(self, delay_s: float | None) -> None:
        """Sleep for *delay_s* (forever when None) unless woken early."""
        waiter = asyncio.create_task(self._reconnect_event.wait())
        tasks: set[asyncio.Task[None]] = {waiter}
        if delay_s is not None:
            tasks.add(asyncio.create_task(self._ts.sleep(delay_s)))
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
