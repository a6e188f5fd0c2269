from __future__ import annotations

import asyncio
import json
import socket
from typing import Any

import pytest
from aiohttp import WSMsgType, web

from atcbridge.core.events import (
    TOPIC_CONNECTION,
    TOPIC_INBOUND,
    TOPIC_STATUS,
    EventBus,
    Subscription,
    unpack,
)
from atcbridge.core.models import Backend, Command
from atcbridge.core.time import SimTimeSource
from atcbridge.transport import messages
from atcbridge.transport.connection import (
    ConnectionState,
    TransportConnection,
    reconnect_delay_ms,
)


async def _start_ws_server(
    outbound: list[str],
    *,
    handshake_delay_s: float = 0.0,
) -> tuple[web.AppRunner, str, list[str], asyncio.Event]:
    """WebSocket server that pushes *outbound* frames and records what it receives."""
    app = web.Application()
    received: list[str] = []
    got_first = asyncio.Event()

    async def handler(request: web.Request) -> web.WebSocketResponse:
        if handshake_delay_s:
            await asyncio.sleep(handshake_delay_s)
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            received.append(msg.data)
            if not got_first.is_set():
                got_first.set()
                for frame in outbound:
                    await ws.send_str(frame)
        return ws

    app.router.add_get("/", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    server = site._server
    assert server is not None
    sockets = getattr(server, "sockets", None)
    assert sockets, "Server sockets not available"
    port = sockets[0].getsockname()[1]
    return runner, f"ws://127.0.0.1:{port}/", received, got_first


def _unused_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def _next(sub: Subscription) -> Any:
    env = await asyncio.wait_for(sub.__anext__(), timeout=2.0)
    return unpack(env.payload)


async def _wait_state(sub: Subscription, state: ConnectionState) -> dict[str, Any]:
    while True:
        data = await _next(sub)
        if data["state"] == state.value:
            return data


def test_backoff_schedule() -> None:
    conn = TransportConnection(bus=EventBus(), max_retries=5)
    delays = [conn.register_failure() for _ in range(6)]
    assert delays == [2000, 4000, 8000, 16000, 30000, None]
    assert conn.attempts == 6
    conn.request_reconnect()
    assert conn.attempts == 0
    assert conn.register_failure() == 2000


def test_reconnect_delay_is_capped() -> None:
    assert reconnect_delay_ms(1) == 2000
    assert reconnect_delay_ms(10) == 30000
    assert reconnect_delay_ms(3, base_ms=100, cap_ms=500) == 500


@pytest.mark.asyncio
async def test_send_while_disconnected_returns_false() -> None:
    conn = TransportConnection(bus=EventBus())
    ok = await conn.send(messages.return_aircraft(["N9632J"]))
    assert ok is False
    assert conn.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_greeting_and_inbound_dispatch() -> None:
    frames = [
        "Facility: KBOS",
        "Connected: true",
        "this is not json",
        json.dumps({"type": "handoff_status", "callsign": "KBOS_TWR", "status": "complete"}),
    ]
    runner, url, received, got_first = await _start_ws_server(frames)
    bus = EventBus()
    status = bus.subscribe(TOPIC_STATUS)
    inbound = bus.subscribe(TOPIC_INBOUND)
    greeting = messages.configure_ptt(Backend.BEYONDATC, beyondatc_key="ralt", vatsim_key="lalt")
    conn = TransportConnection(url, bus=bus, greeting=lambda: [greeting])
    task = asyncio.create_task(conn.run())
    try:
        await asyncio.wait_for(got_first.wait(), timeout=2.0)
        assert json.loads(received[0])["command"] == "configure_ptt"

        first = await _next(status)
        assert first == {"prefix": "Facility:", "value": "KBOS", "text": "Facility: KBOS"}
        second = await _next(status)
        assert second["prefix"] == "Connected:"

        # The malformed frame is dropped without closing the socket
        msg = await _next(inbound)
        assert msg["type"] == "handoff_status"
        assert conn.malformed_count == 1
        assert conn.status_count == 2
        assert conn.message_count == 1
        assert conn.connected
        # Ignored while connected so it cannot skip a later backoff
        assert conn.request_reconnect() is False
        assert conn.state is ConnectionState.CONNECTED

        ok = await conn.send(Command(command="return_aircraft", data={"aircraft": ["DAL123"]}))
        assert ok
        for _ in range(50):
            if len(received) >= 2:
                break
            await asyncio.sleep(0.02)
        assert json.loads(received[1]) == {
            "command": "return_aircraft",
            "data": {"aircraft": ["DAL123"]},
        }
    finally:
        await conn.stop()
        await asyncio.wait_for(task, timeout=2.0)
        await bus.close()
        await runner.cleanup()
    assert conn.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_unreachable_server_parks_in_failed_until_requested() -> None:
    ts = SimTimeSource()
    bus = EventBus()
    states = bus.subscribe(TOPIC_CONNECTION)
    url = f"ws://127.0.0.1:{_unused_port()}/"
    conn = TransportConnection(url, bus=bus, ts=ts, max_retries=2, connect_timeout_s=1.0)
    task = asyncio.create_task(conn.run())
    try:
        await _wait_state(states, ConnectionState.DISCONNECTED)
        # Sleeping out the 2s backoff on the simulated clock
        for _ in range(100):
            if ts.pending_sleepers():
                break
            await asyncio.sleep(0.01)
        assert ts.next_due_monotonic() == pytest.approx(2.0)
        ts.advance(2.0)

        await _wait_state(states, ConnectionState.DISCONNECTED)
        for _ in range(100):
            if ts.pending_sleepers():
                break
            await asyncio.sleep(0.01)
        assert ts.next_due_monotonic() == pytest.approx(2.0 + 4.0)
        ts.advance(4.0)

        failed = await _wait_state(states, ConnectionState.FAILED)
        assert failed["attempts"] == 3
        assert conn.state is ConnectionState.FAILED
        assert ts.pending_sleepers() == 0

        assert conn.request_reconnect() is True
        assert conn.attempts == 0
        await _wait_state(states, ConnectionState.CONNECTING)
    finally:
        await conn.stop()
        await asyncio.wait_for(task, timeout=2.0)
        await bus.close()


@pytest.mark.asyncio
async def test_stop_during_handshake_closes_new_socket() -> None:
    runner, url, received, _ = await _start_ws_server([], handshake_delay_s=0.3)
    bus = EventBus()
    states = bus.subscribe(TOPIC_CONNECTION)
    greeting = messages.configure_ptt(Backend.BEYONDATC, beyondatc_key="ralt", vatsim_key="lalt")
    conn = TransportConnection(url, bus=bus, greeting=lambda: [greeting])
    task = asyncio.create_task(conn.run())
    try:
        await _wait_state(states, ConnectionState.CONNECTING)
        await conn.stop()
        # Returns once the handshake lands instead of reading the new socket
        await asyncio.wait_for(task, timeout=2.0)
        seen = []
        while states.pending():
            seen.append((await _next(states))["state"])
        assert ConnectionState.CONNECTED.value not in seen
        assert conn.state is ConnectionState.DISCONNECTED
        assert received == []
    finally:
        if not task.done():
            task.cancel()
        await bus.close()
        await runner.cleanup()
