"""Bridge worker: wires the poller, transport and handoff coordinator.

One :class:`AtcBridge` runs the whole pipeline on the current event loop:

    VatsimDataSource --vatsim.snapshot--> AtcBridge._snapshot_loop
        -> HandoffCoordinator.apply -> TransportConnection.send
    TransportConnection --transport.message--> AtcBridge._inbound_loop
        -> position updates / HandoffCoordinator.handle_message

Snapshots and inbound messages are consumed by separate tasks so that a
transition waiting on a coverage reply never blocks the reply itself.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import aiohttp
from pydantic import ValidationError

from atcbridge.core.authority import NetworkAuthorityState
from atcbridge.core.coverage import CoverageResolver, Decision
from atcbridge.core.events import TOPIC_INBOUND, TOPIC_SNAPSHOT, EventBus, Subscription, unpack
from atcbridge.core.handoff import HandoffCoordinator
from atcbridge.core.models import Controller, CoverageSnapshot, Position, TrackedAircraft
from atcbridge.core.time import RealTimeSource, TimeSource
from atcbridge.ingest.vatsim_source import VatsimDataSource
from atcbridge.settings.schema import BridgeSettings
from atcbridge.transport import messages
from atcbridge.transport.connection import TransportConnection

__all__ = ["AtcBridge"]

logger = logging.getLogger(__name__)


class AtcBridge:
    """Arbitrates BeyondATC/VATSIM authority for one tracked aircraft."""

    def __init__(
        self,
        settings: BridgeSettings,
        *,
        bus: EventBus | None = None,
        ts: TimeSource | None = None,
        session: Optional[aiohttp.ClientSession] = None,
        transport: TransportConnection | None = None,
        source: VatsimDataSource | None = None,
    ) -> None:
        self._settings = settings
        self._ts = ts or RealTimeSource()
        self._bus = bus or EventBus()

        home: Position | None = None
        if settings.home_lat is not None and settings.home_lon is not None:
            home = Position(latitude=settings.home_lat, longitude=settings.home_lon)

        self.authority = NetworkAuthorityState(self._ts)
        self.resolver = CoverageResolver(
            home_airport=settings.home_airport,
            home_position=home,
            local_radius_sm=settings.local_radius_sm,
            general_range_sm=settings.general_range_sm,
            buffer_sm=settings.hysteresis_buffer_sm,
        )
        self.transport = transport or TransportConnection(
            settings.beyondatc_url,
            bus=self._bus,
            ts=self._ts,
            session=session,
            max_retries=settings.max_reconnect_attempts,
        )
        self.coordinator = HandoffCoordinator(
            authority=self.authority,
            resolver=self.resolver,
            transport=self.transport,
            bus=self._bus,
            ts=self._ts,
            beyondatc_ptt_key=settings.beyondatc_ptt_key,
            vatsim_ptt_key=settings.vatsim_ptt_key,
            handoff_timeout_s=settings.handoff_timeout_s,
            sweep_interval_s=settings.handoff_sweep_interval_s,
            query_timeout_s=settings.coverage_query_timeout_s,
        )
        # Reconnects must not lose the routing the coordinator already knows.
        self.transport.set_greeting(lambda: [self.coordinator.ptt_command()])
        self.source = source or VatsimDataSource(
            settings.vatsim_url,
            bus=self._bus,
            ts=self._ts,
            interval_s=settings.poll_interval_s,
            timeout_s=settings.http_timeout_s,
            session=session,
        )

        self.aircraft = TrackedAircraft(callsign=settings.aircraft_callsign)
        self._roster: dict[str, Controller] = {}
        self._roster_aircraft: dict[str, list[str]] = {}
        self._roster_seen = False

        self._snapshot_sub: Subscription | None = None
        self._inbound_sub: Subscription | None = None
        self._tasks: list[asyncio.Task[Any]] = []

    @property
    def bus(self) -> EventBus:
        return self._bus

    # Lifecycle ---------------------------------------------------------------
    async def start(self) -> None:
        if self._tasks:
            return
        logger.info(
            "Bridge starting: aircraft=%s home=%s beyondatc=%s poll=%.0fs buffer=%.1fSM",
            self.aircraft.callsign,
            self.resolver.home_airport,
            self._settings.beyondatc_url,
            self._settings.poll_interval_s,
            self.resolver.buffer_sm,
        )
        # Only the freshest snapshot matters; older ones are dropped.
        self._snapshot_sub = self._bus.subscribe(TOPIC_SNAPSHOT, maxsize=1)
        self._inbound_sub = self._bus.subscribe(TOPIC_INBOUND)
        await self.coordinator.start()
        self._tasks = [
            asyncio.create_task(self.transport.run(), name="beyondatc_transport"),
            asyncio.create_task(self.source.run(), name="vatsim_poller"),
            asyncio.create_task(self._snapshot_loop(self._snapshot_sub), name="snapshots"),
            asyncio.create_task(self._inbound_loop(self._inbound_sub), name="inbound"),
        ]

    async def stop(self) -> None:
        """Cancel timers, close the socket gracefully, drop in-flight handoffs."""
        await self.source.stop()
        await self.transport.stop()
        await self.coordinator.stop()
        for sub in (self._snapshot_sub, self._inbound_sub):
            if sub is not None:
                await sub.close()
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=2.0)
            for t in pending:
                t.cancel()
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for t, r in zip(self._tasks, results):
                if isinstance(r, Exception):
                    logger.error("Task %s ended with %r", t.get_name(), r)
            self._tasks = []
        logger.info("Bridge stopped (authority=%s)", self.authority.backend.value)

    def reconnect(self) -> None:
        """Manual reconnect after the transport gave up retrying."""
        self.transport.request_reconnect()

    # Snapshots -----------------------------------------------------------------
    async def _snapshot_loop(self, sub: Subscription) -> None:
        async for env in sub:
            try:
                snapshot = CoverageSnapshot.model_validate(unpack(env.payload))
                await self.process_snapshot(snapshot)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Snapshot processing failed")

    async def process_snapshot(self, snapshot: CoverageSnapshot) -> Decision | None:
        """Refresh roster and aircraft from *snapshot*, then re-evaluate authority."""
        if snapshot.is_fallback:
            logger.debug(
                "Fallback snapshot; authority stays %s", self.authority.backend.value
            )
            return None

        await self._update_roster(snapshot)
        pilot = snapshot.pilot(self.aircraft.callsign)
        if pilot is not None and pilot.position is not None:
            self.aircraft = self.aircraft.model_copy(
                update={
                    "position": pilot.position,
                    "last_update": pilot.last_update,
                    "cid": pilot.cid,
                    "last_controller_id": pilot.last_controller_id,
                }
            )
        if self.aircraft.position is None:
            logger.debug("No position for %s yet", self.aircraft.callsign)
            return None
        return await self.coordinator.apply(self.aircraft, snapshot)

    async def _update_roster(self, snapshot: CoverageSnapshot) -> None:
        current = {c.callsign: c for c in snapshot.controllers}
        controlled = {cs: snapshot.controlled_by(c) for cs, c in current.items()}

        if not self._roster_seen:
            logger.info("VATSIM roster: %d controllers online", len(current))
        else:
            for cs in current:
                if cs not in self._roster:
                    logger.info(
                        "New VATSIM controller online: %s (controlling %d aircraft)",
                        cs,
                        len(controlled[cs]),
                    )
            for cs in self._roster:
                if cs in current:
                    continue
                returned = self._roster_aircraft.get(cs, [])
                logger.info("VATSIM controller offline: %s", cs)
                if returned:
                    logger.info("Returning %d aircraft to BeyondATC control", len(returned))
                    await self.transport.send(messages.return_aircraft(returned))

        self._roster = current
        self._roster_aircraft = controlled
        self._roster_seen = True

    # Inbound -------------------------------------------------------------------
    async def _inbound_loop(self, sub: Subscription) -> None:
        async for env in sub:
            payload = unpack(env.payload)
            if not isinstance(payload, dict):
                continue
            try:
                await self.handle_inbound(payload)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Inbound message handling failed: %s", payload)

    async def handle_inbound(self, payload: dict[str, Any]) -> bool:
        kind = payload.get("type") or payload.get("command")
        if kind == "position_update":
            return self._on_position_update(payload)
        if kind == "ptt_state":
            data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
            logger.info("BeyondATC PTT state: %s", {k: v for k, v in data.items() if k != "type"})
            return True
        return await self.coordinator.handle_message(payload)

    def _on_position_update(self, payload: dict[str, Any]) -> bool:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        callsign = data.get("callsign")
        if isinstance(callsign, str) and callsign.strip().upper() != self.aircraft.callsign:
            logger.debug("position_update for untracked %s ignored", callsign)
            return False
        raw = data.get("position") if isinstance(data.get("position"), dict) else data
        try:
            position = Position.model_validate(
                {k: raw[k] for k in Position.model_fields if raw.get(k) is not None}
            )
        except ValidationError as e:
            logger.warning("Malformed position_update ignored: %s", e.errors()[:1])
            return False
        self.aircraft = self.aircraft.with_position(position)
        return True
