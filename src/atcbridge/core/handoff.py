"""Handoff coordination between BeyondATC and VATSIM.

The coordinator owns the per-controller :class:`HandoffRecord` table and is
the only writer of :class:`NetworkAuthorityState`. Records move through

    preparing -> in_progress -> complete | failed

and are dropped as soon as they reach a terminal status. Every record
transition is published on ``handoff.events``; every authority change is
published on ``authority.changed`` and followed by a ``configure_ptt``
command for the backend that now holds authority.

Handing authority back to BeyondATC first asks BeyondATC whether it already
controls the position (``check_coverage``). Only one such query is in
flight at a time and its reply is matched by ``request_id`` and reply type,
never by arrival order.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Optional, Protocol

from atcbridge.core.authority import AuthorityTransition, NetworkAuthorityState
from atcbridge.core.coverage import CoverageResolver, Decision, DecisionKind
from atcbridge.core.events import TOPIC_AUTHORITY, TOPIC_HANDOFF, EventBus
from atcbridge.core.models import (
    AuthorityChange,
    Backend,
    Command,
    Controller,
    CoverageSnapshot,
    HandoffEvent,
    HandoffRecord,
    HandoffStatus,
    TrackedAircraft,
)
from atcbridge.core.time import RealTimeSource, TimeSource
from atcbridge.transport import messages

__all__ = ["CommandSink", "HandoffCoordinator"]

logger = logging.getLogger(__name__)

HANDOFF_TIMEOUT_S = 300.0
SWEEP_INTERVAL_S = 30.0

_STATUS_ALIASES = {
    "preparing": HandoffStatus.PREPARING,
    "in_progress": HandoffStatus.IN_PROGRESS,
    "acknowledged": HandoffStatus.IN_PROGRESS,
    "ack": HandoffStatus.IN_PROGRESS,
    "aircraft_list": HandoffStatus.IN_PROGRESS,
    "complete": HandoffStatus.COMPLETE,
    "completed": HandoffStatus.COMPLETE,
    "failed": HandoffStatus.FAILED,
}


class CommandSink(Protocol):
    async def send(self, command: Command) -> bool:
        ...


class HandoffCoordinator:
    """Drives authority transitions and tracks handoffs to completion."""

    def __init__(
        self,
        *,
        authority: NetworkAuthorityState,
        resolver: CoverageResolver,
        transport: CommandSink,
        bus: EventBus,
        ts: TimeSource | None = None,
        beyondatc_ptt_key: str = "ralt",
        vatsim_ptt_key: str = "lalt",
        handoff_timeout_s: float = HANDOFF_TIMEOUT_S,
        sweep_interval_s: float = SWEEP_INTERVAL_S,
        query_timeout_s: float = 5.0,
    ) -> None:
        self._authority = authority
        self._resolver = resolver
        self._transport = transport
        self._bus = bus
        self._ts = ts or RealTimeSource()
        self._beyondatc_key = beyondatc_ptt_key
        self._vatsim_key = vatsim_ptt_key
        self._handoff_timeout_s = float(handoff_timeout_s)
        self._sweep_interval_s = float(sweep_interval_s)
        self._query_timeout_s = float(query_timeout_s)

        self._records: dict[str, HandoffRecord] = {}
        self._aircraft: Optional[TrackedAircraft] = None
        self._query_lock = asyncio.Lock()
        self._pending_query: Optional[tuple[str, asyncio.Future[bool]]] = None
        self._monitor_task: asyncio.Task[None] | None = None

    # Inspection ------------------------------------------------------------
    @property
    def authority(self) -> NetworkAuthorityState:
        return self._authority

    def records(self) -> dict[str, HandoffRecord]:
        return dict(self._records)

    def record(self, callsign: str) -> Optional[HandoffRecord]:
        return self._records.get(callsign.strip().upper())

    def ptt_command(self) -> Command:
        """``configure_ptt`` for the current authority (idempotent)."""
        return messages.configure_ptt(
            self._authority.backend,
            beyondatc_key=self._beyondatc_key,
            vatsim_key=self._vatsim_key,
            aircraft=self._aircraft,
        )

    # Lifecycle ---------------------------------------------------------------
    async def start(self) -> None:
        if self._monitor_task is None:
            self._monitor_task = asyncio.create_task(
                self._monitor_loop(), name="handoff_monitor"
            )

    async def stop(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        if self._pending_query is not None:
            _, fut = self._pending_query
            if not fut.done():
                fut.cancel()
        if self._records:
            logger.info("Abandoning %d in-flight handoff(s)", len(self._records))
            self._records.clear()

    async def _monitor_loop(self) -> None:
        while True:
            await self._ts.sleep(self._sweep_interval_s)
            await self.sweep()

    # Authority transitions -----------------------------------------------------
    async def apply(self, aircraft: TrackedAircraft, snapshot: CoverageSnapshot) -> Decision:
        """Run one check-decide-send-commit step for *aircraft*."""
        self._aircraft = aircraft
        async with self._authority.transition() as tx:
            decision = self._resolver.evaluate(aircraft, snapshot, tx.current)
            if decision.kind is DecisionKind.TO_VATSIM:
                assert decision.controller is not None
                await self._to_vatsim(tx, aircraft, decision.controller, decision.reason)
            elif decision.kind is DecisionKind.TO_BEYONDATC:
                await self._to_beyondatc(tx, aircraft, decision.reason)
            else:
                logger.debug(
                    "Authority stays %s (%s)", tx.current.backend.value, decision.reason
                )
            return decision

    async def _to_vatsim(
        self,
        tx: AuthorityTransition,
        aircraft: TrackedAircraft,
        controller: Controller,
        reason: str,
    ) -> None:
        logger.info(
            "Handoff %s to VATSIM controller %s (%s)",
            aircraft.callsign,
            controller.callsign,
            reason,
        )
        await self._send(messages.prepare_handoff(controller, aircraft))
        await self._open_record(controller, HandoffStatus.PREPARING)
        await self._send(messages.handoff_to_vatsim(aircraft, controller))
        await self._commit(tx, Backend.VATSIM, controller, reason)

    async def _to_beyondatc(
        self, tx: AuthorityTransition, aircraft: TrackedAircraft, reason: str
    ) -> None:
        holder = tx.current.controller
        airport = holder.airport if holder else self._resolver.home_airport
        position = holder.position_type.value if holder else "unknown"
        logger.info("Returning %s to BeyondATC (%s)", aircraft.callsign, reason)

        if not await self.query_coverage(airport, position):
            await self._send(
                messages.prepare_takeover(airport, position, f"VATSIM coverage lost: {reason}")
            )
            if holder is not None:
                handed = [aircraft.wire()]
                await self._send(messages.receive_handoff(holder, handed))
                await self._open_record(holder, HandoffStatus.IN_PROGRESS, handed)
        await self._send(messages.handoff_to_beyondatc(aircraft))
        await self._commit(tx, Backend.BEYONDATC, None, reason)

    async def _commit(
        self,
        tx: AuthorityTransition,
        backend: Backend,
        controller: Optional[Controller],
        reason: str,
    ) -> None:
        previous = tx.current.backend
        if not tx.commit(backend, controller):
            return
        if not self._bus.closed:
            await self._bus.publish_model(
                TOPIC_AUTHORITY,
                AuthorityChange(
                    backend=backend, previous=previous, controller=controller, reason=reason
                ),
            )
        await self._send(self.ptt_command())

    async def query_coverage(self, airport: str, position: str) -> bool:
        """Ask BeyondATC whether it already controls *airport*/*position*.

        A send failure or a missing reply counts as "not controlling".
        """
        async with self._query_lock:
            request_id = uuid.uuid4().hex[:12]
            fut: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
            self._pending_query = (request_id, fut)
            try:
                if not await self._send(messages.check_coverage(airport, position, request_id)):
                    return False
                try:
                    return await asyncio.wait_for(fut, timeout=self._query_timeout_s)
                except asyncio.TimeoutError:
                    logger.warning(
                        "No coverage reply from BeyondATC for %s within %.1fs",
                        airport,
                        self._query_timeout_s,
                    )
                    return False
            finally:
                self._pending_query = None

    # Inbound -----------------------------------------------------------------
    async def handle_message(self, payload: dict[str, Any]) -> bool:
        """Apply one structured BeyondATC message; returns True if consumed."""
        kind = payload.get("type") or payload.get("command")
        if kind in messages.COVERAGE_REPLY_TYPES:
            return self._resolve_query(payload)
        if kind == "handoff_status":
            return await self._on_handoff_status(payload)
        if kind == "aircraft_list":
            return await self._on_handoff_status({**payload, "status": "in_progress"})
        if kind == "handoff_complete":
            return await self._on_handoff_complete(payload)
        if kind == "takeover_complete":
            logger.info("BeyondATC now controlling %s", _field(payload, "airport") or "?")
            return True
        logger.info("Unhandled BeyondATC message type: %s", kind)
        return False

    def _resolve_query(self, payload: dict[str, Any]) -> bool:
        pending = self._pending_query
        if pending is None:
            logger.debug("Coverage reply with no query in flight; ignored")
            return False
        request_id, fut = pending
        reply_id = _field(payload, "request_id")
        if reply_id is not None and str(reply_id) != request_id:
            logger.debug("Coverage reply for %s does not match %s", reply_id, request_id)
            return False
        if not fut.done():
            fut.set_result(_field(payload, "controlling") is True)
        return True

    async def _on_handoff_status(self, payload: dict[str, Any]) -> bool:
        callsign = _field(payload, "callsign")
        raw_status = str(_field(payload, "status") or "").lower()
        status = _STATUS_ALIASES.get(raw_status)
        if not isinstance(callsign, str) or status is None:
            logger.warning("Ignoring handoff_status without callsign/status: %s", payload)
            return False
        record = self.record(callsign)
        if record is None:
            logger.debug("handoff_status for unknown handoff %s", callsign)
            return False
        aircraft = _field(payload, "aircraft")
        if isinstance(aircraft, list):
            record.aircraft = aircraft
        if status is HandoffStatus.COMPLETE:
            await self._finish(record, HandoffStatus.COMPLETE)
        elif status is HandoffStatus.FAILED:
            await self._finish(record, HandoffStatus.FAILED, _field(payload, "reason"))
        elif status is HandoffStatus.IN_PROGRESS:
            record.status = HandoffStatus.IN_PROGRESS
            await self._emit(record)
        return True

    async def _on_handoff_complete(self, payload: dict[str, Any]) -> bool:
        callsign = _field(payload, "callsign")
        airport = _field(payload, "airport")
        logger.info("Handoff completed for %s", callsign or airport or "?")
        if isinstance(callsign, str):
            record = self.record(callsign)
            targets = [record] if record else []
        elif isinstance(airport, str):
            targets = [r for r in self._records.values() if r.airport == airport.upper()]
        else:
            targets = []
        for record in targets:
            await self._finish(record, HandoffStatus.COMPLETE)
        return bool(targets)

    # Records -----------------------------------------------------------------
    async def _open_record(
        self,
        controller: Controller,
        status: HandoffStatus,
        aircraft: list[Any] | None = None,
    ) -> HandoffRecord:
        old = self._records.get(controller.callsign)
        if old is not None:
            logger.warning(
                "Superseding %s handoff for %s", old.status.value, controller.callsign
            )
        record = HandoffRecord(
            controller_callsign=controller.callsign,
            airport=controller.airport,
            status=status,
            start_time=self._ts.monotonic(),
            aircraft=list(aircraft or []),
        )
        self._records[controller.callsign] = record
        await self._emit(record)
        return record

    async def _finish(
        self, record: HandoffRecord, status: HandoffStatus, reason: Optional[str] = None
    ) -> None:
        # The record may already have been removed by a concurrent sweep.
        if self._records.get(record.controller_callsign) is not record:
            return
        del self._records[record.controller_callsign]
        record.status = status
        await self._emit(record, reason=reason)

    async def sweep(self) -> list[HandoffRecord]:
        """Fail every record older than the handoff timeout."""
        now = self._ts.monotonic()
        failed: list[HandoffRecord] = []
        for record in list(self._records.values()):
            age = record.age(now)
            if age > self._handoff_timeout_s and record.status is not HandoffStatus.COMPLETE:
                logger.warning(
                    "Handoff for %s stalled after %.0fs; marking failed",
                    record.controller_callsign,
                    age,
                )
                await self._finish(record, HandoffStatus.FAILED, "timeout")
                failed.append(record)
        return failed

    async def _emit(self, record: HandoffRecord, *, reason: Optional[str] = None) -> None:
        if self._bus.closed:
            return
        event = HandoffEvent(
            callsign=record.controller_callsign,
            status=record.status,
            aircraft=list(record.aircraft),
            reason=reason,
            duration_s=max(0.0, record.age(self._ts.monotonic())),
        )
        await self._bus.publish_model(TOPIC_HANDOFF, event)

    async def _send(self, command: Command) -> bool:
        return await self._transport.send(command)


def _field(payload: dict[str, Any], name: str) -> Any:
    """Read *name* from the message top level or its ``data`` object."""
    if name in payload:
        return payload[name]
    data = payload.get("data")
    if isinstance(data, dict):
        return data.get(name)
    return None
