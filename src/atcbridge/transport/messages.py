"""BeyondATC wire messages.

Outbound traffic is always a JSON object ``{"command": ..., "data": {...}}``
built by the helpers below. Inbound traffic arrives on two disjoint
channels:

- status lines such as ``Facility: KBOS`` recognised by a closed set of
  prefixes (:class:`StatusPrefix`); these are never JSON-parsed,
- structured JSON objects carrying a ``type`` or ``command`` discriminator.

Anything else is classified as :attr:`InboundKind.MALFORMED` and the caller
logs and drops it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from atcbridge.core.models import Backend, Command, Controller, TrackedAircraft

__all__ = [
    "StatusPrefix",
    "InboundKind",
    "Inbound",
    "classify",
    "COVERAGE_REPLY_TYPES",
    "handoff_to_vatsim",
    "handoff_to_beyondatc",
    "return_aircraft",
    "configure_ptt",
    "check_coverage",
    "prepare_takeover",
    "prepare_handoff",
    "receive_handoff",
]


class StatusPrefix(str, Enum):
    AUTO_RESPOND = "AutoRespond:"
    ACTIONS = "Actions:"
    FACILITY = "Facility:"
    AUTO_TUNE = "AutoTune:"
    CONNECTED = "Connected:"
    STATUS = "Status:"


class InboundKind(str, Enum):
    STATUS = "status"
    MESSAGE = "message"
    MALFORMED = "malformed"


# Discriminators BeyondATC uses when answering a check_coverage query.
COVERAGE_REPLY_TYPES = frozenset({"coverage_status", "check_coverage", "coverage"})


@dataclass(slots=True)
class Inbound:
    kind: InboundKind
    text: str
    prefix: Optional[StatusPrefix] = None
    payload: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def discriminator(self) -> Optional[str]:
        value = self.payload.get("type") or self.payload.get("command")
        return str(value) if value is not None else None

    @property
    def status_value(self) -> str:
        if self.prefix is None:
            return ""
        return self.text[len(self.prefix.value) :].strip()


def classify(raw: str | bytes) -> Inbound:
    """Sort one inbound frame into status, message or malformed."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            return Inbound(InboundKind.MALFORMED, repr(raw[:64]), error=str(e))
    text = raw.strip()

    for prefix in StatusPrefix:
        if text.startswith(prefix.value):
            return Inbound(InboundKind.STATUS, text, prefix=prefix)

    try:
        obj = json.loads(text)
    except ValueError as e:
        return Inbound(InboundKind.MALFORMED, text, error=f"not JSON: {e}")
    if not isinstance(obj, dict):
        return Inbound(InboundKind.MALFORMED, text, error="JSON is not an object")
    if obj.get("type") is None and obj.get("command") is None:
        return Inbound(InboundKind.MALFORMED, text, error="missing type/command")
    return Inbound(InboundKind.MESSAGE, text, payload=obj)


# Outbound builders -----------------------------------------------------------


def handoff_to_vatsim(aircraft: TrackedAircraft, controller: Controller) -> Command:
    return Command(
        command="handoff_to_vatsim",
        data={"aircraft": {**aircraft.wire(), "controller": controller.wire()}},
    )


def handoff_to_beyondatc(aircraft: TrackedAircraft) -> Command:
    return Command(command="handoff_to_beyondatc", data={"aircraft": aircraft.wire()})


def return_aircraft(callsigns: Iterable[str]) -> Command:
    return Command(command="return_aircraft", data={"aircraft": list(callsigns)})


def configure_ptt(
    active: Backend,
    *,
    beyondatc_key: str,
    vatsim_key: str,
    aircraft: TrackedAircraft | None = None,
) -> Command:
    """Push-to-talk routing for the backend that now holds authority."""
    data: dict[str, Any] = {
        "active": active.value,
        "ptt_key": beyondatc_key if active is Backend.BEYONDATC else vatsim_key,
        "keys": {Backend.BEYONDATC.value: beyondatc_key, Backend.VATSIM.value: vatsim_key},
    }
    if aircraft is not None:
        data["aircraft"] = aircraft.wire()
    return Command(command="configure_ptt", data=data)


def check_coverage(airport: str, position: str, request_id: str) -> Command:
    return Command(
        command="check_coverage",
        data={"airport": airport, "position": position, "request_id": request_id},
    )


def prepare_takeover(airport: str, position: str, reason: str) -> Command:
    return Command(
        command="prepare_takeover",
        data={"airport": airport, "position": position, "reason": reason},
    )


def prepare_handoff(
    controller: Controller, aircraft: TrackedAircraft, target: Backend = Backend.VATSIM
) -> Command:
    return Command(
        command="prepare_handoff",
        data={
            "airport": controller.airport,
            "position": controller.position_type.value,
            "callsign": controller.callsign,
            "target": target.value.upper(),
            "aircraft": aircraft.wire(),
        },
    )


def receive_handoff(controller: Controller, aircraft: list[dict[str, Any]]) -> Command:
    return Command(
        command="receive_handoff",
        data={
            "airport": controller.airport,
            "position": controller.position_type.value,
            "callsign": controller.callsign,
            "aircraft": aircraft,
            "source": Backend.VATSIM.value.upper(),
        },
    )
