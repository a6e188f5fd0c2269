from __future__ import annotations

import json

import pytest

from atcbridge.core.models import Backend, Controller, Position, TrackedAircraft
from atcbridge.transport import messages
from atcbridge.transport.messages import InboundKind, StatusPrefix, classify


@pytest.mark.parametrize(
    "line,prefix,value",
    [
        ("AutoRespond: on", StatusPrefix.AUTO_RESPOND, "on"),
        ("Actions: 3 queued", StatusPrefix.ACTIONS, "3 queued"),
        ("Facility: KBOS", StatusPrefix.FACILITY, "KBOS"),
        ("AutoTune: 118.250", StatusPrefix.AUTO_TUNE, "118.250"),
        ("Connected: true", StatusPrefix.CONNECTED, "true"),
        ("Status: {not json", StatusPrefix.STATUS, "{not json"),
    ],
)
def test_status_lines_are_never_json_parsed(line: str, prefix: StatusPrefix, value: str) -> None:
    inbound = classify(line)
    assert inbound.kind is InboundKind.STATUS
    assert inbound.prefix is prefix
    assert inbound.status_value == value
    assert inbound.payload == {}


def test_structured_message() -> None:
    inbound = classify(b'{"type": "handoff_status", "callsign": "KBOS_TWR"}')
    assert inbound.kind is InboundKind.MESSAGE
    assert inbound.discriminator == "handoff_status"
    assert inbound.payload["callsign"] == "KBOS_TWR"
    assert classify('{"command": "ptt_state"}').discriminator == "ptt_state"


@pytest.mark.parametrize(
    "raw",
    [
        "hello there",
        "[1, 2, 3]",
        '{"data": {}}',
        '{"type": null}',
        b"\xff\xfe\x00",
        "",
    ],
)
def test_malformed_frames(raw: str | bytes) -> None:
    inbound = classify(raw)
    assert inbound.kind is InboundKind.MALFORMED
    assert inbound.error


def test_prefix_must_lead_the_line() -> None:
    assert classify("Current Status: ok").kind is InboundKind.MALFORMED


# Outbound ------------------------------------------------------------------------

AC = TrackedAircraft(
    callsign="n9632j", position=Position(latitude=42.4, longitude=-71.05, altitude=3000)
)
TWR = Controller(callsign="KBOS_TWR", frequency="128.800")


def test_handoff_to_vatsim_payload() -> None:
    cmd = messages.handoff_to_vatsim(AC, TWR)
    wire = json.loads(cmd.to_json())
    assert wire["command"] == "handoff_to_vatsim"
    aircraft = wire["data"]["aircraft"]
    assert aircraft["callsign"] == "N9632J"
    assert aircraft["position"]["altitude"] == 3000
    assert aircraft["controller"] == {"callsign": "KBOS_TWR", "frequency": "128.800"}


def test_handoff_to_beyondatc_and_return_aircraft() -> None:
    assert messages.handoff_to_beyondatc(AC).data == {"aircraft": AC.wire()}
    cmd = messages.return_aircraft(iter(["DAL123", "JBU9"]))
    assert cmd.data == {"aircraft": ["DAL123", "JBU9"]}


def test_configure_ptt_selects_active_key() -> None:
    cmd = messages.configure_ptt(Backend.VATSIM, beyondatc_key="ralt", vatsim_key="lalt")
    assert cmd.data["active"] == "vatsim"
    assert cmd.data["ptt_key"] == "lalt"
    assert "aircraft" not in cmd.data
    cmd = messages.configure_ptt(
        Backend.BEYONDATC, beyondatc_key="ralt", vatsim_key="lalt", aircraft=AC
    )
    assert cmd.data["ptt_key"] == "ralt"
    assert cmd.data["aircraft"]["callsign"] == "N9632J"


def test_coverage_and_takeover_commands() -> None:
    cmd = messages.check_coverage("KBOS", "tower", "abc123")
    assert cmd.data == {"airport": "KBOS", "position": "tower", "request_id": "abc123"}
    cmd = messages.prepare_takeover("KBOS", "tower", "VATSIM coverage lost")
    assert cmd.command == "prepare_takeover"
    assert cmd.data["reason"] == "VATSIM coverage lost"


def test_prepare_and_receive_handoff() -> None:
    app = Controller(callsign="BOS_APP", frequency="120.600")
    prep = messages.prepare_handoff(app, AC)
    assert prep.data["airport"] == "BOS"
    assert prep.data["position"] == "approach"
    assert prep.data["target"] == "VATSIM"
    recv = messages.receive_handoff(app, [AC.wire()])
    assert recv.data["source"] == "VATSIM"
    assert recv.data["callsign"] == "BOS_APP"
    assert recv.data["aircraft"][0]["callsign"] == "N9632J"
