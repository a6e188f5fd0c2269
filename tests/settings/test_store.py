from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from atcbridge.settings.schema import BridgeSettings
from atcbridge.settings.store import SettingsStore


def test_load_defaults(bridge_home: Path) -> None:
    s = SettingsStore.load()
    assert isinstance(s, BridgeSettings)
    assert s.aircraft_callsign == "N9632J"
    assert s.home_airport == "KBOS"
    assert s.local_radius_sm == 50.0
    assert s.general_range_sm == 400.0
    assert s.hysteresis_buffer_sm == 5.0
    assert s.beyondatc_url == "ws://localhost:41716"
    assert s.max_reconnect_attempts == 5


def test_roundtrip(bridge_home: Path) -> None:
    s = BridgeSettings(aircraft_callsign="dal123", home_airport="kjfk", general_range_sm=250.0)
    SettingsStore.save(s)
    assert SettingsStore.settings_path() == bridge_home / "settings.json"
    s2 = SettingsStore.load()
    assert s2.aircraft_callsign == "DAL123"
    assert s2.home_airport == "KJFK"
    assert s2.general_range_sm == 250.0
    assert not (bridge_home / "settings.tmp").exists()


def test_corrupt_returns_default(bridge_home: Path) -> None:
    p = SettingsStore.settings_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text("{broken")
    assert SettingsStore.load().home_airport == "KBOS"


def test_invalid_values_return_default(bridge_home: Path) -> None:
    p = SettingsStore.settings_path()
    p.write_text(json.dumps({"general_range_sm": -1, "home_airport": "KLAX"}))
    s = SettingsStore.load()
    assert s.home_airport == "KBOS"
    assert s.general_range_sm == 400.0


def test_home_coordinates_must_be_paired() -> None:
    with pytest.raises(ValidationError):
        BridgeSettings(home_lat=42.36)
    s = BridgeSettings(home_lat=42.36, home_lon=-71.0)
    assert (s.home_lat, s.home_lon) == (42.36, -71.0)


def test_beyondatc_url_must_be_websocket() -> None:
    with pytest.raises(ValidationError):
        BridgeSettings(beyondatc_url="http://localhost:41716")
    assert BridgeSettings(beyondatc_url="wss://example.net/ws").beyondatc_url.startswith("wss")
