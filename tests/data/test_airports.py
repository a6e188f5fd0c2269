from __future__ import annotations

import json
from pathlib import Path

import pytest

from atcbridge.data.airports import Airport, default_airports, find_airport, load_airports_json


def test_load_skips_bad_entries(tmp_path: Path) -> None:
    p = tmp_path / "airports.json"
    p.write_text(
        json.dumps(
            [
                {"identifier": " kbos ", "lat": 42.3656, "lon": -71.0096},
                {"identifier": "KJFK", "lat": "40.6413", "lon": "-73.7781"},
                {"identifier": "", "lat": 1.0, "lon": 1.0},
                {"identifier": "XBAD", "lat": 91.0, "lon": 0.0},
                {"identifier": "XNUL", "lat": None, "lon": 0.0},
                "KLGA",
            ]
        )
    )
    airports = load_airports_json(p)
    assert [a.ident for a in airports] == ["KBOS", "KJFK"]
    assert airports[1].lat == pytest.approx(40.6413)


def test_load_non_array_is_empty(tmp_path: Path) -> None:
    p = tmp_path / "airports.json"
    p.write_text('{"KBOS": [42.36, -71.0]}')
    assert load_airports_json(p) == []


def test_bundled_table_has_home_airports() -> None:
    table = default_airports()
    assert table
    assert all(-90.0 <= a.lat <= 90.0 and -180.0 <= a.lon <= 180.0 for a in table)
    kbos = find_airport("kbos")
    assert kbos is not None and kbos.lat == pytest.approx(42.3656)


def test_find_airport_three_letter_form() -> None:
    airports = [Airport("KBOS", 42.3656, -71.0096), Airport("EGLL", 51.47, -0.4543)]
    assert find_airport("BOS", airports) == airports[0]
    assert find_airport("egll", airports) == airports[1]
    assert find_airport("ZZZZ", airports) is None
    assert find_airport("  ", airports) is None
