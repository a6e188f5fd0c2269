"""Airport reference points.

VATSIM controller records carry no coordinates, so the local-priority
radius is measured from the home airport's reference point looked up here.
A small table of airports ships with the package (``airports.json``).

Schema
------
Input JSON should be an array of objects with fields:
    - identifier: Airport identifier string (e.g., "KBOS"). Required.
    - lat: Latitude in decimal degrees (float). Required.
    - lon: Longitude in decimal degrees (float). Required.

Entries with missing or invalid fields are ignored. Identifiers are trimmed
and uppercased.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Sequence

__all__ = ["Airport", "DEFAULT_AIRPORTS_PATH", "default_airports", "find_airport", "load_airports_json"]

DEFAULT_AIRPORTS_PATH = Path(__file__).with_name("airports.json")


@dataclass(frozen=True)
class Airport:
    ident: str  # e.g., KBOS
    lat: float
    lon: float


def _coerce_ident(v: object) -> str | None:
    if not isinstance(v, str):
        return None
    s = v.strip().upper()
    return s if s else None


def _coerce_float(v: object) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    try:
        return float(v)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def load_airports_json(path: str | Path) -> list[Airport]:
    """Load airports from a JSON file.

    Accepts a JSON array with objects containing the fields:
        identifier (str), lat (float), lon (float).
    Ignores entries missing fields or with out-of-range coordinates.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    out: list[Airport] = []
    if not isinstance(data, list):
        return out

    for item in data:
        if not isinstance(item, dict):
            continue
        ident = _coerce_ident(item.get("identifier"))
        lat = _coerce_float(item.get("lat"))
        lon = _coerce_float(item.get("lon"))
        if ident is None or lat is None or lon is None:
            continue
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            continue
        out.append(Airport(ident=ident, lat=lat, lon=lon))

    return out


@lru_cache(maxsize=1)
def default_airports() -> tuple[Airport, ...]:
    """The bundled airport table, loaded once."""
    return tuple(load_airports_json(DEFAULT_AIRPORTS_PATH))


def find_airport(code: str, airports: Sequence[Airport] | None = None) -> Airport | None:
    """Look up *code* by ICAO identifier.

    A three-letter code also matches the K-prefixed US identifier
    (``BOS`` -> ``KBOS``), the way VATSIM callsigns abbreviate them.
    """
    wanted = code.strip().upper()
    if not wanted:
        return None
    candidates = {wanted}
    if len(wanted) == 3:
        candidates.add("K" + wanted)
    for ap in default_airports() if airports is None else airports:
        if ap.ident in candidates:
            return ap
    return None
