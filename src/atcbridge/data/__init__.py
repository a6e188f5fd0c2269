"""Reference data bundled with the bridge.

Currently a small airports table used for the home-airport reference point.
"""

from .airports import Airport, default_airports, find_airport, load_airports_json

__all__ = [
    "Airport",
    "default_airports",
    "find_airport",
    "load_airports_json",
]
