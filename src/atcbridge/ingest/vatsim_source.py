"""
VATSIM data polling source.

Fetches the VATSIM network data feed on a fixed interval, validates it into
a :class:`CoverageSnapshot` and publishes it on the bus (default topic
``vatsim.snapshot``). Any failure (network, timeout, HTTP status, malformed
body) is replaced by the built-in fallback snapshot so the downstream
pipeline is fed every interval; nothing here raises out of the loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp

from atcbridge.core.events import TOPIC_SNAPSHOT, EventBus
from atcbridge.core.models import Controller, CoverageSnapshot, Position, TrackedAircraft
from atcbridge.core.time import RealTimeSource, TimeSource

__all__ = [
    "DEFAULT_URL",
    "SnapshotFormatError",
    "VatsimDataSource",
    "fallback_snapshot",
    "parse_snapshot",
]

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://data.vatsim.net/v3/vatsim-data.json"


class SnapshotFormatError(ValueError):
    """The feed body is not a usable controllers/pilots document."""


def _coerce_float(v: Any) -> Optional[float]:
    try:
        if v is None or isinstance(v, bool):
            return None
        return float(v)
    except (TypeError, ValueError):
        return None


def _coerce_int(v: Any) -> Optional[int]:
    try:
        if v is None or isinstance(v, bool):
            return None
        return int(v)
    except (TypeError, ValueError):
        return None


def _position_from(entry: dict[str, Any]) -> Optional[Position]:
    lat = _coerce_float(entry.get("latitude"))
    lon = _coerce_float(entry.get("longitude"))
    if lat is None or lon is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return Position(
        latitude=lat,
        longitude=lon,
        altitude=_coerce_float(entry.get("altitude")) or 0.0,
        heading=_coerce_float(entry.get("heading")) or 0.0,
        groundspeed=_coerce_float(entry.get("groundspeed")) or 0.0,
    )


def _callsign(entry: dict[str, Any]) -> Optional[str]:
    raw = entry.get("callsign")
    if isinstance(raw, str) and raw.strip():
        return raw.strip().upper()
    return None


def fallback_snapshot() -> CoverageSnapshot:
    """Synthetic snapshot used whenever the feed cannot be used.

    It carries no controllers and no pilots, so the tracked aircraft keeps
    its last known position and authority is left as committed.
    """
    return CoverageSnapshot(controllers=[], pilots=[], is_fallback=True)


def parse_snapshot(data: Any, *, fetched_at: datetime | None = None) -> CoverageSnapshot:
    """Validate a decoded feed body into a snapshot.

    Raises:
        SnapshotFormatError: when the body is not an object or either
            ``controllers`` or ``pilots`` is missing or not an array.
    """
    if not isinstance(data, dict):
        raise SnapshotFormatError("payload is not an object")
    raw_controllers = data.get("controllers")
    raw_pilots = data.get("pilots")
    if not isinstance(raw_controllers, list):
        raise SnapshotFormatError("missing 'controllers' array")
    if not isinstance(raw_pilots, list):
        raise SnapshotFormatError("missing 'pilots' array")

    controllers: list[Controller] = []
    for entry in raw_controllers:
        if not isinstance(entry, dict):
            continue
        cs = _callsign(entry)
        if cs is None:
            continue
        freq = entry.get("frequency")
        controllers.append(
            Controller(
                callsign=cs,
                frequency=str(freq) if freq is not None else "",
                position=_position_from(entry),
                cid=_coerce_int(entry.get("cid")),
                facility=_coerce_int(entry.get("facility")),
            )
        )

    pilots: list[TrackedAircraft] = []
    for entry in raw_pilots:
        if not isinstance(entry, dict):
            continue
        cs = _callsign(entry)
        if cs is None:
            continue
        pilots.append(
            TrackedAircraft(
                callsign=cs,
                position=_position_from(entry),
                cid=_coerce_int(entry.get("cid")),
                last_controller_id=_coerce_int(entry.get("last_controller_id")),
                last_update=fetched_at or datetime.now(timezone.utc),
            )
        )

    return CoverageSnapshot(
        controllers=controllers,
        pilots=pilots,
        fetched_at=fetched_at or datetime.now(timezone.utc),
    )


@dataclass(slots=True)
class _CacheState:
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    snapshot: Optional[CoverageSnapshot] = None


class VatsimDataSource:
    """Periodically polls the VATSIM feed and publishes snapshots."""

    def __init__(
        self,
        url: str = DEFAULT_URL,
        *,
        bus: EventBus,
        ts: TimeSource | None = None,
        interval_s: float = 15.0,
        timeout_s: float = 10.0,
        topic: str = TOPIC_SNAPSHOT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._url = url
        self._bus = bus
        self._ts = ts or RealTimeSource()
        self._interval = max(0.1, float(interval_s))
        self._timeout_s = float(timeout_s)
        self._topic = topic

        self._ext_session = session
        self._session: Optional[aiohttp.ClientSession] = None
        self._running = False
        self._stop_event = asyncio.Event()
        # Serializes fetches; a slow poll delays the next one, never overlaps it.
        self._lock = asyncio.Lock()
        self._cache = _CacheState()

        self._consec_errors = 0
        self.polls = 0
        self.fallbacks = 0

    @property
    def interval_s(self) -> float:
        return self._interval

    async def run(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        if self._ext_session is not None:
            self._session = self._ext_session
        else:
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        try:
            await self._polling_loop()
        finally:
            if self._ext_session is None and self._session is not None:
                await self._session.close()
            self._session = None
            self._running = False

    async def stop(self) -> None:
        """Signal the polling loop to stop after the current fetch."""
        self._stop_event.set()

    async def _polling_loop(self) -> None:
        next_due = self._ts.monotonic()
        while not self._stop_event.is_set():
            await self.poll_once()
            next_due += self._interval
            delay = next_due - self._ts.monotonic()
            if delay < 0:
                # The fetch overran its slot; start the next one straight away.
                logger.debug("VATSIM poll overran interval by %.2fs", -delay)
                next_due = self._ts.monotonic()
                delay = 0.0
            await self._sleep(delay)

    async def _sleep(self, delay: float) -> None:
        sleeper = asyncio.create_task(self._ts.sleep(delay))
        stopper = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (sleeper, stopper):
                if not t.done():
                    t.cancel()
            await asyncio.gather(sleeper, stopper, return_exceptions=True)

    async def poll_once(self) -> CoverageSnapshot:
        """Fetch, validate and publish one snapshot (fallback on failure)."""
        async with self._lock:
            snapshot = await self._fetch()
            self.polls += 1
            if not self._bus.closed:
                await self._bus.publish_model(self._topic, snapshot)
            return snapshot

    async def _fetch(self) -> CoverageSnapshot:
        owned: Optional[aiohttp.ClientSession] = None
        session = self._session
        if session is None:
            owned = session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s)
            )
        try:
            snapshot = await self._fetch_with(session)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._consec_errors += 1
            self.fallbacks += 1
            logger.warning(
                "VATSIM fetch failed (url=%s): %s; using fallback snapshot",
                self._url,
                e or e.__class__.__name__,
            )
            if self._consec_errors in {10, 30, 60}:
                logger.error(
                    "VATSIM feed still failing (%d consecutive, last=%s)",
                    self._consec_errors,
                    e.__class__.__name__,
                )
            return fallback_snapshot()
        finally:
            if owned is not None:
                await owned.close()

        if self._consec_errors:
            logger.info(
                "VATSIM poll recovered after %d consecutive errors", self._consec_errors
            )
        self._consec_errors = 0
        return snapshot

    async def _fetch_with(self, session: aiohttp.ClientSession) -> CoverageSnapshot:
        headers: dict[str, str] = {}
        if self._cache.snapshot is not None:
            if self._cache.etag:
                headers["If-None-Match"] = self._cache.etag
            if self._cache.last_modified:
                headers["If-Modified-Since"] = self._cache.last_modified

        timeout = aiohttp.ClientTimeout(total=self._timeout_s)
        async with session.get(self._url, headers=headers, timeout=timeout) as resp:
            if resp.status == 304 and self._cache.snapshot is not None:
                logger.debug("VATSIM feed not modified")
                return self._cache.snapshot
            resp.raise_for_status()
            text = await resp.text()

            snapshot = parse_snapshot(json.loads(text))
            self._cache.etag = resp.headers.get("ETag")
            self._cache.last_modified = resp.headers.get("Last-Modified")
            self._cache.snapshot = snapshot
            logger.debug(
                "VATSIM snapshot: %d controllers, %d pilots",
                len(snapshot.controllers),
                len(snapshot.pilots),
            )
            return snapshot
