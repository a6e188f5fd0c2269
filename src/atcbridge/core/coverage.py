"""Coverage resolution: which VATSIM controller, if any, should own the aircraft.

Selection happens in two passes. Controllers belonging to the home airport
win inside the local radius, ranked Tower > Approach > Center > other.
Outside it the nearest positioned controller wins. The range decision then
applies a hysteresis band so that an aircraft hovering near a range edge
does not flap between backends:

    distance <= max_range                 -> may switch in to VATSIM
    max_range < distance <= max + buffer  -> keep the holder while it is online
    distance > max_range + buffer         -> switch out to BeyondATC

Example:

    resolver = CoverageResolver(home_airport="KBOS")
    decision = resolver.evaluate(aircraft, snapshot, state.snapshot())
    if decision.kind is DecisionKind.TO_VATSIM:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from atcbridge.core.authority import AuthoritySnapshot
from atcbridge.core.geo import distance_sm
from atcbridge.core.models import (
    Controller,
    CoverageSnapshot,
    Position,
    PositionType,
    TrackedAircraft,
)
from atcbridge.data.airports import find_airport

__all__ = [
    "LOCAL_PRIORITY_RADIUS_SM",
    "DEFAULT_GENERAL_RANGE_SM",
    "HYSTERESIS_BUFFER_SM",
    "DecisionKind",
    "Resolution",
    "Decision",
    "CoverageResolver",
]

logger = logging.getLogger(__name__)

LOCAL_PRIORITY_RADIUS_SM = 50.0
DEFAULT_GENERAL_RANGE_SM = 400.0
HYSTERESIS_BUFFER_SM = 5.0

# Lower ranks first; everything else shares the last rank.
_LOCAL_PRECEDENCE = {
    PositionType.TOWER: 0,
    PositionType.APPROACH: 1,
    PositionType.CENTER: 2,
}
_OTHER_RANK = 3


class DecisionKind(str, Enum):
    STAY = "stay"
    TO_VATSIM = "to_vatsim"
    TO_BEYONDATC = "to_beyondatc"


@dataclass(slots=True, frozen=True)
class Resolution:
    controller: Controller
    distance_sm: float
    local_priority: bool
    max_range_sm: float


@dataclass(slots=True, frozen=True)
class Decision:
    kind: DecisionKind
    resolution: Optional[Resolution]
    reason: str

    @property
    def controller(self) -> Optional[Controller]:
        return self.resolution.controller if self.resolution else None


class CoverageResolver:
    """Select the controlling VATSIM position for the tracked aircraft.

    Parameters
    ----------
    home_airport:
        ICAO code of the aircraft's home airport (e.g. ``KBOS``).
    home_position:
        Reference point for the local radius. When omitted it is looked up
        in the bundled airport table, and failing that the first
        local-priority controller with coordinates is used.
    local_radius_sm, general_range_sm, buffer_sm:
        Range thresholds in statute miles.
    """

    def __init__(
        self,
        *,
        home_airport: str,
        home_position: Position | None = None,
        local_radius_sm: float = LOCAL_PRIORITY_RADIUS_SM,
        general_range_sm: float = DEFAULT_GENERAL_RANGE_SM,
        buffer_sm: float = HYSTERESIS_BUFFER_SM,
    ) -> None:
        code = home_airport.strip().upper()
        self._home_airport = code
        self._home_codes = {code}
        # VATSIM callsigns drop the ICAO region letter (KBOS -> BOS_TWR).
        if len(code) == 4 and code[0] in "KCP":
            self._home_codes.add(code[1:])
        if home_position is None:
            airport = find_airport(code)
            if airport is not None:
                home_position = Position(latitude=airport.lat, longitude=airport.lon)
            else:
                logger.warning(
                    "No reference point for home airport %s; local priority waits for a "
                    "home controller that reports coordinates (set home_lat/home_lon)",
                    code,
                )
        self._home_position = home_position
        self._local_radius_sm = float(local_radius_sm)
        self._general_range_sm = float(general_range_sm)
        self._buffer_sm = float(buffer_sm)

    @property
    def home_airport(self) -> str:
        return self._home_airport

    @property
    def buffer_sm(self) -> float:
        return self._buffer_sm

    @property
    def home_position(self) -> Position | None:
        return self._home_position

    def is_local_priority(self, controller: Controller) -> bool:
        return controller.airport in self._home_codes

    def home_reference(self, local: Sequence[Controller]) -> Position | None:
        if self._home_position is not None:
            return self._home_position
        for c in local:
            if c.position is not None:
                return c.position
        return None

    def resolve(
        self,
        aircraft: TrackedAircraft,
        snapshot: CoverageSnapshot,
        current: AuthoritySnapshot,
    ) -> Resolution | None:
        """Pick the controller that should hold authority, or None."""
        if aircraft.position is None:
            return None
        here = aircraft.position

        local: list[Controller] = []
        general: list[Controller] = []
        for c in snapshot.controllers:
            if self.is_local_priority(c):
                local.append(c)
            elif c.position is not None:
                general.append(c)

        home = self.home_reference(local)
        if local and home is not None:
            home_distance = distance_sm(here, home)
            radius = self._local_radius_sm
            holder = current.controller if current.is_vatsim else None
            if (
                holder is not None
                and self.is_local_priority(holder)
                and snapshot.controller(holder.callsign) is not None
            ):
                radius += self._buffer_sm
            if home_distance <= radius:
                best = min(
                    enumerate(local),
                    key=lambda ic: (_LOCAL_PRECEDENCE.get(ic[1].position_type, _OTHER_RANK), ic[0]),
                )[1]
                return Resolution(best, home_distance, True, self._local_radius_sm)

        nearest: Controller | None = None
        nearest_d = float("inf")
        for c in general:
            assert c.position is not None
            d = distance_sm(here, c.position)
            # Strict comparison keeps the first controller on ties.
            if d < nearest_d:
                nearest, nearest_d = c, d
        if nearest is None:
            return None
        return Resolution(nearest, nearest_d, False, self._general_range_sm)

    def decide(
        self,
        resolution: Resolution | None,
        current: AuthoritySnapshot,
        *,
        holder_online: bool = True,
    ) -> Decision:
        """Apply the range thresholds and dead zone to a resolution.

        The dead zone only protects a VATSIM holder that is still online;
        once it has left the network the resolution must be within
        ``max_range`` to keep VATSIM authority.
        """
        if resolution is None:
            if current.is_vatsim:
                return Decision(DecisionKind.TO_BEYONDATC, None, "no controller")
            return Decision(DecisionKind.STAY, None, "no controller")

        d = resolution.distance_sm
        max_range = resolution.max_range_sm
        if not current.is_vatsim:
            if d <= max_range:
                return Decision(DecisionKind.TO_VATSIM, resolution, "in range")
            return Decision(DecisionKind.STAY, resolution, "out of range")

        if not holder_online:
            if d <= max_range:
                return Decision(DecisionKind.TO_VATSIM, resolution, "holder offline")
            return Decision(DecisionKind.TO_BEYONDATC, resolution, "holder offline")
        if d > max_range + self._buffer_sm:
            return Decision(DecisionKind.TO_BEYONDATC, resolution, "beyond buffer")
        holder = current.controller
        if (
            holder is not None
            and resolution.controller.callsign != holder.callsign
            and d <= max_range
        ):
            return Decision(DecisionKind.TO_VATSIM, resolution, "new controller")
        if d > max_range:
            return Decision(DecisionKind.STAY, resolution, "dead zone")
        return Decision(DecisionKind.STAY, resolution, "in range")

    def evaluate(
        self,
        aircraft: TrackedAircraft,
        snapshot: CoverageSnapshot,
        current: AuthoritySnapshot,
    ) -> Decision:
        holder = current.controller
        holder_online = holder is None or snapshot.controller(holder.callsign) is not None
        return self.decide(
            self.resolve(aircraft, snapshot, current), current, holder_online=holder_online
        )
