"""Domain models shared by the coverage, handoff and transport layers."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Backend(str, Enum):
    """Which backend holds authority over the tracked aircraft."""

    BEYONDATC = "beyondatc"  # simulated controllers, local WebSocket
    VATSIM = "vatsim"  # live human controllers, polled snapshot


class PositionType(str, Enum):
    DELIVERY = "delivery"
    GROUND = "ground"
    TOWER = "tower"
    APPROACH = "approach"
    DEPARTURE = "departure"
    CENTER = "center"
    UNKNOWN = "unknown"


_SUFFIX_TO_POSITION: Dict[str, PositionType] = {
    "DEL": PositionType.DELIVERY,
    "GND": PositionType.GROUND,
    "TWR": PositionType.TOWER,
    "APP": PositionType.APPROACH,
    "DEP": PositionType.DEPARTURE,
    "CTR": PositionType.CENTER,
}


def position_type_for(callsign: str) -> PositionType:
    """Derive the position type from a controller callsign suffix.

    ``KBOS_TWR`` -> tower, ``BOS_APP`` -> approach, ``ZBW_33_CTR`` -> center.
    """
    suffix = callsign.strip().upper().rsplit("_", 1)[-1][-3:]
    return _SUFFIX_TO_POSITION.get(suffix, PositionType.UNKNOWN)


class Position(BaseModel):
    """Immutable position snapshot; replaced wholesale on each update."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    altitude: float = Field(0.0, description="Altitude in feet")
    heading: float = Field(0.0, description="Heading in degrees 0-359")
    groundspeed: float = Field(0.0, description="Ground speed in knots")

    @field_validator("heading")
    @classmethod
    def _normalize_heading(cls, v: float) -> float:
        return float(v) % 360.0


class TrackedAircraft(BaseModel):
    """The single aircraft whose authority is being arbitrated."""

    callsign: str
    position: Optional[Position] = None
    last_update: datetime = Field(default_factory=_utcnow)
    cid: Optional[int] = None
    last_controller_id: Optional[int] = None

    @field_validator("callsign")
    @classmethod
    def _normalize_callsign(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("callsign must not be empty")
        return v

    def with_position(self, position: Position) -> "TrackedAircraft":
        return self.model_copy(update={"position": position, "last_update": _utcnow()})

    def wire(self) -> Dict[str, Any]:
        """Aircraft identity and position as carried in command payloads."""
        out: Dict[str, Any] = {"callsign": self.callsign}
        if self.position is not None:
            out["position"] = self.position.model_dump()
        return out


class Controller(BaseModel):
    """A VATSIM controller as seen in one snapshot."""

    model_config = ConfigDict(frozen=True)

    callsign: str
    frequency: str = ""
    position: Optional[Position] = None
    cid: Optional[int] = None
    facility: Optional[int] = None

    @field_validator("callsign")
    @classmethod
    def _normalize_callsign(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("callsign must not be empty")
        return v

    @property
    def airport(self) -> str:
        """Facility identifier, the callsign segment before the first ``_``."""
        return self.callsign.split("_", 1)[0]

    @property
    def position_type(self) -> PositionType:
        return position_type_for(self.callsign)

    def wire(self) -> Dict[str, Any]:
        return {"callsign": self.callsign, "frequency": self.frequency}


class CoverageSnapshot(BaseModel):
    """One poll's worth of controllers and pilots.

    Controllers are unique by callsign and keep the order they arrived in;
    a later duplicate is dropped.
    """

    controllers: List[Controller] = Field(default_factory=list)
    pilots: List[TrackedAircraft] = Field(default_factory=list)
    fetched_at: datetime = Field(default_factory=_utcnow)
    is_fallback: bool = False

    @field_validator("controllers")
    @classmethod
    def _unique_controllers(cls, v: List[Controller]) -> List[Controller]:
        seen: set[str] = set()
        out: List[Controller] = []
        for c in v:
            if c.callsign in seen:
                continue
            seen.add(c.callsign)
            out.append(c)
        return out

    def controller(self, callsign: str) -> Optional[Controller]:
        cs = callsign.strip().upper()
        for c in self.controllers:
            if c.callsign == cs:
                return c
        return None

    def pilot(self, callsign: str) -> Optional[TrackedAircraft]:
        cs = callsign.strip().upper()
        for p in self.pilots:
            if p.callsign == cs:
                return p
        return None

    def controlled_by(self, controller: Controller) -> List[str]:
        """Callsigns of pilots whose last controller is *controller*."""
        if controller.cid is None:
            return []
        return [p.callsign for p in self.pilots if p.last_controller_id == controller.cid]


class HandoffStatus(str, Enum):
    PREPARING = "preparing"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class HandoffRecord(BaseModel):
    """Progress of one handoff, keyed by controller callsign."""

    controller_callsign: str
    airport: str
    status: HandoffStatus = HandoffStatus.PREPARING
    start_time: float = Field(..., description="Monotonic start time in seconds")
    aircraft: List[Any] = Field(default_factory=list)

    def age(self, now: float) -> float:
        return now - self.start_time


class HandoffEvent(BaseModel):
    """Emitted to observers on every handoff record transition."""

    callsign: str
    status: HandoffStatus
    aircraft: List[Any] = Field(default_factory=list)
    reason: Optional[str] = None
    duration_s: float = 0.0


CommandName = Literal[
    "handoff_to_vatsim",
    "handoff_to_beyondatc",
    "return_aircraft",
    "configure_ptt",
    "check_coverage",
    "prepare_takeover",
    "prepare_handoff",
    "receive_handoff",
]


class Command(BaseModel):
    """Tagged outbound command sent to BeyondATC."""

    command: CommandName
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json()


class AuthorityChange(BaseModel):
    """Published whenever the committed authority changes."""

    backend: Backend
    previous: Backend
    controller: Optional[Controller] = None
    reason: str = ""

    @model_validator(mode="after")
    def _vatsim_needs_controller(self) -> "AuthorityChange":
        if self.backend is Backend.VATSIM and self.controller is None:
            raise ValueError("VATSIM authority requires a controller")
        return self


__all__ = [
    "Backend",
    "PositionType",
    "position_type_for",
    "Position",
    "TrackedAircraft",
    "Controller",
    "CoverageSnapshot",
    "HandoffStatus",
    "HandoffRecord",
    "HandoffEvent",
    "CommandName",
    "Command",
    "AuthorityChange",
]
