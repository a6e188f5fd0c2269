"""Pydantic model for bridge settings."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator


class BridgeSettings(BaseModel):
    """Bridge settings persisted to disk.

    Parameters
    ----------
    aircraft_callsign: Callsign of the single tracked aircraft.
    home_airport: ICAO code whose controllers get local priority.
    home_lat, home_lon: Optional reference point for the local radius. When
        unset the first home-airport controller with coordinates is used.
    local_radius_sm: Local-priority radius in statute miles.
    general_range_sm: Range for any other controller in statute miles.
    hysteresis_buffer_sm: Guard band added before authority returns to
        BeyondATC.
    poll_interval_s: VATSIM poll interval in seconds.
    """

    aircraft_callsign: str = Field(default="N9632J")
    home_airport: str = Field(default="KBOS")
    home_lat: float | None = Field(default=None, ge=-90.0, le=90.0)
    home_lon: float | None = Field(default=None, ge=-180.0, le=180.0)

    local_radius_sm: float = Field(default=50.0, gt=0.0)
    general_range_sm: float = Field(default=400.0, gt=0.0)
    hysteresis_buffer_sm: float = Field(default=5.0, ge=0.0)

    vatsim_url: str = Field(default="https://data.vatsim.net/v3/vatsim-data.json")
    poll_interval_s: float = Field(default=15.0, gt=0.0)
    http_timeout_s: float = Field(default=10.0, gt=0.0)

    beyondatc_url: str = Field(default="ws://localhost:41716")
    beyondatc_ptt_key: str = Field(default="ralt")
    vatsim_ptt_key: str = Field(default="lalt")
    max_reconnect_attempts: int = Field(default=5, ge=0)

    handoff_timeout_s: float = Field(default=300.0, gt=0.0)
    handoff_sweep_interval_s: float = Field(default=30.0, gt=0.0)
    coverage_query_timeout_s: float = Field(default=5.0, gt=0.0)

    @field_validator("aircraft_callsign", "home_airport")
    @classmethod
    def _upper(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("beyondatc_url")
    @classmethod
    def _ws_scheme(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("beyondatc_url must be a ws:// or wss:// URL")
        return v

    @model_validator(mode="after")
    def _home_pair(self) -> "BridgeSettings":
        if (self.home_lat is None) != (self.home_lon is None):
            raise ValueError("home_lat and home_lon must be set together")
        return self
