"""Runtime configuration helpers.

Builds the effective :class:`BridgeSettings` from three layers, later ones
winning:

1. persisted settings (``SettingsStore.load()``, defaults on error),
2. the legacy ``.env`` environment keys (``HOME_AIRPORT``, ``BEYOND_ATC_PORT``, ...),
3. CLI overrides passed as an argparse.Namespace-like object.

Invalid environment values are logged and skipped; invalid CLI values raise
``pydantic.ValidationError`` so the caller can report them.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Mapping, Optional

from .settings.schema import BridgeSettings
from .settings.store import SettingsStore

logger = logging.getLogger(__name__)


def _port_url(v: str) -> str:
    port = int(v)
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")
    return f"ws://localhost:{port}"


# env key -> (settings field, converter)
ENV_KEYS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "CURRENT_AIRCRAFT_CALLSIGN": ("aircraft_callsign", str),
    "HOME_AIRPORT": ("home_airport", str),
    "VATSIM_API_URL": ("vatsim_url", str),
    "VATSIM_POLL_INTERVAL": ("poll_interval_s", lambda v: float(v) / 1000.0),
    "HANDOFF_BUFFER_MILES": ("hysteresis_buffer_sm", float),
    "BEYOND_ATC_PORT": ("beyondatc_url", _port_url),
    "BEYOND_ATC_PTT_KEY": ("beyondatc_ptt_key", str),
    "VATSIM_PTT_KEY": ("vatsim_ptt_key", str),
}

# CLI attribute -> settings field
CLI_KEYS: dict[str, str] = {
    "callsign": "aircraft_callsign",
    "home_airport": "home_airport",
    "vatsim_url": "vatsim_url",
    "beyondatc_url": "beyondatc_url",
    "poll_interval": "poll_interval_s",
    "range": "general_range_sm",
    "buffer": "hysteresis_buffer_sm",
}


def apply_env(
    settings: BridgeSettings, env: Optional[Mapping[str, str]] = None
) -> BridgeSettings:
    """Overlay recognised environment keys onto *settings*."""
    env = os.environ if env is None else env
    current = settings.model_dump()
    for key, (field, convert) in ENV_KEYS.items():
        raw = env.get(key)
        if raw is None or raw.strip() == "":
            continue
        try:
            candidate = {**current, field: convert(raw.strip())}
            BridgeSettings.model_validate(candidate)
        except ValueError as e:
            # pydantic.ValidationError is a ValueError
            logger.warning("Invalid %s=%r ignored: %s", key, raw, e)
            continue
        current = candidate
    return BridgeSettings.model_validate(current)


def make_runtime_config(
    *,
    args: Optional[object] = None,
    env: Optional[Mapping[str, str]] = None,
    base: Optional[BridgeSettings] = None,
) -> BridgeSettings:
    """Merge persisted settings, environment and CLI overrides."""
    settings = base if base is not None else SettingsStore.load()
    settings = apply_env(settings, env)
    if args is None:
        return settings

    overrides: dict[str, Any] = {}
    for attr, field in CLI_KEYS.items():
        value = getattr(args, attr, None)
        if value is not None:
            overrides[field] = value
    home = getattr(args, "home", None)
    if home is not None:
        overrides["home_lat"], overrides["home_lon"] = home
    if not overrides:
        return settings
    return BridgeSettings.model_validate({**settings.model_dump(), **overrides})
