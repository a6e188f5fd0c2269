"""Command-line interface for the ATC network bridge worker.

The GUI host (out of scope here) launches this worker as a subprocess; the
worker reads settings, environment and flags, then runs
:class:`atcbridge.app.AtcBridge` until interrupted. On POSIX systems
``SIGHUP`` requests a manual reconnect to BeyondATC after the transport has
given up retrying.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from pydantic import ValidationError

from atcbridge import __version__
from atcbridge.app.bridge import AtcBridge
from atcbridge.config import make_runtime_config
from atcbridge.settings.store import SettingsStore

logger = logging.getLogger(__name__)


def _lat_lon(s: str) -> tuple[float, float]:
    try:
        lat, lon = (float(x) for x in s.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError("expected LAT,LON") from None
    return (lat, lon)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments.

    Every override defaults to None so that persisted settings and the
    environment apply unless a flag is given.
    """
    p = argparse.ArgumentParser(
        prog="atcbridge", description="BeyondATC / VATSIM authority bridge"
    )
    p.add_argument("--callsign", default=None, help="Tracked aircraft callsign")
    p.add_argument(
        "--home-airport",
        dest="home_airport",
        default=None,
        help="ICAO code whose controllers get local priority (e.g. KBOS)",
    )
    p.add_argument(
        "--home",
        type=_lat_lon,
        default=None,
        help="Home airport reference point as LAT,LON",
    )
    p.add_argument("--vatsim-url", dest="vatsim_url", default=None, help="VATSIM data feed URL")
    p.add_argument(
        "--beyondatc-url",
        dest="beyondatc_url",
        default=None,
        help="BeyondATC WebSocket URL (default ws://localhost:41716)",
    )
    p.add_argument(
        "--poll-interval",
        dest="poll_interval",
        type=float,
        default=None,
        help="VATSIM poll interval in seconds (default 15)",
    )
    p.add_argument(
        "--range",
        type=float,
        default=None,
        help="General controller range in statute miles (default 400)",
    )
    p.add_argument(
        "--buffer",
        type=float,
        default=None,
        help="Hysteresis buffer in statute miles (default 5)",
    )
    p.add_argument(
        "--log-level",
        dest="log_level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default INFO)",
    )
    p.add_argument(
        "--save-settings",
        dest="save_settings",
        action="store_true",
        help="Persist the effective settings (store, env and flags merged) and exit",
    )
    p.add_argument("--version", action="store_true", help="Print version and exit")
    return p.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> None:
    """Synchronous entrypoint for the bridge CLI."""
    args = parse_args(argv)
    if args.version:
        print(f"atcbridge {__version__}")
        return
    setup_logging(args.log_level)
    try:
        asyncio.run(run_async(argv))
    except KeyboardInterrupt:
        # Ctrl+C before the signal handlers were installed
        pass


async def run_async(argv: list[str] | None = None) -> None:
    """Async entrypoint for programmatic usage/testing."""
    args = parse_args(argv)
    if args.version:
        print(f"atcbridge {__version__}")
        return
    try:
        settings = make_runtime_config(args=args)
    except ValidationError as e:
        raise SystemExit(f"atcbridge: invalid configuration:\n{e}") from None

    if args.save_settings:
        SettingsStore.save(settings)
        logger.info("Settings saved to %s", SettingsStore.settings_path())
        return

    bridge = AtcBridge(settings)
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_requested.set)
        loop.add_signal_handler(signal.SIGTERM, stop_requested.set)
        loop.add_signal_handler(signal.SIGHUP, bridge.reconnect)
    except (NotImplementedError, AttributeError):
        # Windows event loops and platforms without SIGHUP
        logger.debug("Signal handlers unavailable; use Ctrl+C to stop")

    await bridge.start()
    try:
        await stop_requested.wait()
    finally:
        logger.info("Shutting down...")
        await bridge.stop()
