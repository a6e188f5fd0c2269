"""VATSIM network data ingest."""

from .vatsim_source import SnapshotFormatError, VatsimDataSource, fallback_snapshot, parse_snapshot

__all__ = ["SnapshotFormatError", "VatsimDataSource", "fallback_snapshot", "parse_snapshot"]
