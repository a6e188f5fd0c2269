"""BeyondATC transport: WebSocket connection and wire messages."""

from .connection import ConnectionState, TransportConnection, reconnect_delay_ms
from .messages import Inbound, InboundKind, StatusPrefix, classify

__all__ = [
    "ConnectionState",
    "TransportConnection",
    "reconnect_delay_ms",
    "Inbound",
    "InboundKind",
    "StatusPrefix",
    "classify",
]
