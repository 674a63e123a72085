"""Topic relay with retained snapshots, plus its WebSocket bridge.

The WebSocket pieces need ``websockets`` at runtime; it is imported lazily.
"""

from __future__ import annotations

from statecast.relay.hub import Relay, Transport
from statecast.relay.server import RelayServer, start_relay_thread
from statecast.relay.transport import WebSocketTransport

__all__ = [
    "Relay",
    "RelayServer",
    "Transport",
    "WebSocketTransport",
    "start_relay_thread",
]
