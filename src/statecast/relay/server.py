"""WebSocket bridge that puts remote peers on a :class:`Relay`.

Peers speak :class:`~statecast.core.messages.RelayFrame` JSON::

    {"type": "subscribe",   "topic": "machine:app:snapshot"}
    {"type": "publish",     "topic": "machine:app:events", "data": {...}}
    {"type": "unsubscribe", "topic": "machine:app:snapshot"}

A ``subscribe`` frame attaches a relay subscription on the peer's behalf,
so the retained payload (if any) is the first frame the peer receives.
Relay deliveries are pushed back as ``publish`` frames.  When a peer
disconnects all of its subscriptions are detached.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from statecast.core.config import DEFAULT_RELAY_HOST, DEFAULT_RELAY_PORT
from statecast.core.errors import TransportFailure
from statecast.core.messages import RelayFrame, deserialize_frame, serialize_frame
from statecast.relay.hub import Relay, Unsubscribe

logger = logging.getLogger(__name__)


class _PeerSession:
    """Per-connection subscriptions and an ordered outbound queue."""

    def __init__(self, websocket: Any, loop: asyncio.AbstractEventLoop) -> None:
        self.websocket = websocket
        self.loop = loop
        self.name = f"peer-{id(websocket):x}"
        self.subscriptions: dict[str, Unsubscribe] = {}
        self.outbox: asyncio.Queue[str] = asyncio.Queue()

    def deliver(self, topic: str, data: Any) -> None:
        # Called by the relay, possibly from another thread.
        text = serialize_frame(RelayFrame(type="publish", topic=topic, data=data))
        self.loop.call_soon_threadsafe(self.outbox.put_nowait, text)

    async def pump(self) -> None:
        while True:
            text = await self.outbox.get()
            await self.websocket.send(text)

    def detach_all(self) -> None:
        for unsubscribe in self.subscriptions.values():
            unsubscribe()
        self.subscriptions.clear()


class RelayServer:
    """WebSocket server bridging remote peers onto an in-process relay."""

    def __init__(
        self,
        relay: Relay,
        host: str = DEFAULT_RELAY_HOST,
        port: int = DEFAULT_RELAY_PORT,
    ) -> None:
        self.relay = relay
        self.host = host
        self.port = port
        self._peers: set[_PeerSession] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._server: Any = None

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def peer_count(self) -> int:
        return len(self._peers)

    async def start(self) -> None:
        """Start listening.  With ``port=0`` the bound port is stored in ``self.port``."""
        import websockets

        self._loop = asyncio.get_running_loop()
        self._server = await websockets.serve(self._handle_peer, self.host, self.port)
        sockets = getattr(self._server, "sockets", None) or ()
        for sock in sockets:
            self.port = sock.getsockname()[1]
            break
        logger.info("statecast relay: %s", self.url)

    async def run_forever(self) -> None:
        """Start and run until cancelled."""
        await self.start()
        try:
            await asyncio.Future()  # block forever
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def inject(self, channel: str, payload: Any) -> None:
        """Thread-safe: publish on the relay from a non-async context."""
        if self._loop is None or not self._loop.is_running():
            self.relay.publish(channel, payload)
            return
        self._loop.call_soon_threadsafe(self.relay.publish, channel, payload)

    async def _handle_peer(self, websocket: Any, path: Any = None) -> None:  # noqa: ARG002
        import websockets

        peer = _PeerSession(websocket, asyncio.get_running_loop())
        self._peers.add(peer)
        pump = asyncio.ensure_future(peer.pump())
        logger.info("%s connected", peer.name)
        try:
            async for raw in websocket:
                self._handle_frame(peer, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            peer.detach_all()
            pump.cancel()
            self._peers.discard(peer)
            logger.info("%s disconnected", peer.name)

    def _handle_frame(self, peer: _PeerSession, raw: str | bytes) -> None:
        try:
            frame = deserialize_frame(raw)
        except TransportFailure as exc:
            logger.warning("%s: %s", peer.name, exc)
            return

        if frame.type == "publish":
            self.relay.publish(frame.topic, frame.data)
        elif frame.type == "subscribe":
            if frame.topic not in peer.subscriptions:
                peer.subscriptions[frame.topic] = self.relay.subscribe(
                    frame.topic,
                    lambda data, topic=frame.topic: peer.deliver(topic, data),
                )
        else:
            unsubscribe = peer.subscriptions.pop(frame.topic, None)
            if unsubscribe is not None:
                unsubscribe()


def start_relay_thread(
    relay: Relay,
    host: str = DEFAULT_RELAY_HOST,
    port: int = DEFAULT_RELAY_PORT,
) -> RelayServer:
    """Start the WebSocket bridge in a daemon thread.  Returns the ``RelayServer`` instance."""
    server = RelayServer(relay, host, port)
    ready = threading.Event()

    def _run() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        loop.run_until_complete(server.start())
        ready.set()
        loop.run_forever()

    t = threading.Thread(target=_run, name="statecast-relay", daemon=True)
    t.start()
    ready.wait(timeout=5.0)
    return server
