"""Client-side transport that reaches a relay over a WebSocket.

:class:`WebSocketTransport` satisfies the same ``publish``/``subscribe``
protocol as the in-process :class:`~statecast.relay.hub.Relay`, so a
:class:`~statecast.client.sync.SyncClient` or an adapter can run in a
different process from the relay without changes.

Outgoing frames are queued in call order and sent by a single task.
Incoming ``publish`` frames are delivered to local handlers synchronously
on the event loop, one frame at a time, so per-topic order is preserved.
Subscriptions may be registered before :meth:`connect`; their frames are
sent once the connection is up.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from statecast.core.errors import TransportFailure
from statecast.core.messages import RelayFrame, deserialize_frame, serialize_frame

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class WebSocketTransport:
    """Publish/subscribe over a WebSocket connection to a ``RelayServer``."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._handlers: dict[str, list[Handler]] = {}
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: Any = None
        self._tasks: list[asyncio.Task] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection and start the send and receive tasks."""
        import websockets

        self._loop = asyncio.get_running_loop()
        self._ws = await websockets.connect(self.url)
        self._tasks = [
            asyncio.ensure_future(self._send_loop()),
            asyncio.ensure_future(self._receive_loop()),
        ]
        logger.info("connected to %s", self.url)

    async def close(self) -> None:
        """Flush queued frames, then close the connection."""
        if self._ws is None:
            return
        try:
            await asyncio.wait_for(self._flush(), timeout=2.0)
        except asyncio.TimeoutError:
            logger.warning("closing %s with unsent frames", self.url)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._ws.close()
        self._ws = None

    async def wait_closed(self) -> None:
        """Block until the relay closes the connection."""
        if self._tasks:
            await asyncio.gather(self._tasks[1], return_exceptions=True)

    async def __aenter__(self) -> WebSocketTransport:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transport protocol
    # ------------------------------------------------------------------

    def publish(self, topic: str, data: Any) -> None:
        self._enqueue(RelayFrame(type="publish", topic=topic, data=data))

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        handlers = self._handlers.setdefault(topic, [])
        handlers.append(handler)
        if len(handlers) == 1:
            self._enqueue(RelayFrame(type="subscribe", topic=topic))

        def unsubscribe() -> None:
            current = self._handlers.get(topic)
            if current is None or handler not in current:
                return
            current.remove(handler)
            if not current:
                del self._handlers[topic]
                self._enqueue(RelayFrame(type="unsubscribe", topic=topic))

        return unsubscribe

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enqueue(self, frame: RelayFrame) -> None:
        text = serialize_frame(frame)
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._outbox.put_nowait, text)
        else:
            self._outbox.put_nowait(text)

    async def _flush(self) -> None:
        # Let pending call_soon_threadsafe puts land first.
        await asyncio.sleep(0)
        await self._outbox.join()

    async def _send_loop(self) -> None:
        while True:
            text = await self._outbox.get()
            try:
                await self._ws.send(text)
            finally:
                self._outbox.task_done()

    async def _receive_loop(self) -> None:
        import websockets

        try:
            async for raw in self._ws:
                self._dispatch(raw)
        except websockets.ConnectionClosed:
            logger.info("connection to %s closed", self.url)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            frame = deserialize_frame(raw)
        except TransportFailure as exc:
            logger.warning("dropping frame from %s: %s", self.url, exc)
            return
        if frame.type != "publish":
            logger.debug("ignoring %s frame from relay", frame.type)
            return
        for handler in list(self._handlers.get(frame.topic, ())):
            try:
                handler(frame.data)
            except Exception:
                logger.exception("transport handler error on topic %s", frame.topic)
