"""In-process publish/subscribe hub with per-channel retention.

The relay keeps the latest payload of every retained channel and replays it
to late subscribers before ``subscribe()`` returns, so a client that
attaches after the host has published never observes an empty channel.

Handlers are fire-and-forget: failures are logged but never raise out of
``publish()`` and never stop delivery to the other handlers.

Delivery is trampolined per thread.  A handler that publishes while it is
being delivered to does not recurse; the nested payload is queued and
delivered after the current one reaches every handler.  That keeps the
per-handler order equal to the publish order.  Every delivery still
completes before the outermost ``publish()`` returns.

Thread-safe: a lock protects the channel maps so the WebSocket bridge
thread and the host thread can coexist.  Handlers run outside the lock.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import Any, Protocol

from statecast.core.channels import DEFAULT_RETAIN_SUFFIXES, is_retained_channel
from statecast.core.ids import generate_relay_id

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]
PeerSend = Callable[[str, Any], None]
Unsubscribe = Callable[[], None]

_MISSING = object()


class Transport(Protocol):
    """The capability the host adapter and the sync client need from a transport."""

    def publish(self, topic: str, data: Any) -> None: ...

    def subscribe(self, topic: str, handler: Handler) -> Unsubscribe: ...


class _Subscription:
    __slots__ = ("channel", "handler", "active")

    def __init__(self, channel: str, handler: Handler) -> None:
        self.channel = channel
        self.handler = handler
        self.active = True


class _Peer:
    __slots__ = ("send", "active")

    def __init__(self, send: PeerSend) -> None:
        self.send = send
        self.active = True


class Relay:
    """Named-channel pub/sub hub.  Construct one per host process (or per test)."""

    def __init__(
        self,
        retain_suffixes: tuple[str, ...] | list[str] = DEFAULT_RETAIN_SUFFIXES,
        relay_id: str | None = None,
    ) -> None:
        self.relay_id = relay_id or generate_relay_id()
        self._retain_suffixes = tuple(retain_suffixes)
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[_Subscription]] = {}
        self._retained: dict[str, Any] = {}
        self._explicit_retained: set[str] = set()
        self._peers: list[_Peer] = []
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def retain(self, channel: str) -> None:
        """Mark *channel* as retained regardless of its name."""
        with self._lock:
            self._explicit_retained.add(channel)

    def is_retained(self, channel: str) -> bool:
        """Return ``True`` if publishes to *channel* are retained."""
        with self._lock:
            explicit = channel in self._explicit_retained
        return explicit or is_retained_channel(channel, self._retain_suffixes)

    def retained(self, channel: str) -> Any:
        """Return the retained payload for *channel*, or ``None``."""
        with self._lock:
            return self._retained.get(channel)

    def clear_retained(self, channel: str) -> None:
        """Forget the retained payload for *channel*."""
        with self._lock:
            self._retained.pop(channel, None)

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    def publish(self, channel: str, payload: Any) -> None:
        """Retain (if applicable) and deliver *payload* to every attached handler."""
        retain = self.is_retained(channel)
        with self._lock:
            if retain:
                self._retained[channel] = payload
            targets = list(self._subscriptions.get(channel, ()))
            peers = list(self._peers)

        queue = self._queue()
        for sub in targets:
            queue.append((sub, payload))
        for peer in peers:
            queue.append((peer, (channel, payload)))
        self._drain()

    def subscribe(self, channel: str, handler: Handler) -> Unsubscribe:
        """Attach *handler* to *channel*.

        If a retained payload exists it is delivered to *handler* before
        this call returns.  The returned callable detaches exactly this
        subscription; calling it more than once is harmless.
        """
        sub = _Subscription(channel, handler)
        with self._lock:
            self._subscriptions.setdefault(channel, []).append(sub)
            retained = self._retained.get(channel, _MISSING)

        if retained is not _MISSING:
            self._deliver(sub, retained)

        def unsubscribe() -> None:
            sub.active = False
            with self._lock:
                subs = self._subscriptions.get(channel)
                if subs is None:
                    return
                try:
                    subs.remove(sub)
                except ValueError:
                    return
                if not subs:
                    del self._subscriptions[channel]

        return unsubscribe

    def attach_peer(self, send: PeerSend) -> Unsubscribe:
        """Attach a peer that receives ``(channel, payload)`` for every publish.

        All retained payloads are replayed to the peer immediately, in
        channel-name order.  Returns a callable that detaches the peer.
        """
        peer = _Peer(send)
        with self._lock:
            self._peers.append(peer)
            replay = sorted(self._retained.items())

        for channel, payload in replay:
            self._deliver(peer, (channel, payload))

        def detach() -> None:
            peer.active = False
            with self._lock:
                try:
                    self._peers.remove(peer)
                except ValueError:
                    pass

        return detach

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def channels(self) -> list[str]:
        """Return channels that have subscribers or a retained payload."""
        with self._lock:
            return sorted(set(self._subscriptions) | set(self._retained))

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(channel, ()))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _queue(self) -> deque:
        queue = getattr(self._local, "queue", None)
        if queue is None:
            queue = self._local.queue = deque()
            self._local.draining = False
        return queue

    def _drain(self) -> None:
        if self._local.draining:
            return
        self._local.draining = True
        queue = self._local.queue
        try:
            while queue:
                target, item = queue.popleft()
                self._deliver(target, item)
        except BaseException:
            queue.clear()
            raise
        finally:
            self._local.draining = False

    @staticmethod
    def _deliver(target: _Subscription | _Peer, item: Any) -> None:
        if not target.active:
            return
        try:
            if isinstance(target, _Peer):
                target.send(*item)
            else:
                target.handler(item)
        except Exception:
            channel = item[0] if isinstance(target, _Peer) else target.channel
            logger.exception("relay handler error on channel %s", channel)
