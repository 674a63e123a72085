"""Client-side reconciliation of host broadcasts with locally issued actions.

A :class:`SyncClient` keeps three things:

* the *confirmed* state, i.e. the value of the newest broadcast accepted
  from the host (broadcasts are accepted only with a strictly increasing
  version, so duplicates and out-of-order deliveries are dropped);
* a FIFO *pending* queue of actions sent but not yet acknowledged;
* a *visible* state, recomputed on demand by folding the optional
  prediction function over the pending queue on top of the confirmed
  state.

Acknowledgment is cumulative: a broadcast with ``ackId = N`` retires every
pending action with ``id <= N``, because the host applies actions in the
order it receives them.

The client is exposed to a rendering layer as three read-only cells
(``state``, ``connected``, ``pending_count``) plus :meth:`send` and
:meth:`request_snapshot`.
"""

from __future__ import annotations

import copy
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from statecast.core.cells import ComputedCell, ReadableCell, ValueCell
from statecast.core.channels import ChannelSet, channels_for
from statecast.core.errors import (
    PREDICTION_FAILURE,
    STALE_BROADCAST,
    TRANSITION_FAILURE,
    TRANSPORT_FAILURE,
    Diagnostic,
    PredictionFailure,
    StaleBroadcast,
    TransportFailure,
)
from statecast.core.ids import CLIENT_ID_PREFIX, validate_id
from statecast.core.messages import (
    ActionEnvelope,
    SnapshotRequest,
    VersionedBroadcast,
    ensure_json_compatible,
    parse_broadcast,
    to_wire,
)
from statecast.relay.hub import Transport

logger = logging.getLogger(__name__)

S = TypeVar("S")
A = TypeVar("A")

Predict = Callable[[S, A], S]
DiagnosticHook = Callable[[Diagnostic], None]
ConnectionHook = Callable[[bool], None]


class SyncClient(Generic[S, A]):
    """Maintain a low-latency view of a host's state.

    Args:
        transport: Anything with ``publish``/``subscribe``.
        channels: The machine's channel names (see :func:`channels_for`).
        predict: Optional pure ``(state, action) -> state`` used only for the
            visible projection.
        initial_state: Shown as the confirmed state until the first
            broadcast is accepted.
        client_id: When set, sent with every action as ``clientId``.  Must be
            a ``cli_<ULID>`` id (see :func:`generate_client_id`).  A host
            that echoes it back as ``ackClient`` lets this client ignore
            acknowledgments addressed to other clients.
        on_connection_change: Called with ``True`` on the first accepted
            broadcast.
        on_diagnostic: Receives stale, malformed, rejected and prediction
            failure reports.
    """

    def __init__(
        self,
        transport: Transport,
        channels: ChannelSet,
        *,
        predict: Predict | None = None,
        initial_state: S | None = None,
        client_id: str | None = None,
        on_connection_change: ConnectionHook | None = None,
        on_diagnostic: DiagnosticHook | None = None,
    ) -> None:
        if client_id is not None and not validate_id(client_id, CLIENT_ID_PREFIX):
            raise ValueError(f"Invalid client id '{client_id}'")
        self.transport = transport
        self.channels = channels
        self.client_id = client_id
        self.on_connection_change = on_connection_change
        self.on_diagnostic = on_diagnostic

        self._predict = predict
        self._confirmed: S | None = initial_state
        self._last_version: int | None = None
        self._next_id = 0
        self._pending: deque[ActionEnvelope] = deque()

        self._connected = ValueCell(False)
        self._pending_count = ValueCell(0)
        self._state = ComputedCell(self._compute_visible)

        # Subscribing last: a retained broadcast is replayed synchronously.
        self._unsubscribe: Callable[[], None] | None = transport.subscribe(
            channels.snapshot, self._on_broadcast
        )

    @classmethod
    def for_machine(cls, transport: Transport, machine_id: str, **options: Any) -> SyncClient:
        """Build a client wired to the conventional channels of *machine_id*."""
        return cls(transport, channels_for(machine_id), **options)

    # ------------------------------------------------------------------
    # Reactive surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> ReadableCell[S | None]:
        """Visible state: confirmed state with pending actions predicted on top."""
        return self._state

    @property
    def connected(self) -> ReadableCell[bool]:
        return self._connected

    @property
    def pending_count(self) -> ReadableCell[int]:
        return self._pending_count

    # ------------------------------------------------------------------
    # Plain accessors
    # ------------------------------------------------------------------

    @property
    def confirmed_state(self) -> S | None:
        return self._confirmed

    @property
    def pending(self) -> tuple[ActionEnvelope, ...]:
        return tuple(self._pending)

    @property
    def last_version(self) -> int | None:
        return self._last_version

    @property
    def closed(self) -> bool:
        return self._unsubscribe is None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def send(self, action: A) -> int:
        """Queue *action*, publish it to the host, and return its id.

        The visible state includes the prediction for *action* before the
        envelope is published.

        Raises:
            TransportFailure: If *action* is not JSON-compatible.
            RuntimeError: If the client has been closed.
        """
        if self.closed:
            raise RuntimeError("cannot send on a closed client")
        ensure_json_compatible(action)

        self._next_id += 1
        envelope = ActionEnvelope(action=action, id=self._next_id, client_id=self.client_id)
        self._pending.append(envelope)
        self._pending_count.set(len(self._pending))
        self._state.invalidate()

        self.transport.publish(self.channels.events, to_wire(envelope))
        return envelope.id

    def request_snapshot(self) -> None:
        """Ask the host to re-broadcast its current state."""
        if self.closed:
            raise RuntimeError("cannot request a snapshot on a closed client")
        request = SnapshotRequest(ts=int(time.time() * 1000))
        self.transport.publish(self.channels.request, to_wire(request))

    def close(self) -> None:
        """Stop receiving broadcasts.  Safe to call more than once."""
        if self._unsubscribe is None:
            return
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        unsubscribe()

    def __enter__(self) -> SyncClient[S, A]:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _on_broadcast(self, payload: Any) -> None:
        try:
            broadcast = parse_broadcast(payload)
        except TransportFailure as exc:
            logger.warning("dropping malformed broadcast on %s: %s", self.channels.snapshot, exc)
            self._report(TRANSPORT_FAILURE, str(exc), {"channel": self.channels.snapshot}, exc)
            return

        if self._last_version is not None and broadcast.version <= self._last_version:
            stale = StaleBroadcast(broadcast.version, self._last_version)
            logger.debug("%s", stale)
            self._report(
                STALE_BROADCAST,
                str(stale),
                {"version": broadcast.version, "last_version": self._last_version},
                stale,
            )
            return

        self._confirmed = copy.deepcopy(broadcast.value)
        self._last_version = broadcast.version

        if broadcast.ack_id is not None and self._addressed_to_me(broadcast):
            self._retire(broadcast)

        if not self._connected.value:
            self._connected.set(True)
            if self.on_connection_change is not None:
                try:
                    self.on_connection_change(True)
                except Exception:
                    logger.exception("connection change hook failed")

        self._pending_count.set(len(self._pending))
        self._state.invalidate()

    def _addressed_to_me(self, broadcast: VersionedBroadcast) -> bool:
        if broadcast.ack_client is None or self.client_id is None:
            return True
        return broadcast.ack_client == self.client_id

    def _retire(self, broadcast: VersionedBroadcast) -> None:
        ack_id = broadcast.ack_id
        rejected = None
        while self._pending and self._pending[0].id <= ack_id:
            envelope = self._pending.popleft()
            if envelope.id == ack_id:
                rejected = envelope
        if broadcast.error is not None and rejected is not None:
            logger.info("host rejected action %d: %s", ack_id, broadcast.error)
            self._report(
                TRANSITION_FAILURE,
                broadcast.error,
                {"id": ack_id, "action": rejected.action, "version": broadcast.version},
                None,
            )

    def _compute_visible(self) -> S | None:
        confirmed = self._confirmed
        if self._predict is None or not self._pending or confirmed is None:
            return confirmed
        state = confirmed
        for envelope in self._pending:
            try:
                state = self._predict(state, envelope.action)
            except Exception as exc:
                failure = PredictionFailure(envelope.id, exc)
                logger.warning("%s; showing confirmed state", failure)
                self._report(
                    PREDICTION_FAILURE,
                    str(failure),
                    {"id": envelope.id, "action": envelope.action},
                    failure,
                )
                return confirmed
        return state

    def _report(self, kind: str, message: str, detail: dict, exc: BaseException | None) -> None:
        if self.on_diagnostic is None:
            return
        try:
            self.on_diagnostic(Diagnostic(kind=kind, message=message, detail=detail, exc=exc))
        except Exception:
            logger.exception("diagnostic hook failed")
