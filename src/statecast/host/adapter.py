"""Authoritative adapter: the host's single writer of record.

The adapter owns one state value and is the only component that assigns
broadcast versions on its snapshot channel.  It broadcasts in exactly three
situations:

1. ``start()`` publishes the initial state (no ``ackId``).
2. An inbound action was applied (or settled after a failure).
3. A snapshot was requested.

It never broadcasts on its own initiative, so a single action can never
produce two publications.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from statecast.core.channels import ChannelSet, channels_for
from statecast.core.config import REJECT_POLICIES
from statecast.core.errors import (
    TRANSITION_FAILURE,
    TRANSPORT_FAILURE,
    Diagnostic,
    TransitionFailure,
    TransportFailure,
)
from statecast.core.messages import (
    ActionEnvelope,
    VersionedBroadcast,
    ensure_json_compatible,
    parse_envelope,
    parse_snapshot_request,
    to_wire,
)
from statecast.relay.hub import Transport, Unsubscribe

logger = logging.getLogger(__name__)

S = TypeVar("S")
A = TypeVar("A")

Transition = Callable[[S, A], S]
DiagnosticHook = Callable[[Diagnostic], None]


class AuthoritativeAdapter(Generic[S, A]):
    """Wrap one authoritative state and turn every mutation into a versioned broadcast.

    Args:
        transport: Anything with ``publish``/``subscribe`` (a :class:`Relay`
            in-process, a ``WebSocketTransport`` across processes).
        machine_id: Names the three channels (see :mod:`statecast.core.channels`).
        transition: Pure ``(state, action) -> state``.  Unknown actions
            should return the state unchanged.
        initial_state: JSON-compatible starting state.
        reject_policy: ``"settle"`` re-broadcasts the unchanged state with
            the failing action's id so the originator retires it;
            ``"drop"`` publishes nothing for a failed action.
        on_diagnostic: Optional hook receiving :class:`Diagnostic` records
            for transition failures and malformed inbound payloads.
    """

    def __init__(
        self,
        transport: Transport,
        machine_id: str,
        transition: Transition,
        initial_state: S,
        *,
        reject_policy: str = "settle",
        on_diagnostic: DiagnosticHook | None = None,
    ) -> None:
        if reject_policy not in REJECT_POLICIES:
            raise ValueError(f"reject_policy must be one of {sorted(REJECT_POLICIES)}")
        ensure_json_compatible(initial_state)

        self.transport = transport
        self.channels: ChannelSet = channels_for(machine_id)
        self.reject_policy = reject_policy
        self.on_diagnostic = on_diagnostic

        self._transition = transition
        self._state: S = initial_state
        self._version = 0
        self._last_ack_id: int | None = None
        self._last_ack_client: str | None = None
        self._inbox: deque[tuple[str, ActionEnvelope | None]] = deque()
        self._processing = False
        self._unsubscribers: list[Unsubscribe] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> S:
        return self._state

    @property
    def version(self) -> int:
        """Version of the most recent broadcast (0 before ``start()``)."""
        return self._version

    @property
    def last_ack_id(self) -> int | None:
        return self._last_ack_id

    @property
    def started(self) -> bool:
        return bool(self._unsubscribers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Attach to the inbound channels and publish the initial state."""
        if self.started:
            return
        self._unsubscribers = [
            self.transport.subscribe(self.channels.events, self._on_envelope),
            self.transport.subscribe(self.channels.request, self._on_snapshot_request),
        ]
        logger.info("adapter for %s started", self.channels.machine_id)
        self._broadcast()

    def stop(self) -> None:
        """Detach from the inbound channels.  State and version are kept."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def __enter__(self) -> AuthoritativeAdapter[S, A]:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Host-side entry points
    # ------------------------------------------------------------------

    def dispatch(self, action: A) -> None:
        """Apply a host-originated action.  The broadcast carries no ``ackId``."""
        envelope = ActionEnvelope.model_construct(action=action, id=0)
        self._inbox.append(("host", envelope))
        self._process()

    def snapshot(self) -> None:
        """Re-broadcast the current state, as if a client had requested it."""
        self._inbox.append(("snapshot", None))
        self._process()

    # ------------------------------------------------------------------
    # Inbound handlers
    # ------------------------------------------------------------------

    def _on_envelope(self, payload: Any) -> None:
        try:
            envelope = parse_envelope(payload)
        except TransportFailure as exc:
            logger.warning("dropping malformed action envelope: %s", exc)
            self._report(TRANSPORT_FAILURE, str(exc), {"channel": self.channels.events}, exc)
            return
        self._inbox.append(("action", envelope))
        self._process()

    def _on_snapshot_request(self, payload: Any) -> None:
        try:
            parse_snapshot_request(payload)
        except TransportFailure as exc:
            logger.warning("dropping malformed snapshot request: %s", exc)
            self._report(TRANSPORT_FAILURE, str(exc), {"channel": self.channels.request}, exc)
            return
        self._inbox.append(("snapshot", None))
        self._process()

    # ------------------------------------------------------------------
    # Sequential processing
    # ------------------------------------------------------------------

    def _process(self) -> None:
        # One item at a time, in receipt order.
        if self._processing:
            return
        self._processing = True
        try:
            while self._inbox:
                kind, envelope = self._inbox.popleft()
                if kind == "snapshot":
                    self._broadcast(ack_id=self._last_ack_id, ack_client=self._last_ack_client)
                else:
                    self._apply(envelope, from_client=(kind == "action"))
        finally:
            self._processing = False

    def _apply(self, envelope: ActionEnvelope, *, from_client: bool) -> None:
        ack_id = envelope.id if from_client else None
        ack_client = envelope.client_id if from_client else None
        try:
            new_state = self._transition(self._state, envelope.action)
            ensure_json_compatible(new_state)
        except Exception as exc:
            failure = TransitionFailure(ack_id, exc)
            logger.warning("%s", failure)
            self._report(
                TRANSITION_FAILURE,
                str(failure),
                {"action": envelope.action, "id": ack_id, "policy": self.reject_policy},
                failure,
            )
            if from_client:
                self._record_ack(ack_id, ack_client)
                if self.reject_policy == "settle":
                    self._broadcast(ack_id=ack_id, ack_client=ack_client, error=str(exc))
            return

        self._state = new_state
        if from_client:
            self._record_ack(ack_id, ack_client)
            logger.debug("applied action %s from %s", ack_id, ack_client or "client")
        self._broadcast(ack_id=ack_id, ack_client=ack_client)

    def _record_ack(self, ack_id: int | None, ack_client: str | None) -> None:
        self._last_ack_id = ack_id
        self._last_ack_client = ack_client

    def _broadcast(
        self,
        ack_id: int | None = None,
        ack_client: str | None = None,
        error: str | None = None,
    ) -> None:
        self._version += 1
        message = VersionedBroadcast(
            value=self._state,
            version=self._version,
            ack_id=ack_id,
            ack_client=ack_client,
            error=error,
        )
        self.transport.publish(self.channels.snapshot, to_wire(message))

    def _report(self, kind: str, message: str, detail: dict, exc: BaseException | None) -> None:
        if self.on_diagnostic is None:
            return
        try:
            self.on_diagnostic(Diagnostic(kind=kind, message=message, detail=detail, exc=exc))
        except Exception:
            logger.exception("diagnostic hook failed")
