"""Host and clients wired through one relay."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from statecast.client.sync import SyncClient
from statecast.core.channels import channels_for
from statecast.host.adapter import AuthoritativeAdapter
from statecast.host.machines import counter_reducer, predict_counter
from statecast.relay.hub import Relay

CH = channels_for("counter")
INC = {"type": "inc"}
CLIENT_A = "cli_01H0ABC0DEF000000000000000"
CLIENT_B = "cli_01H0ABC0DEF000000000000001"


class _HeldTransport:
    """Relay wrapper whose deliveries are buffered until ``release()``.

    Stands in for a slow network hop between the relay and one client.
    """

    def __init__(self, relay: Relay) -> None:
        self.relay = relay
        self.held = True
        self._buffer: list[tuple[Callable[[Any], None], Any]] = []

    def publish(self, topic: str, data: Any) -> None:
        self.relay.publish(topic, data)

    def subscribe(self, topic: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        def deliver(payload: Any) -> None:
            if self.held:
                self._buffer.append((handler, payload))
            else:
                handler(payload)

        return self.relay.subscribe(topic, deliver)

    def release(self, only_last: bool = False) -> None:
        self.held = False
        pending, self._buffer = self._buffer, []
        if only_last:
            pending = pending[-1:]
        for handler, payload in pending:
            handler(payload)


class TestTwoClientScenario:
    def test_wire_level_scenario(self) -> None:
        """Replays the canonical two-client exchange with hand-built broadcasts."""
        relay_a, relay_b = Relay(), Relay()
        client_a = SyncClient(relay_a, CH)
        client_b = SyncClient(relay_b, CH, predict=predict_counter, initial_state={"count": 0})

        assert client_a.send(INC) == 1
        relay_a.publish(CH.snapshot, {"value": {"count": 1}, "version": 1, "ackId": 1})
        assert client_a.pending == ()
        assert client_a.state.value == {"count": 1}
        assert client_a.connected.value is True

        assert client_b.send(INC) == 1
        assert client_b.state.value == {"count": 1, "pending": True}
        relay_b.publish(CH.snapshot, {"value": {"count": 2}, "version": 2, "ackId": 1})
        assert client_b.confirmed_state == {"count": 2}
        assert client_b.pending == ()
        assert client_b.state.value == {"count": 2}

    def test_live_host(self, relay: Relay) -> None:
        host = AuthoritativeAdapter(relay, "counter", counter_reducer, {"count": 0})
        host.start()

        client_a = SyncClient(relay, CH, client_id=CLIENT_A)
        held = _HeldTransport(relay)
        client_b = SyncClient(held, CH, predict=predict_counter, client_id=CLIENT_B)

        client_a.send(INC)
        assert client_a.pending == ()
        assert client_a.state.value == {"count": 1}
        assert client_a.connected.value is True

        # B has seen nothing yet; its prediction has no base to fold onto.
        client_b.send(INC)
        assert client_b.connected.value is False
        assert client_b.state.value is None

        held.release()
        assert client_b.confirmed_state == {"count": 2}
        assert client_b.pending == ()
        assert client_b.state.value == {"count": 2}
        assert client_b.last_version == host.version == 3

        # A saw B's broadcast too but does not retire on B's ack.
        assert client_a.confirmed_state == {"count": 2}
        assert client_a.pending == ()

    def test_prediction_visible_before_host_replies(self, relay: Relay) -> None:
        host = AuthoritativeAdapter(relay, "counter", counter_reducer, {"count": 5})
        host.start()
        held = _HeldTransport(relay)
        held.held = False
        client = SyncClient(held, CH, predict=predict_counter, client_id=CLIENT_B)
        assert client.state.value == {"count": 5}

        held.held = True
        client.send(INC)
        client.send(INC)
        assert client.state.value == {"count": 7, "pending": True}
        assert host.state == {"count": 7}

        held.release()
        assert client.state.value == {"count": 7}


class TestLateJoin:
    def test_client_attached_after_host_sees_state_without_request(self, relay: Relay) -> None:
        host = AuthoritativeAdapter(relay, "counter", counter_reducer, {"count": 0})
        host.start()
        host.dispatch({"type": "set", "value": 42})

        late = SyncClient(relay, CH)
        assert late.state.value == {"count": 42}
        assert late.last_version == 2
        assert late.connected.value is True

    def test_snapshot_request_resyncs(self, relay: Relay) -> None:
        host = AuthoritativeAdapter(relay, "counter", counter_reducer, {"count": 0})
        host.start()
        client = SyncClient(relay, CH)
        client.send(INC)
        client.request_snapshot()
        assert client.last_version == 3
        assert client.confirmed_state == {"count": 1}


class TestDetach:
    def test_detached_client_does_not_affect_host_or_others(self, relay: Relay) -> None:
        host = AuthoritativeAdapter(relay, "counter", counter_reducer, {"count": 0})
        host.start()
        staying = SyncClient(relay, CH)
        leaving = SyncClient(relay, CH)

        leaving.send(INC)
        leaving.close()
        staying.send(INC)

        assert host.state == {"count": 2}
        assert staying.confirmed_state == {"count": 2}
        assert leaving.confirmed_state == {"count": 1}
