"""Tests for the authoritative adapter."""

from __future__ import annotations

import pytest

from statecast.core.errors import TRANSITION_FAILURE, TRANSPORT_FAILURE, TransportFailure
from statecast.host.adapter import AuthoritativeAdapter
from statecast.host.machines import counter_reducer
from statecast.relay.hub import Relay

SNAP = "machine:counter:snapshot"
EVENTS = "machine:counter:events"
REQUEST = "machine:counter:request-snapshot"
CLIENT_A = "cli_01H0ABC0DEF000000000000000"


def _boom(state: dict, action: dict) -> dict:
    if action.get("type") == "boom":
        raise RuntimeError("kaboom")
    return counter_reducer(state, action)


class TestLifecycle:
    def test_start_broadcasts_initial_state_at_version_one(self, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        adapter = AuthoritativeAdapter(relay, "counter", counter_reducer, {"count": 0})
        assert adapter.version == 0
        adapter.start()
        assert seen == [{"value": {"count": 0}, "version": 1}]
        assert adapter.started

    def test_start_is_idempotent(self, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        adapter = AuthoritativeAdapter(relay, "counter", counter_reducer, {"count": 0})
        adapter.start()
        adapter.start()
        assert len(seen) == 1

    def test_stop_detaches_inbound_channels(self, counter_host, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        counter_host.stop()
        relay.publish(EVENTS, {"action": {"type": "inc"}, "id": 1})
        relay.publish(REQUEST, {"ts": 1})
        assert seen == [{"value": {"count": 0}, "version": 1}]  # retained replay only
        assert counter_host.state == {"count": 0}
        assert not counter_host.started

    def test_context_manager(self, relay: Relay) -> None:
        with AuthoritativeAdapter(relay, "counter", counter_reducer, {"count": 0}) as adapter:
            assert relay.subscriber_count(EVENTS) == 1
            assert adapter.version == 1
        assert relay.subscriber_count(EVENTS) == 0

    def test_invalid_policy(self, relay: Relay) -> None:
        with pytest.raises(ValueError, match="reject_policy"):
            AuthoritativeAdapter(relay, "counter", counter_reducer, {}, reject_policy="retry")

    def test_invalid_machine_id(self, relay: Relay) -> None:
        with pytest.raises(ValueError):
            AuthoritativeAdapter(relay, "a:b", counter_reducer, {})

    def test_initial_state_must_be_json(self, relay: Relay) -> None:
        with pytest.raises(TransportFailure):
            AuthoritativeAdapter(relay, "counter", counter_reducer, {"fn": print})


class TestActions:
    def test_applied_action_broadcasts_with_ack(self, counter_host, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        relay.publish(EVENTS, {"action": {"type": "inc"}, "id": 1})
        assert seen[-1] == {"value": {"count": 1}, "version": 2, "ackId": 1}
        assert counter_host.last_ack_id == 1

    def test_versions_strictly_increase(self, counter_host, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        for i in range(1, 6):
            relay.publish(EVENTS, {"action": {"type": "inc"}, "id": i})
        versions = [b["version"] for b in seen]
        assert versions == [1, 2, 3, 4, 5, 6]
        assert seen[-1]["value"] == {"count": 5}

    def test_one_broadcast_per_action(self, counter_host, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        relay.publish(EVENTS, {"action": {"type": "unknown"}, "id": 1})
        assert len(seen) == 2  # replay + one broadcast
        assert seen[-1] == {"value": {"count": 0}, "version": 2, "ackId": 1}

    def test_ack_client_echoed(self, counter_host, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        relay.publish(EVENTS, {"action": {"type": "inc"}, "id": 3, "clientId": CLIENT_A})
        assert seen[-1]["ackId"] == 3
        assert seen[-1]["ackClient"] == CLIENT_A

    def test_actions_applied_in_receipt_order(self, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        applied: list = []

        def record(state: list, action: str) -> list:
            applied.append(action)
            return [*state, action]

        adapter = AuthoritativeAdapter(relay, "counter", record, [])
        adapter.start()
        # A subscriber that reacts to a broadcast by publishing another action
        # must not interleave with the action currently being applied.
        def follow_up(broadcast: dict) -> None:
            if broadcast.get("ackId") == 1:
                relay.publish(EVENTS, {"action": "follow", "id": 9})

        relay.subscribe(SNAP, follow_up)
        relay.publish(EVENTS, {"action": "first", "id": 1})
        assert applied == ["first", "follow"]
        assert [b["version"] for b in seen] == [1, 2, 3]
        assert adapter.state == ["first", "follow"]

    def test_dispatch_host_action_has_no_ack(self, counter_host, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        counter_host.dispatch({"type": "set", "value": 4})
        assert seen[-1] == {"value": {"count": 4}, "version": 2}
        assert counter_host.last_ack_id is None

    def test_input_state_not_mutated(self, relay: Relay) -> None:
        initial = {"count": 0}
        adapter = AuthoritativeAdapter(relay, "counter", counter_reducer, initial)
        adapter.start()
        relay.publish(EVENTS, {"action": {"type": "inc"}, "id": 1})
        assert initial == {"count": 0}
        assert adapter.state == {"count": 1}


class TestSnapshotRequests:
    def test_request_rebroadcasts_with_last_ack(self, counter_host, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        relay.publish(EVENTS, {"action": {"type": "inc"}, "id": 1, "clientId": CLIENT_A})
        relay.publish(REQUEST, {"ts": 1700000000000})
        assert seen[-1] == {"value": {"count": 1}, "version": 3, "ackId": 1, "ackClient": CLIENT_A}

    def test_request_before_any_action(self, counter_host, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        relay.publish(REQUEST, None)
        assert seen[-1] == {"value": {"count": 0}, "version": 2}

    def test_snapshot_method(self, counter_host, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        counter_host.snapshot()
        assert seen[-1]["version"] == 2


class TestFailures:
    def test_settle_rebroadcasts_unchanged_state(self, relay: Relay, collect, diagnostics) -> None:
        seen = collect(SNAP)
        adapter = AuthoritativeAdapter(
            relay, "counter", _boom, {"count": 0}, on_diagnostic=diagnostics.append
        )
        adapter.start()
        relay.publish(EVENTS, {"action": {"type": "boom"}, "id": 1})
        assert seen[-1] == {"value": {"count": 0}, "version": 2, "ackId": 1, "error": "kaboom"}
        assert adapter.state == {"count": 0}
        assert [d.kind for d in diagnostics] == [TRANSITION_FAILURE]

    def test_drop_publishes_nothing(self, relay: Relay, collect, diagnostics) -> None:
        seen = collect(SNAP)
        adapter = AuthoritativeAdapter(
            relay,
            "counter",
            _boom,
            {"count": 0},
            reject_policy="drop",
            on_diagnostic=diagnostics.append,
        )
        adapter.start()
        relay.publish(EVENTS, {"action": {"type": "boom"}, "id": 1})
        assert len(seen) == 1
        assert adapter.version == 1
        assert adapter.last_ack_id == 1
        assert diagnostics[0].detail["policy"] == "drop"

    def test_processing_continues_after_failure(self, relay: Relay, collect) -> None:
        seen = collect(SNAP)
        adapter = AuthoritativeAdapter(relay, "counter", _boom, {"count": 0})
        adapter.start()
        relay.publish(EVENTS, {"action": {"type": "boom"}, "id": 1})
        relay.publish(EVENTS, {"action": {"type": "inc"}, "id": 2})
        assert seen[-1] == {"value": {"count": 1}, "version": 3, "ackId": 2}

    def test_non_json_result_is_a_failure(self, relay: Relay, collect, diagnostics) -> None:
        seen = collect(SNAP)
        adapter = AuthoritativeAdapter(
            relay, "counter", lambda s, a: {"fn": print}, {}, on_diagnostic=diagnostics.append
        )
        adapter.start()
        relay.publish(EVENTS, {"action": 1, "id": 1})
        assert adapter.state == {}
        assert seen[-1]["value"] == {}
        assert diagnostics[0].kind == TRANSITION_FAILURE

    def test_malformed_envelope_dropped(self, counter_host, relay: Relay, collect, diagnostics) -> None:
        seen = collect(SNAP)
        relay.publish(EVENTS, {"action": {"type": "inc"}})
        relay.publish(EVENTS, "not an envelope")
        assert len(seen) == 1
        assert [d.kind for d in diagnostics] == [TRANSPORT_FAILURE, TRANSPORT_FAILURE]

    def test_unrecognized_client_id_dropped(self, counter_host, relay: Relay, collect, diagnostics) -> None:
        seen = collect(SNAP)
        relay.publish(EVENTS, {"action": {"type": "inc"}, "id": 1, "clientId": "someone"})
        assert len(seen) == 1
        assert counter_host.state == {"count": 0}
        assert [d.kind for d in diagnostics] == [TRANSPORT_FAILURE]
        assert "clientId" in diagnostics[0].message

    def test_malformed_snapshot_request_dropped(self, counter_host, relay: Relay, collect, diagnostics) -> None:
        seen = collect(SNAP)
        relay.publish(REQUEST, {"ts": "soon"})
        assert len(seen) == 1
        assert diagnostics[0].detail == {"channel": REQUEST}

    def test_broken_diagnostic_hook_is_isolated(self, relay: Relay, collect) -> None:
        seen = collect(SNAP)

        def hook(_diagnostic: object) -> None:
            raise RuntimeError("hook")

        adapter = AuthoritativeAdapter(relay, "counter", _boom, {"count": 0}, on_diagnostic=hook)
        adapter.start()
        relay.publish(EVENTS, {"action": {"type": "boom"}, "id": 1})
        assert seen[-1]["ackId"] == 1
