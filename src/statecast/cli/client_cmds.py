"""Client-side commands: send actions to a hosted machine and watch its state."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import click

from statecast.cli.helpers import (
    json_envelope,
    output_error,
    output_result,
    parse_action,
    relay_url,
    require_config,
)
from statecast.cli.main import cli
from statecast.core.cells import ReadableCell
from statecast.core.channels import validate_machine_id
from statecast.core.errors import TransportFailure
from statecast.core.messages import ensure_json_compatible


def _connect_errors() -> tuple[type[BaseException], ...]:
    from websockets.exceptions import WebSocketException

    return (OSError, WebSocketException)


def _resolve_machine_id(machine_id: str | None, cfg: dict, is_json: bool) -> str:
    machine_id = machine_id or cfg["machine_id"]
    if not validate_machine_id(machine_id):
        output_error(f"Invalid machine id '{machine_id}'", "INVALID_MACHINE", is_json)
    return machine_id


async def _wait_for(cell: ReadableCell, predicate: Callable[[Any], bool], timeout: float) -> None:
    """Wait until *predicate* holds for *cell*'s value.  Raises asyncio.TimeoutError."""
    ready = asyncio.Event()

    def _check(value: Any) -> None:
        if predicate(value):
            ready.set()

    unsubscribe = cell.subscribe(_check)
    try:
        await asyncio.wait_for(ready.wait(), timeout)
    finally:
        unsubscribe()


# ---------------------------------------------------------------------------
# send
# ---------------------------------------------------------------------------


async def _send(url: str, machine_id: str, action: Any, timeout: float) -> dict:
    from statecast.client.sync import SyncClient
    from statecast.core.ids import generate_client_id
    from statecast.relay.transport import WebSocketTransport

    transport = WebSocketTransport(url)
    client = SyncClient.for_machine(transport, machine_id, client_id=generate_client_id())
    async with transport:
        await _wait_for(client.connected, bool, timeout)
        action_id = client.send(action)
        await _wait_for(client.pending_count, lambda n: n == 0, timeout)
        visible = client.state.value
        client.close()
    return {
        "id": action_id,
        "version": client.last_version,
        "state": visible,
    }


@cli.command()
@click.argument("action_json")
@click.option("--machine-id", default=None, help="Machine to address (defaults to config machine_id).")
@click.option("--url", default=None, help="Relay URL (defaults to config relay host/port).")
@click.option("--timeout", type=float, default=5.0, show_default=True, help="Seconds to wait for the host.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def send(
    ctx: click.Context,
    action_json: str,
    machine_id: str | None,
    url: str | None,
    timeout: float,
    as_json: bool,
) -> None:
    """Send ACTION_JSON to the host and print the state that acknowledges it."""
    cfg = require_config(ctx, as_json)
    action = parse_action(action_json, as_json)
    try:
        ensure_json_compatible(action)
    except TransportFailure as e:
        output_error(f"Action is not JSON-compatible: {e}", "INVALID_ACTION", as_json)
    url = url or relay_url(cfg)
    machine_id = _resolve_machine_id(machine_id, cfg, as_json)
    connect_errors = _connect_errors()

    try:
        result = asyncio.run(_send(url, machine_id, action, timeout))
    except asyncio.TimeoutError:
        output_error(f"No acknowledgment from machine '{machine_id}' within {timeout}s", "TIMEOUT", as_json)
    except connect_errors as e:
        output_error(f"Cannot reach relay at {url}: {e}", "CONNECTION_FAILED", as_json)

    output_result(
        data=result,
        human_message=(
            f"Action {result['id']} acknowledged at version {result['version']}: "
            f"{json.dumps(result['state'], sort_keys=True)}"
        ),
        is_json=as_json,
    )


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------


async def _watch(url: str, machine_id: str, count: int | None, timeout: float | None, emit: Callable) -> int:
    from statecast.client.sync import SyncClient
    from statecast.relay.transport import WebSocketTransport

    transport = WebSocketTransport(url)
    client = SyncClient.for_machine(transport, machine_id)
    seen = 0
    done = asyncio.Event()

    def _on_change(value: Any) -> None:
        nonlocal seen
        if client.last_version is None:
            return
        seen += 1
        emit({"version": client.last_version, "state": value})
        if count is not None and seen >= count:
            done.set()

    async with transport:
        unsubscribe = client.state.subscribe(_on_change)
        try:
            waiters = [
                asyncio.ensure_future(done.wait()),
                asyncio.ensure_future(transport.wait_closed()),
            ]
            try:
                finished, _ = await asyncio.wait(
                    waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for waiter in waiters:
                    waiter.cancel()
            if not finished:
                raise asyncio.TimeoutError
        finally:
            unsubscribe()
            client.close()
    return seen


@cli.command()
@click.option("--machine-id", default=None, help="Machine to watch (defaults to config machine_id).")
@click.option("--url", default=None, help="Relay URL (defaults to config relay host/port).")
@click.option("--count", type=click.IntRange(min=1), default=None, help="Exit after N states.")
@click.option("--timeout", type=float, default=None, help="Give up after this many seconds.")
@click.option("--json", "as_json", is_flag=True, help="Output one JSON envelope per state.")
@click.pass_context
def watch(
    ctx: click.Context,
    machine_id: str | None,
    url: str | None,
    count: int | None,
    timeout: float | None,
    as_json: bool,
) -> None:
    """Print the machine's state each time it changes."""
    cfg = require_config(ctx, as_json)
    url = url or relay_url(cfg)
    machine_id = _resolve_machine_id(machine_id, cfg, as_json)
    connect_errors = _connect_errors()

    def emit(entry: dict) -> None:
        if as_json:
            click.echo(json_envelope(True, data=entry), nl=False)
        else:
            click.echo(f"v{entry['version']}: {json.dumps(entry['state'], sort_keys=True)}")

    try:
        asyncio.run(_watch(url, machine_id, count, timeout, emit))
    except KeyboardInterrupt:
        pass
    except asyncio.TimeoutError:
        output_error(f"Timed out after {timeout}s", "TIMEOUT", as_json)
    except connect_errors as e:
        output_error(f"Cannot reach relay at {url}: {e}", "CONNECTION_FAILED", as_json)
