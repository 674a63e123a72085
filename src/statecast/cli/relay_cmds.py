"""Host-side commands: run a relay with an authoritative machine attached."""

from __future__ import annotations

import asyncio
import json
import logging

import click

from statecast.cli.helpers import output_error, require_config
from statecast.cli.main import cli
from statecast.host.machines import MACHINES

logger = logging.getLogger("statecast.cli")


@cli.command()
@click.option(
    "--machine",
    "machine_name",
    type=click.Choice(sorted(MACHINES)),
    default="counter",
    show_default=True,
    help="Bundled state machine to host.",
)
@click.option("--machine-id", default=None, help="Channel namespace (defaults to config machine_id).")
@click.option("--host", default=None, help="Bind address (defaults to config relay.host).")
@click.option("--port", type=int, default=None, help="Bind port (defaults to config relay.port).")
@click.pass_context
def serve(
    ctx: click.Context,
    machine_name: str,
    machine_id: str | None,
    host: str | None,
    port: int | None,
) -> None:
    """Run a relay and host a machine on it until interrupted."""
    from statecast.host.adapter import AuthoritativeAdapter
    from statecast.host.machines import get_machine
    from statecast.relay.hub import Relay
    from statecast.relay.server import RelayServer

    cfg = require_config(ctx)
    machine_id = machine_id or cfg["machine_id"]
    host = host or cfg["relay"]["host"]
    port = port if port is not None else cfg["relay"]["port"]

    relay = Relay(retain_suffixes=cfg["retain_suffixes"])
    reducer, initial_state = get_machine(machine_name)
    try:
        adapter = AuthoritativeAdapter(
            relay,
            machine_id,
            reducer,
            initial_state(),
            reject_policy=cfg["reject_policy"],
            on_diagnostic=lambda d: logger.warning("%s: %s", d.kind, d.message),
        )
    except ValueError as e:
        output_error(str(e), "INVALID_MACHINE", False)

    if ctx.find_root().obj.get("verbose", 0) > 1:
        relay.attach_peer(
            lambda channel, payload: logger.debug(
                "%s %s", channel, json.dumps(payload, sort_keys=True)
            )
        )

    server = RelayServer(relay, host, port)
    click.echo(
        f"statecast: hosting '{machine_name}' as machine '{machine_id}' on ws://{host}:{port}",
        err=True,
    )
    adapter.start()
    try:
        asyncio.run(server.run_forever())
    except KeyboardInterrupt:
        click.echo("\nstatecast: stopped.", err=True)
    except OSError as e:
        output_error(f"Cannot listen on {host}:{port}: {e}", "BIND_FAILED", False)
    finally:
        adapter.stop()
