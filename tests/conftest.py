"""Shared test fixtures."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from statecast.core.config import ENV_MACHINE_ID, ENV_RELAY_HOST, ENV_RELAY_PORT
from statecast.core.errors import Diagnostic
from statecast.relay.hub import Relay


@pytest.fixture()
def relay() -> Relay:
    """Return a fresh in-process relay with default retention."""
    return Relay()


@pytest.fixture()
def collect(relay: Relay):
    """Return a helper that records every payload delivered on a channel.

    Usage::

        seen = collect("machine:counter:snapshot")
        ...
        assert seen[-1]["version"] == 2
    """

    def _collect(channel: str) -> list:
        seen: list = []
        relay.subscribe(channel, seen.append)
        return seen

    return _collect


@pytest.fixture()
def diagnostics() -> list[Diagnostic]:
    """Return a list that can be passed as ``on_diagnostic=diagnostics.append``."""
    return []


@pytest.fixture()
def counter_host(relay: Relay, diagnostics: list[Diagnostic]):
    """Return a started adapter hosting the counter machine as ``counter``."""
    from statecast.host.adapter import AuthoritativeAdapter
    from statecast.host.machines import counter_reducer, initial_counter_state

    adapter = AuthoritativeAdapter(
        relay,
        "counter",
        counter_reducer,
        initial_counter_state(),
        on_diagnostic=diagnostics.append,
    )
    adapter.start()
    yield adapter
    adapter.stop()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture()
def cli_runner() -> CliRunner:
    """Return a Click CliRunner for invoking CLI commands."""
    return CliRunner()


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    """Return a path for a config file inside a temporary directory (not yet written)."""
    return tmp_path / "statecast.json"


@pytest.fixture()
def cli_env() -> dict[str, str | None]:
    """Return env dict that clears every STATECAST_* override."""
    return {ENV_RELAY_HOST: None, ENV_RELAY_PORT: None, ENV_MACHINE_ID: None}


@pytest.fixture()
def invoke(cli_runner: CliRunner, cli_env: dict[str, str | None], config_path: Path):
    """Return a helper that invokes CLI commands against the temporary config.

    Usage::

        result = invoke("config", "show")
    """
    from statecast.cli.main import cli

    def _invoke(*args: str, env: dict[str, str | None] | None = None, **kwargs):
        merged = {**cli_env, **(env or {})}
        return cli_runner.invoke(cli, ["--config", str(config_path), *args], env=merged, **kwargs)

    return _invoke


@pytest.fixture()
def invoke_json(invoke):
    """Like invoke, but appends --json and parses the response.

    Returns (parsed_dict, exit_code) tuple.
    """

    def _invoke_json(*args: str, **kwargs) -> tuple[dict, int]:
        result = invoke(*args, "--json", **kwargs)
        parsed = json.loads(result.output)
        return parsed, result.exit_code

    return _invoke_json
