"""Shared CLI helpers and output utilities."""

from __future__ import annotations

import json
from pathlib import Path
from typing import NoReturn

import click

from statecast.core.config import load_config
from statecast.core.errors import ConfigError

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def require_config(ctx: click.Context, is_json: bool = False) -> dict:
    """Load the config selected by ``--config`` (or the default) or exit with error."""
    obj = ctx.find_root().obj or {}
    path: Path | None = obj.get("config_path")
    try:
        return load_config(path)
    except ConfigError as e:
        output_error(str(e), "INVALID_CONFIG", is_json)


def relay_url(config: dict, host: str | None = None, port: int | None = None) -> str:
    """Build the relay's ws:// URL, letting explicit options win over config."""
    relay = config.get("relay", {})
    return f"ws://{host or relay['host']}:{port if port is not None else relay['port']}"


def parse_action(raw: str, is_json: bool) -> object:
    """Parse an action given on the command line as JSON, or exit with error."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        output_error(f"Action is not valid JSON: {e}", "INVALID_ACTION", is_json)


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def json_envelope(ok: bool, *, data: object = None, error: object = None) -> str:
    """Build a structured JSON output envelope."""
    result: dict = {"ok": ok}
    if data is not None:
        result["data"] = data
    if error is not None:
        result["error"] = error
    return json.dumps(result, sort_keys=True, indent=2) + "\n"


def json_error_obj(code: str, message: str) -> dict:
    """Build an error object for the JSON envelope."""
    return {"code": code, "message": message}


def output_error(message: str, code: str, is_json: bool, exit_code: int = 1) -> NoReturn:
    """Print error and exit. JSON errors go to stdout; human errors to stderr."""
    if is_json:
        click.echo(json_envelope(False, error=json_error_obj(code, message)))
    else:
        click.echo(f"Error: {message}", err=True)
    raise SystemExit(exit_code)


def output_result(*, data: object, human_message: str, is_json: bool) -> None:
    """Print success result in the appropriate format."""
    if is_json:
        click.echo(json_envelope(True, data=data))
    else:
        click.echo(human_message)
