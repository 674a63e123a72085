"""CLI entry point and config commands."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from statecast.cli.helpers import json_envelope, output_error, output_result, require_config
from statecast.core.config import (
    CONFIG_FILENAME,
    default_config,
    load_config,
    save_config,
    serialize_config,
    validate_config,
)
from statecast.core.errors import ConfigError

_LOG_LEVELS = {0: logging.WARNING, 1: logging.INFO}


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Config file (defaults to ./{CONFIG_FILENAME}).",
)
@click.option("-v", "--verbose", count=True, help="Log more (-v info, -vv debug).")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: int) -> None:
    """statecast: host-authoritative state sync with optimistic clients."""
    logging.basicConfig(
        level=_LOG_LEVELS.get(verbose, logging.DEBUG),
        format="%(levelname)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@cli.group()
def config() -> None:
    """Inspect and create the statecast config file."""


@config.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    """Print the effective config (file + environment overrides)."""
    cfg = require_config(ctx, as_json)
    if as_json:
        click.echo(json_envelope(True, data=cfg))
        return
    click.echo(serialize_config(cfg), nl=False)


@config.command("init")
@click.option(
    "--path",
    "target",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Where to write the config (defaults to --config or ./{CONFIG_FILENAME}).",
)
@click.option("--machine-id", default=None, help="Machine id to store in the config.")
@click.option("--port", type=int, default=None, help="Relay port to store in the config.")
@click.option("--force", is_flag=True, help="Overwrite an existing config file.")
@click.pass_context
def config_init(
    ctx: click.Context,
    target: Path | None,
    machine_id: str | None,
    port: int | None,
    force: bool,
) -> None:
    """Write a default config file."""
    path = target or ctx.find_root().obj.get("config_path") or Path.cwd() / CONFIG_FILENAME
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force to overwrite).")

    cfg = dict(default_config())
    if machine_id is not None:
        cfg["machine_id"] = machine_id
    if port is not None:
        cfg["relay"] = {**cfg["relay"], "port": port}

    errors = validate_config(cfg)
    if errors:
        raise click.ClickException("; ".join(errors))

    try:
        save_config(path, cfg)
    except OSError as e:
        raise click.ClickException(f"Cannot write {path}: {e}") from e
    click.echo(f"Wrote {path}")


@config.command("validate")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_validate(ctx: click.Context, as_json: bool) -> None:
    """Check the config file and environment overrides."""
    path = ctx.find_root().obj.get("config_path")
    try:
        cfg = load_config(path)
    except ConfigError as e:
        output_error(str(e), "INVALID_CONFIG", as_json)
    output_result(
        data={"valid": True, "machine_id": cfg["machine_id"]},
        human_message="Config is valid.",
        is_json=as_json,
    )


# ---------------------------------------------------------------------------
# Register command modules (must be after cli group is defined)
# ---------------------------------------------------------------------------
from statecast.cli import relay_cmds as _relay_cmds  # noqa: E402, F401
from statecast.cli import client_cmds as _client_cmds  # noqa: E402, F401

if __name__ == "__main__":
    cli()
