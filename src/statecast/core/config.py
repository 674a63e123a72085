"""Default config generation, loading, and validation.

Stored as ``statecast.json`` in the working directory unless a path is
given explicitly.  A handful of environment variables override the file so
that the relay address can be changed without editing it.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import TypedDict

from statecast.core.channels import DEFAULT_RETAIN_SUFFIXES, validate_machine_id
from statecast.core.errors import ConfigError

CONFIG_FILENAME = "statecast.json"

ENV_RELAY_HOST = "STATECAST_RELAY_HOST"
ENV_RELAY_PORT = "STATECAST_RELAY_PORT"
ENV_MACHINE_ID = "STATECAST_MACHINE_ID"

DEFAULT_RELAY_HOST = "127.0.0.1"
DEFAULT_RELAY_PORT = 9801

REJECT_POLICIES: frozenset[str] = frozenset({"settle", "drop"})


class RelayConfig(TypedDict, total=False):
    host: str
    port: int


class StatecastConfig(TypedDict, total=False):
    schema_version: int
    machine_id: str
    relay: RelayConfig
    retain_suffixes: list[str]
    reject_policy: str


def default_config() -> StatecastConfig:
    """Return the default configuration.

    The returned dict is a fresh copy; callers may mutate it freely.
    """
    return {
        "schema_version": 1,
        "machine_id": "app",
        "relay": {
            "host": DEFAULT_RELAY_HOST,
            "port": DEFAULT_RELAY_PORT,
        },
        "retain_suffixes": list(DEFAULT_RETAIN_SUFFIXES),
        "reject_policy": "settle",
    }


def serialize_config(config: StatecastConfig | dict[str, object]) -> str:
    """Serialize a config dict to the canonical JSON format."""
    return json.dumps(config, sort_keys=True, indent=2) + "\n"


def validate_config(config: dict) -> list[str]:
    """Return a list of human-readable problems with *config* (empty if valid)."""
    errors: list[str] = []

    if config.get("schema_version") != 1:
        errors.append(f"unsupported schema_version: {config.get('schema_version')!r}")

    if not validate_machine_id(config.get("machine_id", "")):
        errors.append(f"machine_id must be a non-empty string without ':': {config.get('machine_id')!r}")

    relay = config.get("relay", {})
    if not isinstance(relay, dict):
        errors.append("relay must be an object")
    else:
        host = relay.get("host")
        if not isinstance(host, str) or not host:
            errors.append(f"relay.host must be a non-empty string: {host!r}")
        port = relay.get("port")
        if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
            errors.append(f"relay.port must be an integer in 0-65535: {port!r}")

    suffixes = config.get("retain_suffixes", [])
    if not isinstance(suffixes, list) or not all(isinstance(s, str) and s for s in suffixes):
        errors.append("retain_suffixes must be a list of non-empty strings")

    policy = config.get("reject_policy")
    if policy not in REJECT_POLICIES:
        errors.append(f"reject_policy must be one of {sorted(REJECT_POLICIES)}: {policy!r}")

    return errors


def _apply_env_overrides(config: dict, environ: dict[str, str]) -> dict:
    relay = dict(config.get("relay", {}))
    if environ.get(ENV_RELAY_HOST):
        relay["host"] = environ[ENV_RELAY_HOST]
    if environ.get(ENV_RELAY_PORT):
        try:
            relay["port"] = int(environ[ENV_RELAY_PORT])
        except ValueError as exc:
            raise ConfigError(
                f"{ENV_RELAY_PORT} must be an integer: {environ[ENV_RELAY_PORT]!r}"
            ) from exc
    config["relay"] = relay
    if environ.get(ENV_MACHINE_ID):
        config["machine_id"] = environ[ENV_MACHINE_ID]
    return config


def load_config(path: Path | None = None, environ: dict[str, str] | None = None) -> StatecastConfig:
    """Load configuration, falling back to defaults for anything missing.

    Values from the file are layered over :func:`default_config`, then the
    ``STATECAST_*`` environment overrides are applied.

    Raises:
        ConfigError: If the file is not valid JSON or the result fails validation.
    """
    config: dict = dict(default_config())
    config_path = path if path is not None else Path.cwd() / CONFIG_FILENAME

    if config_path.exists():
        try:
            loaded = json.loads(config_path.read_text())
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{config_path}: invalid JSON: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path}: expected a JSON object")
        relay = {**config["relay"], **loaded.get("relay", {})}
        config.update(loaded)
        config["relay"] = relay

    config = _apply_env_overrides(config, dict(os.environ) if environ is None else environ)

    errors = validate_config(config)
    if errors:
        raise ConfigError("; ".join(errors))
    return config  # type: ignore[return-value]


def save_config(path: Path, config: StatecastConfig | dict) -> None:
    """Write *config* to *path* atomically via temp file + rename."""
    parent = path.parent
    if not parent.is_dir():
        raise FileNotFoundError(f"Parent directory does not exist: {parent}")

    fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".tmp.")
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(serialize_config(config))
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
