"""Channel naming for one state machine instance.

Every machine owns three channels::

    machine:<id>:snapshot          versioned state broadcasts (retained)
    machine:<id>:events            inbound action envelopes
    machine:<id>:request-snapshot  snapshot requests
"""

from __future__ import annotations

from dataclasses import dataclass

CHANNEL_PREFIX = "machine"

ROLE_SNAPSHOT = "snapshot"
ROLE_EVENTS = "events"
ROLE_REQUEST = "request-snapshot"

ROLES: frozenset[str] = frozenset({ROLE_SNAPSHOT, ROLE_EVENTS, ROLE_REQUEST})

# Suffixes whose latest payload the relay keeps for late subscribers.
DEFAULT_RETAIN_SUFFIXES: tuple[str, ...] = (f":{ROLE_SNAPSHOT}",)


@dataclass(frozen=True)
class ChannelSet:
    """The three channel names wired between one host and its clients."""

    machine_id: str
    snapshot: str
    events: str
    request: str


def validate_machine_id(machine_id: str) -> bool:
    """Return ``True`` if *machine_id* can be embedded in a channel name."""
    return isinstance(machine_id, str) and bool(machine_id) and ":" not in machine_id


def channels_for(machine_id: str) -> ChannelSet:
    """Build the conventional channel names for *machine_id*.

    Raises:
        ValueError: If *machine_id* is empty or contains ``:``.
    """
    if not validate_machine_id(machine_id):
        raise ValueError(f"Invalid machine id: {machine_id!r}")
    base = f"{CHANNEL_PREFIX}:{machine_id}"
    return ChannelSet(
        machine_id=machine_id,
        snapshot=f"{base}:{ROLE_SNAPSHOT}",
        events=f"{base}:{ROLE_EVENTS}",
        request=f"{base}:{ROLE_REQUEST}",
    )


def parse_channel(name: str) -> tuple[str, str]:
    """Split a conventional channel name into ``(machine_id, role)``.

    Raises ValueError if *name* does not follow the convention.
    """
    parts = name.split(":", 2)
    if len(parts) != 3 or parts[0] != CHANNEL_PREFIX:
        raise ValueError(f"Not a machine channel: '{name}'")
    _, machine_id, role = parts
    if not machine_id or role not in ROLES:
        raise ValueError(f"Not a machine channel: '{name}'")
    return machine_id, role


def is_retained_channel(
    name: str,
    suffixes: tuple[str, ...] | list[str] = DEFAULT_RETAIN_SUFFIXES,
) -> bool:
    """Return ``True`` if *name* ends with one of the retention suffixes."""
    return any(name.endswith(suffix) for suffix in suffixes)
