"""Wire shapes exchanged between host, relay, and clients.

Everything that crosses the transport boundary is validated here before it
reaches the adapter or the reconciliation logic.  Malformed payloads are
rejected with :class:`~statecast.core.errors.TransportFailure`.

Wire keys are camelCase (``ackId``) to match what browser-side peers
send; Python attributes are snake_case.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

from statecast.core.errors import TransportFailure
from statecast.core.ids import CLIENT_ID_PREFIX, validate_id


# ---------------------------------------------------------------------------
# JSON compatibility
# ---------------------------------------------------------------------------


def ensure_json_compatible(value: Any) -> Any:
    """Return *value* unchanged if it survives a JSON round trip.

    Accepts ``None``, booleans, integers, finite floats, strings, lists,
    tuples, and dicts with string keys, nested arbitrarily.  Rejects
    callables, cycles, and anything else.

    Raises:
        TransportFailure: If *value* is not JSON-compatible.
    """
    _check_json(value, set(), "$")
    return value


def _check_json(value: Any, seen: set[int], path: str) -> None:
    if value is None or isinstance(value, (bool, int, str)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise TransportFailure(f"non-finite float at {path}")
        return
    if isinstance(value, (list, tuple, dict)):
        marker = id(value)
        if marker in seen:
            raise TransportFailure(f"cyclic reference at {path}")
        seen.add(marker)
        try:
            if isinstance(value, dict):
                for key, item in value.items():
                    if not isinstance(key, str):
                        raise TransportFailure(f"non-string key {key!r} at {path}")
                    _check_json(item, seen, f"{path}.{key}")
            else:
                for index, item in enumerate(value):
                    _check_json(item, seen, f"{path}[{index}]")
        finally:
            seen.discard(marker)
        return
    raise TransportFailure(f"unsupported type {type(value).__name__} at {path}")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class VersionedBroadcast(_WireModel):
    """``{value, version, ackId?}`` published by the adapter on the snapshot channel."""

    value: Any
    version: StrictInt = Field(ge=0)
    ack_id: StrictInt | None = Field(default=None, alias="ackId")
    ack_client: str | None = Field(default=None, alias="ackClient")
    error: str | None = None

    @field_validator("value")
    @classmethod
    def _value_is_json(cls, v: Any) -> Any:
        try:
            return ensure_json_compatible(v)
        except TransportFailure as exc:
            raise ValueError(str(exc)) from exc


class ActionEnvelope(_WireModel):
    """``{action, id}`` published by a client on the events channel."""

    action: Any
    id: StrictInt = Field(ge=1)
    client_id: str | None = Field(default=None, alias="clientId")

    @field_validator("action")
    @classmethod
    def _action_is_json(cls, v: Any) -> Any:
        try:
            return ensure_json_compatible(v)
        except TransportFailure as exc:
            raise ValueError(str(exc)) from exc

    @field_validator("client_id")
    @classmethod
    def _client_id_is_valid(cls, v: str | None) -> str | None:
        if v is not None and not validate_id(v, CLIENT_ID_PREFIX):
            raise ValueError(f"expected {CLIENT_ID_PREFIX}_<ULID>, got {v!r}")
        return v


class SnapshotRequest(_WireModel):
    """Payload for the request-snapshot channel.  The timestamp is informational."""

    ts: StrictInt | None = None


class RelayFrame(_WireModel):
    """One message on the WebSocket bridge between a peer and the relay."""

    type: Literal["publish", "subscribe", "unsubscribe"]
    topic: str = Field(min_length=1)
    data: Any = None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse(model: type[_WireModel], payload: Any, what: str) -> Any:
    if isinstance(payload, _WireModel):
        if isinstance(payload, model):
            return payload
        payload = to_wire(payload)
    if not isinstance(payload, Mapping):
        raise TransportFailure(f"malformed {what}: expected an object, got {type(payload).__name__}")
    try:
        return model.model_validate(dict(payload))
    except ValidationError as exc:
        raise TransportFailure(f"malformed {what}: {_summarize(exc)}") from exc


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_broadcast(payload: Any) -> VersionedBroadcast:
    """Validate a raw broadcast payload.  Raises TransportFailure."""
    return _parse(VersionedBroadcast, payload, "broadcast")


def parse_envelope(payload: Any) -> ActionEnvelope:
    """Validate a raw action envelope.  Raises TransportFailure."""
    return _parse(ActionEnvelope, payload, "action envelope")


def parse_snapshot_request(payload: Any) -> SnapshotRequest:
    """Validate a snapshot request.  ``None`` is accepted as an empty request."""
    if payload is None:
        return SnapshotRequest()
    return _parse(SnapshotRequest, payload, "snapshot request")


def parse_frame(payload: Any) -> RelayFrame:
    """Validate a decoded relay frame.  Raises TransportFailure."""
    return _parse(RelayFrame, payload, "relay frame")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def to_wire(model: BaseModel) -> dict:
    """Dump *model* with wire aliases, omitting optional keys that are ``None``."""
    data = model.model_dump(by_alias=True)
    required = {
        field.alias or name
        for name, field in type(model).model_fields.items()
        if field.is_required()
    }
    return {k: v for k, v in data.items() if v is not None or k in required}


def serialize_frame(frame: RelayFrame) -> str:
    """Serialize a relay frame to compact JSON text."""
    return json.dumps(to_wire(frame), sort_keys=True, separators=(",", ":"))


def deserialize_frame(raw: str | bytes) -> RelayFrame:
    """Decode and validate a relay frame.  Raises TransportFailure."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise TransportFailure(f"malformed relay frame: {exc}") from exc
    return parse_frame(data)
