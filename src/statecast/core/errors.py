"""Exception types and diagnostic records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

STALE_BROADCAST = "stale_broadcast"
TRANSITION_FAILURE = "transition_failure"
PREDICTION_FAILURE = "prediction_failure"
TRANSPORT_FAILURE = "transport_failure"


class StatecastError(Exception):
    """Base class for all statecast errors."""


class StaleBroadcast(StatecastError):
    """A broadcast arrived with a version that is not newer than the last accepted one."""

    def __init__(self, version: int, last_version: int) -> None:
        super().__init__(f"stale broadcast: version {version} <= {last_version}")
        self.version = version
        self.last_version = last_version


class TransitionFailure(StatecastError):
    """The host's transition function raised while applying an action."""

    def __init__(self, action_id: int | None, cause: BaseException) -> None:
        super().__init__(f"transition failed for action {action_id}: {cause}")
        self.action_id = action_id
        self.cause = cause


class PredictionFailure(StatecastError):
    """The client's prediction function raised while folding pending actions."""

    def __init__(self, action_id: int, cause: BaseException) -> None:
        super().__init__(f"prediction failed at action {action_id}: {cause}")
        self.action_id = action_id
        self.cause = cause


class TransportFailure(StatecastError):
    """A payload crossing the transport boundary was malformed."""


class ConfigError(StatecastError):
    """Configuration is missing or invalid."""


@dataclass(frozen=True)
class Diagnostic:
    """A non-fatal event reported through an ``on_diagnostic`` hook."""

    kind: str
    message: str
    detail: dict[str, Any] = field(default_factory=dict)
    exc: BaseException | None = None
