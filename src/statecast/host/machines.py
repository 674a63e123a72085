"""Transition functions for the bundled example machines.

A :class:`Reducer` maps an action's ``type`` to a handler that mutates a
deep copy of the state in place.  Callers always get a new state; the
input is never touched.  Unknown action types are a no-op, so the reducer
is total over whatever a client sends.

Two machines ship with the package:

``counter``
    ``{"count": int}`` with ``inc``, ``dec`` and ``set`` actions.
``app``
    Button labels plus a click counter, with ``click``, ``updateLabel``
    and ``reset`` actions.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Mutation = Callable[[dict, dict], None]


class Reducer:
    """Registry of in-place mutation handlers keyed by action type.

    Usage::

        reducer = Reducer()

        @reducer.on("inc")
        def _inc(state, action):
            state["count"] += action.get("by", 1)

        new_state = reducer(state, {"type": "inc"})
    """

    def __init__(self, name: str = "reducer") -> None:
        self.name = name
        self._handlers: dict[str, Mutation] = {}

    def on(self, action_type: str) -> Callable[[Mutation], Mutation]:
        """Decorator that registers a mutation handler for *action_type*."""

        def decorator(fn: Mutation) -> Mutation:
            self.register(action_type, fn)
            return fn

        return decorator

    def register(self, action_type: str, fn: Mutation) -> None:
        self._handlers[action_type] = fn

    def handles(self, action_type: str) -> bool:
        return action_type in self._handlers

    @property
    def action_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def __call__(self, state: Any, action: Any) -> Any:
        action_type = action.get("type") if isinstance(action, dict) else None
        handler = self._handlers.get(action_type) if isinstance(action_type, str) else None
        if handler is None:
            logger.debug("%s: ignoring unknown action %r", self.name, action_type)
            return state
        new_state = copy.deepcopy(state)
        handler(new_state, action)
        return new_state


# ---------------------------------------------------------------------------
# Counter
# ---------------------------------------------------------------------------

counter_reducer = Reducer("counter")


def initial_counter_state() -> dict:
    return {"count": 0}


@counter_reducer.on("inc")
def _counter_inc(state: dict, action: dict) -> None:
    state["count"] = state.get("count", 0) + int(action.get("by", 1))


@counter_reducer.on("dec")
def _counter_dec(state: dict, action: dict) -> None:
    state["count"] = state.get("count", 0) - int(action.get("by", 1))


@counter_reducer.on("set")
def _counter_set(state: dict, action: dict) -> None:
    value = action["value"]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"set requires an integer value, got {value!r}")
    state["count"] = value


def predict_counter(state: dict, action: dict) -> dict:
    """Optimistic counter prediction: apply the action and flag the result as pending."""
    predicted = counter_reducer(state, action)
    if predicted is state:
        return state
    return {**predicted, "pending": True}


# ---------------------------------------------------------------------------
# Buttons app
# ---------------------------------------------------------------------------

app_reducer = Reducer("app")


def initial_app_state() -> dict:
    return {
        "buttons": {
            "button1": {"label": {"value": "Click Me"}},
            "button2": {"label": {"value": "Press Here"}},
        },
        "clickCount": 0,
    }


@app_reducer.on("click")
def _app_click(state: dict, action: dict) -> None:
    state["clickCount"] = state.get("clickCount", 0) + 1
    sender = action.get("sender") or "unknown"
    if sender in state.get("buttons", {}):
        logger.debug("button %s clicked, total clicks %d", sender, state["clickCount"])


@app_reducer.on("updateLabel")
def _app_update_label(state: dict, action: dict) -> None:
    button = state.get("buttons", {}).get(action.get("buttonId"))
    if button is not None:
        button["label"]["value"] = str(action.get("label", ""))


@app_reducer.on("reset")
def _app_reset(state: dict, action: dict) -> None:
    state["clickCount"] = 0


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

MACHINES: dict[str, tuple[Reducer, Callable[[], dict]]] = {
    "counter": (counter_reducer, initial_counter_state),
    "app": (app_reducer, initial_app_state),
}


def get_machine(name: str) -> tuple[Reducer, Callable[[], dict]]:
    """Return ``(reducer, initial_state_factory)`` for a bundled machine.

    Raises KeyError with the list of known machines if *name* is unknown.
    """
    try:
        return MACHINES[name]
    except KeyError:
        raise KeyError(f"unknown machine '{name}' (known: {', '.join(sorted(MACHINES))})") from None
