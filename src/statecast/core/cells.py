"""Framework-agnostic observable cells.

A cell is the smallest reactive primitive a rendering layer needs: read the
current value, and subscribe to changes.  Binding layers (a Qt signal, a
textual reactive, a notebook widget) adapt a cell to their own primitive.

``subscribe(fn)`` calls *fn* once with the current value before returning,
then again after every change.  Subscriber failures are logged and never
reach the code that changed the value.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Generic, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)

Unsubscribe = Callable[[], None]


class ReadableCell(Protocol[T_co]):
    """Read-only view of a reactive value."""

    @property
    def value(self) -> T_co: ...

    def subscribe(self, fn: Callable[[T_co], Any]) -> Unsubscribe: ...


class _CellBase(Generic[T]):
    def __init__(self) -> None:
        self._subscribers: list[Callable[[T], Any]] = []

    @property
    def value(self) -> T:  # pragma: no cover - overridden
        raise NotImplementedError

    def subscribe(self, fn: Callable[[T], Any]) -> Unsubscribe:
        self._subscribers.append(fn)
        self._call(fn, self.value)
        return self._unsubscriber(fn)

    def _unsubscriber(self, fn: Callable[[T], Any]) -> Unsubscribe:
        def unsubscribe() -> None:
            try:
                self._subscribers.remove(fn)
            except ValueError:
                pass

        return unsubscribe

    def _notify(self, value: T) -> None:
        for fn in list(self._subscribers):
            self._call(fn, value)

    @staticmethod
    def _call(fn: Callable[[T], Any], value: T) -> None:
        try:
            fn(value)
        except Exception:
            logger.exception("cell subscriber %r failed", fn)


class ValueCell(_CellBase[T]):
    """A cell holding a value.  ``set()`` notifies only when the value changes."""

    def __init__(self, initial: T) -> None:
        super().__init__()
        self._value = initial

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        self._notify(value)


class ComputedCell(_CellBase[T]):
    """A cell whose value is recomputed from *compute* on every read.

    The owner calls :meth:`invalidate` when an input changes; subscribers
    are notified if the recomputed value differs from what they last saw.
    """

    def __init__(self, compute: Callable[[], T]) -> None:
        super().__init__()
        self._compute = compute
        self._last_seen: Any = _UNSET

    @property
    def value(self) -> T:
        return self._compute()

    def subscribe(self, fn: Callable[[T], Any]) -> Unsubscribe:
        self._subscribers.append(fn)
        current = self.value
        self._last_seen = current
        self._call(fn, current)
        return self._unsubscriber(fn)

    def invalidate(self) -> None:
        if not self._subscribers:
            self._last_seen = _UNSET
            return
        current = self.value
        if self._last_seen is not _UNSET and current == self._last_seen:
            return
        self._last_seen = current
        self._notify(current)


class _Unset:
    def __repr__(self) -> str:
        return "<unset>"


_UNSET: Any = _Unset()
