"""Named value modifiers that outside policy code can hook into.

A modifier is a callable ``fn(value, *args) -> value``. Modifiers registered
under the same name run in registration order, each one receiving the value
returned by the previous one.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable

SEND_NOTIFICATION_MODIFIER = "send_notification"

Modifier = Callable[..., Any]

_LOCK = threading.Lock()
_MODIFIERS: dict[str, list[Modifier]] = defaultdict(list)


def register_modifier(name: str, fn: Modifier) -> None:
    with _LOCK:
        _MODIFIERS[name].append(fn)


def unregister_modifier(name: str, fn: Modifier) -> None:
    with _LOCK:
        handlers = _MODIFIERS.get(name)
        if not handlers:
            return
        try:
            handlers.remove(fn)
        except ValueError:
            return
        if not handlers:
            _MODIFIERS.pop(name, None)


def clear_modifiers(name: str | None = None) -> None:
    with _LOCK:
        if name is None:
            _MODIFIERS.clear()
        else:
            _MODIFIERS.pop(name, None)


def apply_modifier(name: str, value: Any, *args: Any) -> Any:
    with _LOCK:
        handlers = list(_MODIFIERS.get(name, ()))
    for handler in handlers:
        value = handler(value, *args)
    return value
