"""Outbound notifications for the UI and transport layers.

The core never renders anything. Instead it publishes named events with a
small payload and lets the embedding application decide what to show, much
like the server pushes ``socketio.emit`` updates to connected clients.

Listeners may be plain functions or coroutine functions. A listener that
raises is logged and skipped so one faulty subscriber cannot break key
management.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, Dict, List

logger = logging.getLogger(__name__)

IDENTITY_READY = "identity_ready"
IDENTITY_LOCKED = "identity_locked"
RECOVERY_CODE_ISSUED = "recovery_code_issued"
SESSION_KEY_READY = "session_key_ready"
ENCRYPTION_ENABLED = "encryption_enabled"
ENCRYPTION_DISABLED = "encryption_disabled"
ENCRYPTION_ENABLE_FAILED = "encryption_enable_failed"
KEYS_RESET = "keys_reset"

Listener = Callable[["Event"], Any]


@dataclass(frozen=True)
class Event:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


class EventBus:
    """Minimal publish/subscribe hub."""

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, name: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``name`` and return an unsubscribe hook."""

        self._listeners[name].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[name]:
                self._listeners[name].remove(listener)

        return unsubscribe

    async def emit(self, name: str, **payload: Any) -> None:
        event = Event(name, payload)
        for listener in list(self._listeners[name]):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener for %s failed", name)
