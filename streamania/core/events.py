"""
In-process change notifications.

Services publish on a topic after every committed mutation; listeners
(the session context, the WebSocket manager) subscribe once and get back
an unsubscribe callable.

Topics: ``auth.state``, ``session``, ``stream.active``, ``quiz.active``,
``chat.message``, ``chat.moderation``.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]

ALL_TOPICS = "*"


class EventHub:
    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(topic, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(topic, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(topic, [])) + list(
                self._listeners.get(ALL_TOPICS, [])
            )
        for listener in listeners:
            try:
                listener(topic, payload)
            except Exception:
                # A failing listener must not undo a write that already committed.
                logger.exception("Event listener failed for topic %s", topic)
