from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from .core.events import ALL_TOPICS, EventHub

logger = logging.getLogger(__name__)

# Delivered only to the sockets of the user named in the payload.
_PRIVATE_TOPICS = {"session", "chat.moderation"}
_IGNORED_TOPICS = {"auth.state"}


class ConnectionManager:
    def __init__(self) -> None:
        self.connections: Dict[str, Set[WebSocket]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe = None

    def attach(self, hub: EventHub, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        if self._unsubscribe is None:
            self._unsubscribe = hub.subscribe(ALL_TOPICS, self.dispatch)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._loop = None

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        await websocket.accept()
        self.connections.setdefault(user_id, set()).add(websocket)

    def disconnect(self, websocket: WebSocket, user_id: str) -> None:
        sockets = self.connections.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            self.connections.pop(user_id, None)

    async def send_to_user(self, user_id: str, message: Dict[str, Any]) -> None:
        for websocket in list(self.connections.get(user_id, ())):
            try:
                await websocket.send_json(message)
            except Exception as exc:
                logger.debug("Dropping socket for %s: %s", user_id, exc)
                self.disconnect(websocket, user_id)

    async def broadcast(self, message: Dict[str, Any]) -> None:
        for user_id in list(self.connections):
            await self.send_to_user(user_id, message)

    def dispatch(self, topic: str, payload: Dict[str, Any]) -> None:
        """Event hub listener; may be called from worker threads."""
        if topic in _IGNORED_TOPICS or self._loop is None or not self.connections:
            return
        message = {"type": topic, **payload}
        if topic in _PRIVATE_TOPICS:
            coro = self.send_to_user(str(payload.get("user_id")), message)
        else:
            coro = self.broadcast(message)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._loop.create_task(coro)
        else:
            asyncio.run_coroutine_threadsafe(coro, self._loop)
