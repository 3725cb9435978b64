"""Per-user WebSocket channels used as the push transport"""

import asyncio
import logging
from collections import defaultdict
from functools import partial
from typing import Dict, List

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketHub:
    """
    Keeps the open sockets of each user.

    ``publish`` may be called from worker threads (sync routes); it schedules
    the send on the event loop the sockets live on and returns immediately.
    """

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = defaultdict(list)
        self._loop = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop):
        """Fix the event loop all sockets are served on; called at startup."""
        self._loop = loop

    async def connect(self, user_id: str, websocket: WebSocket):
        running = asyncio.get_running_loop()
        if self._loop is None or self._loop.is_closed():
            self.bind_loop(running)
        elif self._loop is not running:
            raise RuntimeError("Realtime hub is bound to another event loop")
        # channel is registered before the handshake completes
        self.active_connections[user_id].append(websocket)
        await websocket.accept()
        logger.info(f"User {user_id} joined realtime channel")

    def disconnect(self, user_id: str, websocket: WebSocket):
        connections = self.active_connections.get(user_id, [])
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            self.active_connections.pop(user_id, None)
        logger.info(f"User {user_id} left realtime channel")

    async def send_to_user(self, user_id: str, message: dict):
        for connection in list(self.active_connections.get(user_id, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping dead socket for user {user_id}: {e}")
                self.disconnect(user_id, connection)

    def publish(self, user_id: str, event: str, payload: dict):
        if not self.active_connections.get(user_id):
            logger.debug(f"User {user_id} has no open channel, {event} not pushed")
            return
        if self._loop is None or self._loop.is_closed():
            raise RuntimeError("Realtime hub has no running event loop")

        future = asyncio.run_coroutine_threadsafe(
            self.send_to_user(user_id, {"event": event, "data": payload}), self._loop
        )
        future.add_done_callback(partial(_log_delivery, user_id, event))


def _log_delivery(user_id: str, event: str, future):
    if future.cancelled():
        logger.warning(f"Push of {event} to user {user_id} was cancelled")
    elif future.exception() is not None:
        logger.warning(f"Push of {event} to user {user_id} failed: {future.exception()}")


hub = WebSocketHub()
