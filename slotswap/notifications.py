"""Notification dispatcher - best-effort delivery of swap events to users"""

import enum
import logging
from typing import Any, Dict

from slotswap.config import NOTIFY_MAX_ATTEMPTS
from slotswap.realtime import hub

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """Push events; values are the event names clients subscribe to."""

    REQUEST_RECEIVED = "swapRequestReceived"
    REQUEST_ACCEPTED = "swapRequestAccepted"
    REQUEST_REJECTED = "swapRequestRejected"


class NotificationDispatcher:
    """
    Hands events to a transport exposing ``publish(user_id, event, payload)``.

    A failed attempt is logged and retried up to ``max_attempts`` times, then
    dropped. Nothing is raised to the caller: swap outcomes are already
    committed when notifications go out.
    """

    def __init__(self, transport, max_attempts: int = NOTIFY_MAX_ATTEMPTS):
        self.transport = transport
        self.max_attempts = max(1, max_attempts)

    def notify(self, user_id: str, kind: EventKind, payload: Dict[str, Any]) -> bool:
        kind = EventKind(kind)
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.transport.publish(user_id, kind.value, payload)
                logger.info(f"Dispatched {kind.value} to user {user_id}")
                return True
            except Exception as e:
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} to dispatch {kind.value} to user {user_id} failed: {e}"
                )

        logger.error(f"Dropping {kind.value} notification for user {user_id}")
        return False


dispatcher = NotificationDispatcher(hub)


def get_dispatcher() -> NotificationDispatcher:
    """Dependency injection for the process-wide dispatcher"""
    return dispatcher
