"""
Notification Gateway

Pushes realtime events to rooms on the realtime service (Socket.io rooms
such as "user_<customer_id>" or "role_cashier"). Delivery is
fire-and-forget: notify() schedules the push and returns immediately, so
a slow or failing realtime service never delays or undoes a settlement.

Implementations:
- HttpNotificationGateway: POST {room, event, payload} to NOTIFICATION_URL
- LoggingNotificationGateway: log only (no realtime service configured)
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

import httpx

from config import get_settings

logger = logging.getLogger(__name__)

DELIVERY_TIMEOUT = 5  # seconds


class NotificationGateway:
    """Interface: notify(room, event, payload) must not block on delivery."""

    def notify(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown only)."""
        return None


class LoggingNotificationGateway(NotificationGateway):

    def notify(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        logger.info(
            f"Notification {event} -> {room}",
            extra={"room": room, "event": event, "order_number": payload.get("order_number")},
        )


class HttpNotificationGateway(NotificationGateway):
    """
    Delivers notifications to the realtime service over HTTP.

    Each push runs on its own task; tasks are retained until done so they
    are not garbage-collected mid-flight.
    """

    def __init__(
        self,
        url: str,
        timeout: float = DELIVERY_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        task = asyncio.create_task(self._deliver(room, event, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, room: str, event: str, payload: Dict[str, Any]) -> bool:
        body = {"room": room, "event": event, "payload": payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=body)

            if 200 <= response.status_code < 300:
                logger.debug(f"Notification {event} delivered to {room}")
                return True

            logger.warning(f"Notification {event} to {room} rejected: HTTP {response.status_code}")
            return False

        except httpx.TimeoutException:
            logger.warning(f"Notification {event} to {room} timed out")
            return False
        except httpx.RequestError as e:
            logger.warning(f"Notification {event} to {room} failed: {str(e)[:100]}")
            return False

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


_notification_gateway: Optional[NotificationGateway] = None


def get_notification_gateway() -> NotificationGateway:
    """Process-wide gateway; HTTP when NOTIFICATION_URL is set, logging otherwise."""
    global _notification_gateway
    if _notification_gateway is None:
        settings = get_settings()
        if settings.NOTIFICATION_URL:
            _notification_gateway = HttpNotificationGateway(
                settings.NOTIFICATION_URL,
                timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
            )
        else:
            logger.info("NOTIFICATION_URL not configured - notifications will only be logged")
            _notification_gateway = LoggingNotificationGateway()
    return _notification_gateway
