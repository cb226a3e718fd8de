"""
Job status notifications.

Publishing is best-effort: a failed or slow publish is logged and dropped,
never surfaced to the queue.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

logger = logging.getLogger(__name__)


UPDATE_EVENT = "unsubscribe-update"


def user_channel(user_id: str) -> str:
    return f"user-{user_id}"


class NotificationBus(Protocol):
    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None: ...


# ============================================================================
# Buses
# ============================================================================


class LoggingNotificationBus:
    """Writes events to the log. Used when no push endpoint is configured."""

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"[{channel}] {event}: {payload}")


class WebhookNotificationBus:
    """POSTs events as JSON to a push relay."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                self.url,
                json={"channel": channel, "event": event, "data": payload},
            )
            response.raise_for_status()


class InMemoryNotificationBus:
    """
    Keeps published events in process.

    Subscribers receive events for their channel on an asyncio.Queue.
    """

    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, channel: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[channel].append(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        if queue in self._subscribers.get(channel, []):
            self._subscribers[channel].remove(queue)

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((channel, event, payload))
        for queue in self._subscribers.get(channel, []):
            queue.put_nowait((event, payload))

    def for_channel(self, channel: str) -> List[Dict[str, Any]]:
        return [payload for ch, _, payload in self.events if ch == channel]


def build_notification_bus(settings) -> NotificationBus:
    if settings.NOTIFY_WEBHOOK_URL:
        return WebhookNotificationBus(settings.NOTIFY_WEBHOOK_URL, timeout=settings.NOTIFY_TIMEOUT)
    return LoggingNotificationBus()


# ============================================================================
# Notifier
# ============================================================================


class Notifier:
    """Publishes job status updates to the owning user's channel."""

    def __init__(self, bus: NotificationBus, timeout: float = 5.0):
        self.bus = bus
        self.timeout = timeout

    async def notify(self, user_id: str, job_id: str, status: str, message: str) -> bool:
        """
        Publish ``{jobId, status, message, timestamp}``.

        Returns:
            True if the bus accepted the event, False if it was dropped
        """
        payload = {
            "jobId": job_id,
            "status": status,
            "message": message,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

        try:
            await asyncio.wait_for(
                self.bus.publish(user_channel(user_id), UPDATE_EVENT, payload),
                timeout=self.timeout,
            )
            return True
        except Exception as e:
            logger.error(f"Failed to send notification for job {job_id}: {e!r}")
            return False
