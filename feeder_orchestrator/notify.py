"""
Best-effort side effects: live-update notifications and schedule registration.

Nothing here raises. Failures are logged and dropped so they can never change
whether a command is acknowledged.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from .config import DEFAULT_NOTIFY_TIMEOUT
from .models import FeederState

_LOGGER = logging.getLogger(__name__)

NOTIFICATION_ACTION = "sendNotification"
SUBSCRIPTION_FEEDER_UPDATE = "feederUpdate"


def notification_payload(state: FeederState) -> Dict[str, Any]:
    """Live-update message for one feeder's new state"""
    return {
        "action": NOTIFICATION_ACTION,
        "subscriptionType": SUBSCRIPTION_FEEDER_UPDATE,
        "value": state.to_wire(),
    }


class _JsonPoster:
    """POSTs JSON with an optional shared aiohttp session"""

    def __init__(self, url: str, session: Optional[ClientSession] = None,
                 timeout: float = DEFAULT_NOTIFY_TIMEOUT):
        self.url = url
        self._session = session
        self._timeout = ClientTimeout(total=timeout)

    async def _post(self, payload: Dict[str, Any]) -> None:
        if self._session is not None:
            await self._send(self._session, payload)
            return
        async with ClientSession(timeout=self._timeout) as session:
            await self._send(session, payload)

    async def _send(self, session: ClientSession, payload: Dict[str, Any]) -> None:
        async with session.post(self.url, json=payload, timeout=self._timeout) as response:
            if response.status >= 400:
                body = await response.text()
                raise ClientError(f"HTTP {response.status}: {body[:200]}")


class NotificationSink(ABC):
    """Pushes new feeder state to live subscribers"""

    @abstractmethod
    async def publish(self, state: FeederState) -> None:
        """Send the state; must not raise"""


class NullNotificationSink(NotificationSink):
    """No sink configured"""

    async def publish(self, state: FeederState) -> None:
        _LOGGER.debug("[%s] No notification sink configured", state.id)


class HttpNotificationSink(_JsonPoster, NotificationSink):
    """Posts the notification payload to the live-update endpoint."""

    async def publish(self, state: FeederState) -> None:
        try:
            await self._post(notification_payload(state))
            _LOGGER.debug("[%s] Notification sent", state.id)
        except Exception as exc:
            _LOGGER.warning("[%s] Notification failed: %s", state.id, exc)


class SchedulerRegistrar(ABC):
    """Told when a feeder's interval changes so the trigger rule can follow"""

    @abstractmethod
    async def register(self, device_id: str, interval: str) -> None:
        """Register the new interval; must not raise"""


class NullSchedulerRegistrar(SchedulerRegistrar):
    async def register(self, device_id: str, interval: str) -> None:
        _LOGGER.debug("[%s] No scheduler registrar configured", device_id)


class HttpSchedulerRegistrar(_JsonPoster, SchedulerRegistrar):
    """Posts ``{"id", "interval"}`` to the scheduling endpoint."""

    async def register(self, device_id: str, interval: str) -> None:
        try:
            await self._post({"id": device_id, "interval": interval})
            _LOGGER.info("[%s] Registered interval %r", device_id, interval)
        except Exception as exc:
            _LOGGER.warning("[%s] Interval registration failed: %s", device_id, exc)
