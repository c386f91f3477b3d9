"""
Command queue interface and the in-process transport.

Delivery is at-least-once: a received message stays owned by the consumer
until it is acknowledged or released. Released messages are delivered again
until ``max_receive_count`` is reached, then moved to the dead-letter list.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, List, Optional

from .config import DEFAULT_MAX_RECEIVE_COUNT

_LOGGER = logging.getLogger(__name__)


class QueuedMessage:
    """Envelope around one queued command body"""

    def __init__(self, message_id: str, body: str, receive_count: int = 0):
        self.message_id = message_id
        self.body = body
        self.receive_count = receive_count

    def __repr__(self) -> str:
        return f"QueuedMessage({self.message_id!r}, receive_count={self.receive_count})"


class CommandQueue(ABC):
    """Durable channel between command producers and the worker"""

    @abstractmethod
    async def send(self, body: str) -> str:
        """Enqueue a body, returning its message id"""

    @abstractmethod
    async def receive(self, wait_time: float) -> Optional[QueuedMessage]:
        """Wait up to ``wait_time`` seconds for the next message"""

    @abstractmethod
    async def ack(self, message: QueuedMessage) -> None:
        """Delete a processed message"""

    @abstractmethod
    async def release(self, message: QueuedMessage) -> None:
        """Return an unprocessed message for redelivery"""


class MemoryCommandQueue(CommandQueue):
    """FIFO queue held in memory."""

    def __init__(self, max_receive_count: int = DEFAULT_MAX_RECEIVE_COUNT):
        self.max_receive_count = max_receive_count
        self.dead_letters: List[QueuedMessage] = []
        self._ready: Deque[QueuedMessage] = deque()
        self._in_flight: Dict[str, QueuedMessage] = {}
        self._available = asyncio.Condition()
        self._ids = itertools.count(1)

    async def send(self, body: str) -> str:
        message = QueuedMessage(f"msg-{next(self._ids)}", body)
        async with self._available:
            self._ready.append(message)
            self._available.notify()
        return message.message_id

    async def receive(self, wait_time: float) -> Optional[QueuedMessage]:
        async with self._available:
            if not self._ready:
                try:
                    await asyncio.wait_for(
                        self._available.wait_for(lambda: bool(self._ready)), wait_time
                    )
                except asyncio.TimeoutError:
                    return None
            message = self._ready.popleft()
            message.receive_count += 1
            self._in_flight[message.message_id] = message
            return message

    async def ack(self, message: QueuedMessage) -> None:
        async with self._available:
            self._in_flight.pop(message.message_id, None)

    async def release(self, message: QueuedMessage) -> None:
        async with self._available:
            if self._in_flight.pop(message.message_id, None) is None:
                return
            if message.receive_count >= self.max_receive_count:
                _LOGGER.error(
                    "Message %s exceeded %d receives, dead-lettering",
                    message.message_id, self.max_receive_count,
                )
                self.dead_letters.append(message)
                return
            self._ready.append(message)
            self._available.notify()

    def pending(self) -> int:
        """Messages waiting or in flight"""
        return len(self._ready) + len(self._in_flight)
