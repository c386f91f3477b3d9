"""
Device-side agent.

Runs on the machine wired to the actuator. It dispenses locally and then
reports the feeding back through the queue as a ``post-activation`` command,
so the worker reconciles state without driving the hardware a second time.
"""

import logging
import uuid
from typing import Callable, Optional

from .actuator import ActuatorSequencer
from .exceptions import HardwareFault
from .models import Command, CommandAction, FeederPatch
from .queue import CommandQueue
from .reconcile import now_ms
from .registry import DeviceRegistry

_LOGGER = logging.getLogger(__name__)


class DeviceAgent:
    """Dispenses on local hardware and reports the result"""

    def __init__(
        self,
        registry: DeviceRegistry,
        sequencer: ActuatorSequencer,
        queue: CommandQueue,
        clock: Callable[[], int] = now_ms,
    ):
        self.registry = registry
        self.sequencer = sequencer
        self.queue = queue
        self._clock = clock

    async def feed(self, device_id: str) -> Optional[str]:
        """
        Run one feeding cycle and enqueue its post-activation report.

        Returns:
            The report's command id, or None if the hardware failed and
            nothing was reported
        """
        config = self.registry.get(device_id)
        try:
            await self.sequencer.actuate(config)
        except HardwareFault as exc:
            _LOGGER.error("[%s] Feeding failed, not reporting: %s", device_id, exc.reason)
            return None

        command = Command(
            id=device_id,
            action=CommandAction.POST_ACTIVATION,
            fields=FeederPatch(last_active=self._clock()),
            command_id=f"post-{uuid.uuid4().hex}",
        )
        try:
            await self.queue.send(command.to_json())
        except Exception as exc:
            _LOGGER.error("[%s] Could not send post-activation report: %s", device_id, exc)
            return None
        _LOGGER.info("[%s] Post-activation report queued", device_id)
        return command.command_id
