"""
Error taxonomy for the command pipeline.

Every failure the worker can hit maps onto one of these. ``terminal`` tells the
queue-facing loop whether to acknowledge the message (drop it) or leave it for
redelivery.
"""

from typing import Optional


class FeederError(Exception):
    """Base class for command processing failures"""

    terminal = True

    def __init__(self, device_id: Optional[str], reason: str):
        super().__init__(f"[{device_id}] {reason}" if device_id else reason)
        self.device_id = device_id
        self.reason = reason


class DeviceNotFound(FeederError):
    """No state record or registry entry exists for the device"""

    def __init__(self, device_id: Optional[str]):
        super().__init__(device_id, "device not found")


class CommandValidationError(FeederError):
    """Malformed command, empty patch or bad interval"""


class FeederDisabled(FeederError):
    """Activation rejected because the feeder is disabled"""

    def __init__(self, device_id: str):
        super().__init__(device_id, "feeder is disabled")


class OutOfFood(FeederError):
    """Activation rejected because no food is left"""

    def __init__(self, device_id: str):
        super().__init__(device_id, "no food remaining")


class HardwareFault(FeederError):
    """Actuation aborted mid-sequence; the line was forced back to rest.

    Terminal: retrying could dispense twice.
    """


class StoreUnavailable(FeederError):
    """State store read or write failed; the queue should redeliver"""

    terminal = False
