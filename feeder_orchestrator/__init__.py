"""
Feeder Orchestrator

Command pipeline for automated pet feeders: queued commands are validated
against each feeder's state, drive the dispensing actuator, and the
reconciled state is written back and pushed to live subscribers.

Example usage:
    from feeder_orchestrator import (
        ActuatorSequencer, Command, CommandWorker, DeviceRegistry,
        MemoryCommandQueue, MemoryFeederStore,
    )

    async def main():
        registry = DeviceRegistry.load("devices.json")
        store = MemoryFeederStore(states)
        queue = MemoryCommandQueue()
        worker = CommandWorker(store, registry, ActuatorSequencer(), queue=queue)

        await queue.send(Command(id="f1", action="activate").to_json())
        await worker.run(stop_event)

    asyncio.run(main())
"""

from .actuator import ActuatorSequencer, BleServoLine, GpioServoLine, SimulatedServoLine
from .agent import DeviceAgent
from .config import WorkerSettings
from .exceptions import (
    CommandValidationError,
    DeviceNotFound,
    FeederDisabled,
    FeederError,
    HardwareFault,
    OutOfFood,
    StoreUnavailable,
)
from .ledger import CommandLedger
from .models import Command, CommandAction, FeederPatch, FeederState, FeederStatus
from .notify import HttpNotificationSink, HttpSchedulerRegistrar, notification_payload
from .queue import MemoryCommandQueue, QueuedMessage
from .registry import DeviceConfig, DeviceRegistry, Transport
from .schedule import IntervalSchedule, is_valid_interval
from .store import JsonFeederStore, MemoryFeederStore
from .worker import CommandWorker, Disposition

__version__ = "0.1.0"
__all__ = [
    "ActuatorSequencer",
    "BleServoLine",
    "Command",
    "CommandAction",
    "CommandLedger",
    "CommandValidationError",
    "CommandWorker",
    "DeviceAgent",
    "DeviceConfig",
    "DeviceNotFound",
    "DeviceRegistry",
    "Disposition",
    "FeederDisabled",
    "FeederError",
    "FeederPatch",
    "FeederState",
    "FeederStatus",
    "GpioServoLine",
    "HardwareFault",
    "HttpNotificationSink",
    "HttpSchedulerRegistrar",
    "IntervalSchedule",
    "JsonFeederStore",
    "MemoryCommandQueue",
    "MemoryFeederStore",
    "OutOfFood",
    "QueuedMessage",
    "SimulatedServoLine",
    "StoreUnavailable",
    "Transport",
    "WorkerSettings",
    "is_valid_interval",
    "notification_payload",
]
