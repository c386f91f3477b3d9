"""
Actuator sequencer: drives one feeder output through a fixed feeding cycle.

The cycle rotates the auger forward, briefly reverses it to clear jams, and
repeats, then returns the servo to rest. The line is always put back to rest
and released, whatever happens during the phases.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Sequence

import pigpio

from .config import PULSE_OPEN, PULSE_REST, PULSE_REVERSE
from .exceptions import HardwareFault
from .protocol import ServoBLEProtocol
from .registry import DeviceConfig, Transport

_LOGGER = logging.getLogger(__name__)

FEEDING_CYCLE = (PULSE_OPEN, PULSE_REVERSE, PULSE_OPEN, PULSE_REVERSE)


class ActuatorLine(ABC):
    """One hardware output that accepts servo pulse widths"""

    @abstractmethod
    async def open(self) -> None:
        """Acquire the line"""

    @abstractmethod
    async def write(self, pulse_width: int) -> None:
        """Drive the servo at ``pulse_width`` microseconds (0 = rest)"""

    @abstractmethod
    async def close(self) -> None:
        """Release the line"""


class SimulatedServoLine(ActuatorLine):
    """
    In-process line that records every pulse written.

    Args:
        channel: Channel number, only used in log output
        fail_at: 1-based write number that raises, to simulate a stall
    """

    def __init__(self, channel: int = 0, fail_at: Optional[int] = None):
        self.channel = channel
        self.fail_at = fail_at
        self.writes: List[int] = []
        self.is_open = False
        self.open_count = 0

    async def open(self) -> None:
        self.is_open = True
        self.open_count += 1

    async def write(self, pulse_width: int) -> None:
        if not self.is_open:
            raise RuntimeError("line is not open")
        self.writes.append(pulse_width)
        if self.fail_at is not None and len(self.writes) == self.fail_at:
            raise RuntimeError(f"servo stalled on channel {self.channel}")

    async def close(self) -> None:
        self.is_open = False

    @property
    def at_rest(self) -> bool:
        return bool(self.writes) and self.writes[-1] == PULSE_REST


class BleServoLine(ActuatorLine):
    """Servo channel on a BLE controller"""

    def __init__(self, address: str, channel: int, protocol: Optional[ServoBLEProtocol] = None):
        self.channel = channel
        self._protocol = protocol or ServoBLEProtocol(address)

    async def open(self) -> None:
        if not await self._protocol.connect():
            raise RuntimeError(f"Could not connect to controller {self._protocol.device_address}")

    async def write(self, pulse_width: int) -> None:
        await self._protocol.write_servo(self.channel, pulse_width)
        faults = self._protocol.faults()
        if faults and pulse_width != PULSE_REST:
            raise RuntimeError(f"controller reported fault code {faults[-1]}")

    async def close(self) -> None:
        try:
            await self._protocol.release(self.channel)
        finally:
            await self._protocol.disconnect()


class GpioServoLine(ActuatorLine):
    """
    Servo wired to a local GPIO pin, driven through the pigpio daemon.

    Args:
        pin: Broadcom GPIO number the servo signal is wired to
        pi_factory: Returns a connected ``pigpio.pi`` handle
    """

    def __init__(self, pin: int, pi_factory: Callable[[], "pigpio.pi"] = pigpio.pi):
        self.pin = pin
        self._pi_factory = pi_factory
        self._pi: Optional["pigpio.pi"] = None

    async def open(self) -> None:
        pi = await asyncio.to_thread(self._pi_factory)
        if not pi.connected:
            await asyncio.to_thread(pi.stop)
            raise RuntimeError(f"pigpio daemon not reachable for pin {self.pin}")
        self._pi = pi

    async def write(self, pulse_width: int) -> None:
        if self._pi is None:
            raise RuntimeError("line is not open")
        await asyncio.to_thread(self._pi.set_servo_pulsewidth, self.pin, pulse_width)

    async def close(self) -> None:
        if self._pi is None:
            return
        pi, self._pi = self._pi, None
        await asyncio.to_thread(pi.stop)


LineFactory = Callable[[DeviceConfig], ActuatorLine]


def default_line_factory(config: DeviceConfig) -> ActuatorLine:
    """Pick the line implementation named by the device's transport"""
    if config.transport == Transport.BLE:
        return BleServoLine(config.address, config.pin)
    if config.transport == Transport.SIMULATED:
        return SimulatedServoLine(config.pin)
    return GpioServoLine(config.pin)


class ActuatorSequencer:
    """
    Runs the feeding cycle on a device's line.

    Example:
        sequencer = ActuatorSequencer()
        await sequencer.actuate(registry.get("f1"))
    """

    def __init__(
        self,
        line_factory: LineFactory = default_line_factory,
        phases: Sequence[int] = FEEDING_CYCLE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._line_factory = line_factory
        self._phases = tuple(phases)
        self._sleep = sleep

    async def actuate(self, config: DeviceConfig) -> None:
        """
        Run one full feeding cycle.

        Once started the cycle is not interrupted: if the caller is cancelled
        the sequence still finishes before the cancellation propagates.

        Raises:
            HardwareFault: If the line could not be opened, a phase failed,
                or the line could not be returned to rest
        """
        task = asyncio.ensure_future(self._run(config))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            _LOGGER.warning("[%s] Cancelled during actuation, finishing cycle", config.id)
            if not task.done():
                await asyncio.wait({task})
            if not task.cancelled():
                task.exception()
            raise

    async def _run(self, config: DeviceConfig) -> None:
        line = self._line_factory(config)
        try:
            await line.open()
        except Exception as exc:
            raise HardwareFault(config.id, f"could not open line {config.pin}: {exc}") from exc

        _LOGGER.info("[%s] Actuating on line %d", config.id, config.pin)
        rested = False
        try:
            for index, pulse in enumerate(self._phases, start=1):
                try:
                    await line.write(pulse)
                    await self._sleep(config.phase_duration / 1000)
                except Exception as exc:
                    _LOGGER.error("[%s] Phase %d failed: %s", config.id, index, exc)
                    raise HardwareFault(config.id, f"phase {index} failed: {exc}") from exc
        finally:
            rested = await self._rest(line, config)

        if not rested:
            raise HardwareFault(config.id, "could not return actuator to rest")
        _LOGGER.info("[%s] Actuation complete", config.id)

    async def _rest(self, line: ActuatorLine, config: DeviceConfig) -> bool:
        rested = True
        try:
            await line.write(PULSE_REST)
        except Exception as exc:
            _LOGGER.error("[%s] Failed to return line %d to rest: %s", config.id, config.pin, exc)
            rested = False
        try:
            await line.close()
        except Exception as exc:
            _LOGGER.warning("[%s] Failed to release line %d: %s", config.id, config.pin, exc)
        return rested
