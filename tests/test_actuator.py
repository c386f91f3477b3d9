"""Actuator sequencer: phases, rest guarantee and fault handling."""

import asyncio
from typing import List

import pytest

from feeder_orchestrator.actuator import (
    FEEDING_CYCLE,
    ActuatorSequencer,
    BleServoLine,
    GpioServoLine,
    SimulatedServoLine,
    default_line_factory,
)
from feeder_orchestrator.config import PULSE_REST
from feeder_orchestrator.exceptions import HardwareFault
from feeder_orchestrator.registry import DeviceConfig, DeviceRegistry, Transport

CONFIG = DeviceConfig(id="f1", pin=18, phase_duration=10)


async def _no_sleep(seconds: float) -> None:
    return None


def _sequencer(line: SimulatedServoLine, sleep=_no_sleep) -> ActuatorSequencer:
    return ActuatorSequencer(line_factory=lambda config: line, sleep=sleep)


def test_full_cycle_then_rest():
    """All phases run in order and the line ends at rest, released."""
    line = SimulatedServoLine(18)
    asyncio.run(_sequencer(line).actuate(CONFIG))
    assert line.writes == list(FEEDING_CYCLE) + [PULSE_REST]
    assert line.at_rest
    assert not line.is_open


def test_phase_durations():
    """Each phase waits for the configured duration."""
    waits: List[float] = []

    async def record(seconds: float) -> None:
        waits.append(seconds)

    asyncio.run(_sequencer(SimulatedServoLine(), sleep=record).actuate(CONFIG))
    assert waits == [0.01] * len(FEEDING_CYCLE)


def test_fault_aborts_and_rests():
    """A failing phase stops the cycle, forces rest and raises HardwareFault."""
    line = SimulatedServoLine(18, fail_at=2)
    with pytest.raises(HardwareFault) as info:
        asyncio.run(_sequencer(line).actuate(CONFIG))
    assert info.value.device_id == "f1"
    assert "phase 2" in info.value.reason
    assert line.writes == [FEEDING_CYCLE[0], FEEDING_CYCLE[1], PULSE_REST]
    assert not line.is_open


def test_rest_failure_is_a_fault():
    """If the line cannot be put back to rest the actuation failed."""
    line = SimulatedServoLine(18, fail_at=len(FEEDING_CYCLE) + 1)
    with pytest.raises(HardwareFault) as info:
        asyncio.run(_sequencer(line).actuate(CONFIG))
    assert "rest" in info.value.reason
    assert not line.is_open


def test_open_failure():
    """A line that cannot be acquired is a hardware fault with no writes."""

    class Unplugged(SimulatedServoLine):
        async def open(self) -> None:
            raise OSError("no such device")

    line = Unplugged()
    with pytest.raises(HardwareFault):
        asyncio.run(_sequencer(line).actuate(CONFIG))
    assert line.writes == []


def test_cancellation_finishes_cycle():
    """Cancelling the caller does not stop the motion midway."""
    line = SimulatedServoLine(18)

    async def scenario():
        task = asyncio.create_task(ActuatorSequencer(lambda config: line).actuate(CONFIG))
        await asyncio.sleep(0.015)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert line.writes == list(FEEDING_CYCLE) + [PULSE_REST]


def test_default_line_factory():
    """Transport picks the line type; a bare pin drives real GPIO."""
    registry = DeviceRegistry.from_dict({"devices": [{"id": "f1", "pin": 18}]})
    line = default_line_factory(registry.get("f1"))
    assert isinstance(line, GpioServoLine)
    assert line.pin == 18
    ble = DeviceConfig(id="f2", pin=1, transport=Transport.BLE, address="AA:BB:CC:DD:EE:FF")
    assert isinstance(default_line_factory(ble), BleServoLine)
    simulated = DeviceConfig(id="f3", pin=2, transport=Transport.SIMULATED)
    assert isinstance(default_line_factory(simulated), SimulatedServoLine)


class FakeProtocol:
    """Stands in for ServoBLEProtocol"""

    def __init__(self, connects: bool = True, fault_codes=None):
        self.device_address = "AA:BB:CC:DD:EE:FF"
        self.connects = connects
        self.fault_codes = fault_codes or []
        self.writes = []
        self.released = False
        self.disconnected = False

    async def connect(self) -> bool:
        return self.connects

    async def write_servo(self, channel: int, pulse_width: int):
        self.writes.append((channel, pulse_width))

    def faults(self):
        return list(self.fault_codes)

    async def release(self, channel: int):
        self.released = True

    async def disconnect(self):
        self.disconnected = True


def test_ble_line_drives_channel():
    """BLE line writes pulses on its channel and releases on close."""
    protocol = FakeProtocol()
    line = BleServoLine(protocol.device_address, 4, protocol=protocol)
    asyncio.run(ActuatorSequencer(lambda config: line, sleep=_no_sleep).actuate(CONFIG))
    assert protocol.writes == [(4, p) for p in FEEDING_CYCLE] + [(4, PULSE_REST)]
    assert protocol.released and protocol.disconnected


def test_ble_line_controller_fault():
    """A fault reported by the controller aborts the cycle."""
    protocol = FakeProtocol(fault_codes=[3])
    line = BleServoLine(protocol.device_address, 4, protocol=protocol)
    with pytest.raises(HardwareFault):
        asyncio.run(ActuatorSequencer(lambda config: line, sleep=_no_sleep).actuate(CONFIG))
    assert protocol.writes[-1] == (4, PULSE_REST)
    assert protocol.disconnected


def test_ble_line_connect_failure():
    """No connection, no actuation."""
    protocol = FakeProtocol(connects=False)
    line = BleServoLine(protocol.device_address, 4, protocol=protocol)
    with pytest.raises(HardwareFault):
        asyncio.run(ActuatorSequencer(lambda config: line, sleep=_no_sleep).actuate(CONFIG))
    assert protocol.writes == []


class FakePi:
    """Stands in for a pigpio.pi handle"""

    def __init__(self, connected: bool = True, fail_on=None):
        self.connected = connected
        self.fail_on = fail_on
        self.pulses = []
        self.stopped = False

    def set_servo_pulsewidth(self, gpio: int, pulsewidth: int):
        self.pulses.append((gpio, pulsewidth))
        if pulsewidth == self.fail_on:
            raise Exception("bad pulsewidth")

    def stop(self):
        self.stopped = True


def test_gpio_line_drives_pin():
    """GPIO line writes each pulse to its pin, rests, then lets go of the daemon."""
    pi = FakePi()
    line = GpioServoLine(18, pi_factory=lambda: pi)
    asyncio.run(ActuatorSequencer(lambda config: line, sleep=_no_sleep).actuate(CONFIG))
    assert pi.pulses == [(18, p) for p in FEEDING_CYCLE] + [(18, PULSE_REST)]
    assert pi.stopped


def test_gpio_line_daemon_unreachable():
    """No pigpio daemon, no actuation."""
    pi = FakePi(connected=False)
    line = GpioServoLine(18, pi_factory=lambda: pi)
    with pytest.raises(HardwareFault):
        asyncio.run(ActuatorSequencer(lambda config: line, sleep=_no_sleep).actuate(CONFIG))
    assert pi.pulses == []


def test_gpio_line_write_failure_rests():
    """A failed pulse write still leaves the pin at rest."""
    pi = FakePi(fail_on=FEEDING_CYCLE[1])
    line = GpioServoLine(18, pi_factory=lambda: pi)
    with pytest.raises(HardwareFault):
        asyncio.run(ActuatorSequencer(lambda config: line, sleep=_no_sleep).actuate(CONFIG))
    assert pi.pulses[-1] == (18, PULSE_REST)
    assert pi.stopped
