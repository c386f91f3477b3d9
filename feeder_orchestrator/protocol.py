"""
Low-level BLE protocol for servo controllers that drive the feeder auger.

Frames follow the controller's framed format:

    EA + Command + Length + Data + CRC(00) + AE
"""

import logging
from typing import Optional, Dict, List
from bleak import BleakClient
from bleak.backends.characteristic import BleakGATTCharacteristic

_LOGGER = logging.getLogger(__name__)

SERVO_SERVICE_UUID = "0000ae30-0000-1000-8000-00805f9b34fb"
SERVO_WRITE_UUID = "0000ae01-0000-1000-8000-00805f9b34fb"
SERVO_NOTIFY_UUID = "0000ae02-0000-1000-8000-00805f9b34fb"

FRAME_HEADER = 0xEA
FRAME_FOOTER = 0xAE

# Command IDs
CMD_HEARTBEAT = "03"
CMD_FAULT = "0A"
CMD_SERVO_WRITE = "20"
CMD_SERVO_RELEASE = "21"

COMMAND_NAMES = {
    CMD_HEARTBEAT: "HEARTBEAT",
    CMD_FAULT: "FAULT",
    CMD_SERVO_WRITE: "SERVO_WRITE",
    CMD_SERVO_RELEASE: "SERVO_RELEASE",
}

# Pulse widths are carried as two bytes
MAX_PULSE_WIDTH = 0xFFFF


def encode_command(command: str, action: bytes = b"") -> bytes:
    """Frame a command with its payload"""
    frame = bytearray()
    frame.append(FRAME_HEADER)
    frame.append(int(command, 16))
    frame.append(len(action))
    frame.extend(action)
    frame.append(0x00)  # CRC placeholder, controller ignores it
    frame.append(FRAME_FOOTER)
    return bytes(frame)


def encode_servo_write(channel: int, pulse_width: int) -> bytes:
    """
    Frame a servo pulse write.

    Args:
        channel: Controller output channel (0-255)
        pulse_width: Pulse width in microseconds; 0 releases the servo to rest

    Raises:
        ValueError: If channel or pulse width is out of range
    """
    if not 0 <= channel <= 0xFF:
        raise ValueError(f"channel {channel} out of range")
    if not 0 <= pulse_width <= MAX_PULSE_WIDTH:
        raise ValueError(f"pulse width {pulse_width} out of range")
    return encode_command(CMD_SERVO_WRITE, bytes([channel]) + pulse_width.to_bytes(2, "big"))


def decode_notification(data: bytes) -> Dict:
    """Decode a notification frame from the controller"""
    if len(data) < 5:
        return {"error": "Data too short"}

    result: Dict = {"raw": bytes(data).hex().upper()}
    if data[0] != FRAME_HEADER or data[-1] != FRAME_FOOTER:
        result["error"] = "Bad frame delimiters"
        return result

    command_hex = f"{data[1]:02X}"
    result["command"] = command_hex
    result["command_name"] = COMMAND_NAMES.get(command_hex, "UNKNOWN")
    result["length"] = data[2]
    data_section = bytes(data[3:-2])
    result["data_bytes"] = data_section

    if command_hex == CMD_FAULT and len(data_section) >= 1:
        result["fault_code"] = data_section[0]
    elif command_hex == CMD_SERVO_WRITE and len(data_section) >= 3:
        result["channel"] = data_section[0]
        result["pulse_width"] = int.from_bytes(data_section[1:3], "big")
    return result


class ServoBLEProtocol:
    """BLE connection to one servo controller"""

    def __init__(self, device_address: str):
        self.device_address = device_address
        self.client: Optional[BleakClient] = None
        self.received_data: List[bytearray] = []
        self.write_characteristic = None
        self.notify_characteristic = None
        self.supports_write_response = False

    def notification_handler(self, sender: BleakGATTCharacteristic, data: bytearray):
        """Handle notifications from the controller"""
        _LOGGER.debug(
            "[%s] Notification received: %s (%d bytes)",
            self.device_address, data.hex().upper(), len(data),
        )
        self.received_data.append(data)

    def faults(self) -> List[int]:
        """Fault codes reported by the controller since connecting"""
        codes = []
        for data in self.received_data:
            decoded = decode_notification(data)
            if decoded.get("command") == CMD_FAULT and "fault_code" in decoded:
                codes.append(decoded["fault_code"])
        return codes

    async def connect(self, timeout: float = 10.0, ble_client: Optional[BleakClient] = None) -> bool:
        """Connect to the controller. If ble_client is provided, use it."""
        if ble_client is not None:
            _LOGGER.debug("[%s] Using provided BleakClient", self.device_address)
            self.client = ble_client
        else:
            _LOGGER.debug(
                "[%s] Creating BleakClient (timeout=%ss)", self.device_address, timeout,
            )
            self.client = BleakClient(self.device_address, timeout=timeout)
            try:
                await self.client.connect()
            except Exception as exc:
                _LOGGER.warning(
                    "[%s] BLE connect failed: %s", self.device_address, exc,
                )
                return False

        try:
            service = self.client.services.get_service(SERVO_SERVICE_UUID)
            if not service:
                _LOGGER.warning(
                    "[%s] Service %s not found on controller",
                    self.device_address, SERVO_SERVICE_UUID,
                )
                return False

            write_char = service.get_characteristic(SERVO_WRITE_UUID)
            notify_char = service.get_characteristic(SERVO_NOTIFY_UUID)
            if not write_char or not notify_char:
                _LOGGER.warning(
                    "[%s] Required characteristics not found (write=%s, notify=%s)",
                    self.device_address, write_char is not None, notify_char is not None,
                )
                return False

            self.write_characteristic = write_char
            self.notify_characteristic = notify_char
            props = getattr(write_char, "properties", None)
            if isinstance(props, list):
                self.supports_write_response = "write" in props

            await self.client.start_notify(notify_char, self.notification_handler)
            _LOGGER.debug("[%s] Connected and notifications started", self.device_address)
            return True
        except Exception as exc:
            _LOGGER.warning(
                "[%s] Post-connect setup failed: %s", self.device_address, exc,
            )
            return False

    async def disconnect(self):
        """Disconnect from the controller"""
        if self.client and self.client.is_connected:
            _LOGGER.debug("[%s] Disconnecting", self.device_address)
            try:
                await self.client.stop_notify(SERVO_NOTIFY_UUID)
            except Exception as exc:
                _LOGGER.debug(
                    "[%s] Error stopping notifications during disconnect: %s",
                    self.device_address, exc,
                )
            await self.client.disconnect()
            _LOGGER.debug("[%s] Disconnected", self.device_address)

    async def write_servo(self, channel: int, pulse_width: int):
        """
        Send a pulse width to one servo channel.

        Raises:
            RuntimeError: If not connected or the write fails
        """
        if not self.client or not self.client.is_connected:
            raise RuntimeError("Not connected to controller. Call connect() first.")
        command = encode_servo_write(channel, pulse_width)
        try:
            await self.client.write_gatt_char(
                SERVO_WRITE_UUID, command, response=self.supports_write_response
            )
        except Exception as exc:
            raise RuntimeError(f"Failed to write servo pulse: {exc}") from exc

    async def release(self, channel: int):
        """Stop driving the channel"""
        if not self.client or not self.client.is_connected:
            return
        command = encode_command(CMD_SERVO_RELEASE, bytes([channel]))
        try:
            await self.client.write_gatt_char(SERVO_WRITE_UUID, command, response=False)
        except Exception as exc:
            _LOGGER.warning(
                "[%s] Failed to release channel %d: %s", self.device_address, channel, exc,
            )
