"""
Device registry: which physical line each feeder drives and how long each
actuation phase lasts.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field, model_validator

from .config import DEFAULT_PHASE_DURATION_MS
from .exceptions import DeviceNotFound


class Transport(str, Enum):
    """How the actuator line is reached"""
    GPIO = "gpio"
    BLE = "ble"
    SIMULATED = "simulated"


class DeviceConfig(BaseModel):
    """Static actuation settings for one feeder."""
    id: str = Field(..., min_length=1)
    pin: int = Field(..., ge=0, le=255, description="GPIO pin, or channel on a BLE controller")
    phase_duration: int = Field(DEFAULT_PHASE_DURATION_MS, gt=0, description="ms per phase")
    transport: Transport = Transport.GPIO
    address: Optional[str] = Field(None, description="BLE controller address")

    @model_validator(mode="after")
    def _ble_needs_address(self) -> "DeviceConfig":
        if self.transport == Transport.BLE and not self.address:
            raise ValueError("BLE transport requires an address")
        return self


class DeviceRegistry:
    """Read-only lookup of DeviceConfig by device id"""

    def __init__(self, devices: Iterable[DeviceConfig] = ()):
        self._devices: Dict[str, DeviceConfig] = {}
        for device in devices:
            if device.id in self._devices:
                raise ValueError(f"duplicate device id {device.id!r}")
            self._devices[device.id] = device

    @classmethod
    def from_dict(cls, data: Dict) -> "DeviceRegistry":
        """Build from ``{"devices": [{...}, ...]}``"""
        return cls(DeviceConfig.model_validate(item) for item in data.get("devices", []))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "DeviceRegistry":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def get(self, device_id: str) -> DeviceConfig:
        """
        Raises:
            DeviceNotFound: If the id is not registered
        """
        try:
            return self._devices[device_id]
        except KeyError:
            raise DeviceNotFound(device_id) from None

    def ids(self) -> List[str]:
        return list(self._devices)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)
