"""Settings and device registry."""

import json

import pytest
from pydantic import ValidationError

from feeder_orchestrator.actuator import ActuatorSequencer
from feeder_orchestrator.config import DEFAULT_PHASE_DURATION_MS, WorkerSettings
from feeder_orchestrator.exceptions import DeviceNotFound
from feeder_orchestrator.notify import HttpNotificationSink, NullSchedulerRegistrar
from feeder_orchestrator.registry import DeviceConfig, DeviceRegistry, Transport
from feeder_orchestrator.store import MemoryFeederStore
from feeder_orchestrator.worker import CommandWorker


def test_settings_defaults():
    """Nothing set, defaults apply."""
    settings = WorkerSettings.from_env({})
    assert settings.notification_url is None
    assert settings.track_next_active is False
    assert settings.max_in_flight > 0


def test_settings_from_env():
    """FEEDER_* variables are coerced to their types."""
    settings = WorkerSettings.from_env({
        "FEEDER_NOTIFICATION_URL": "http://hub/notify",
        "FEEDER_NOTIFY_TIMEOUT": "2.5",
        "FEEDER_TRACK_NEXT_ACTIVE": "true",
        "FEEDER_MAX_IN_FLIGHT": "3",
        "FEEDER_STORE_DIR": "",
    })
    assert settings.notification_url == "http://hub/notify"
    assert settings.notify_timeout == 2.5
    assert settings.track_next_active is True
    assert settings.max_in_flight == 3
    assert settings.store_dir is None


def test_settings_reject_bad_values():
    """Invalid values fail at startup."""
    with pytest.raises(ValidationError):
        WorkerSettings.from_env({"FEEDER_MAX_IN_FLIGHT": "0"})


def test_registry_lookup(tmp_path):
    """Registry loads from JSON and resolves ids."""
    path = tmp_path / "devices.json"
    path.write_text(json.dumps({"devices": [
        {"id": "f1", "pin": 18},
        {"id": "f2", "pin": 4, "phase_duration": 1500, "transport": "ble", "address": "AA:BB:CC:DD:EE:FF"},
    ]}), encoding="utf-8")
    registry = DeviceRegistry.load(path)
    assert len(registry) == 2
    assert "f1" in registry
    assert registry.get("f1").phase_duration == DEFAULT_PHASE_DURATION_MS
    assert registry.get("f2").transport is Transport.BLE
    with pytest.raises(DeviceNotFound):
        registry.get("f3")


def test_registry_rejects_bad_entries():
    """Duplicate ids and BLE devices without an address are refused."""
    with pytest.raises(ValueError):
        DeviceRegistry([DeviceConfig(id="f1", pin=1), DeviceConfig(id="f1", pin=2)])
    with pytest.raises(ValidationError):
        DeviceConfig(id="f1", pin=1, transport="ble")


def test_worker_from_settings():
    """Configured URLs select the HTTP sink; missing ones fall back to no-ops."""
    settings = WorkerSettings(notification_url="http://hub/notify", track_next_active=True)
    worker = CommandWorker.from_settings(
        settings, MemoryFeederStore(), DeviceRegistry(), sequencer=ActuatorSequencer(),
    )
    assert isinstance(worker.sink, HttpNotificationSink)
    assert isinstance(worker.registrar, NullSchedulerRegistrar)
    assert worker.track_next_active is True
