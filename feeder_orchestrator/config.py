"""Defaults and environment-driven settings for the worker process."""
import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

# Servo pulse widths (microseconds) for one feeding cycle
PULSE_OPEN = 2500
PULSE_REVERSE = 500
PULSE_REST = 0
DEFAULT_PHASE_DURATION_MS = 2000

# Queue
DEFAULT_RECEIVE_WAIT = 20.0  # long-poll seconds
DEFAULT_MAX_RECEIVE_COUNT = 5

# Worker
DEFAULT_MAX_IN_FLIGHT = 8
DEFAULT_NOTIFY_TIMEOUT = 5.0
DEFAULT_LEDGER_TTL = 900.0  # 15 minutes

ENV_PREFIX = "FEEDER_"


class WorkerSettings(BaseModel):
    """Runtime settings for one worker process."""
    notification_url: Optional[str] = Field(None, description="live-update endpoint")
    scheduler_url: Optional[str] = Field(None, description="schedule registration endpoint")
    registry_path: Optional[str] = Field(None, description="device registry JSON file")
    store_dir: Optional[str] = Field(None, description="JSON state store directory")
    receive_wait: float = Field(DEFAULT_RECEIVE_WAIT, ge=0)
    max_receive_count: int = Field(DEFAULT_MAX_RECEIVE_COUNT, gt=0)
    max_in_flight: int = Field(DEFAULT_MAX_IN_FLIGHT, gt=0)
    notify_timeout: float = Field(DEFAULT_NOTIFY_TIMEOUT, gt=0)
    ledger_ttl: float = Field(DEFAULT_LEDGER_TTL, gt=0)
    track_next_active: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WorkerSettings":
        """Build settings from ``FEEDER_*`` variables, e.g. ``FEEDER_NOTIFY_TIMEOUT``."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)
