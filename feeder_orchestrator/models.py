"""
Data types shared by the worker, the store and the sinks.

Field names are snake_case in Python and camelCase on the wire (queue bodies,
store records, notification payloads).
"""

from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .exceptions import CommandValidationError

_WIRE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FeederStatus(str, Enum):
    """Connectivity shown to users; not used for decisions"""
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class CommandAction(str, Enum):
    """Actions a queued command can carry"""
    ACTIVATE = "activate"
    SKIP = "skip"
    TOGGLE_ENABLED = "toggle-enabled"
    UPDATE = "update"
    POST_ACTIVATION = "post-activation"


class FeederState(BaseModel):
    """Persisted record for one feeder."""
    model_config = _WIRE_CONFIG

    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    status: FeederStatus = FeederStatus.ONLINE
    enabled: bool = True
    skip_next: bool = False
    interval: Optional[str] = None
    last_active: Optional[int] = Field(None, description="epoch ms")
    next_active: Optional[int] = Field(None, description="epoch ms")
    est_remaining_food: float = Field(0, ge=0)
    est_food_per_feeding: float = Field(1, gt=0)
    est_remaining_feedings: int = Field(0, ge=0)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-safe dict with camelCase keys"""
        return self.model_dump(mode="json", by_alias=True)


class FeederPatch(BaseModel):
    """
    Sparse update of a FeederState.

    Only the fields listed here can be patched; anything else is rejected at
    parse time. ``id`` is never patchable.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[FeederStatus] = None
    enabled: Optional[bool] = None
    skip_next: Optional[bool] = None
    interval: Optional[str] = None
    last_active: Optional[int] = None
    next_active: Optional[int] = None
    est_remaining_food: Optional[float] = Field(None, ge=0)
    est_food_per_feeding: Optional[float] = Field(None, gt=0)
    est_remaining_feedings: Optional[int] = Field(None, ge=0)

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly set to a value, keyed by attribute name"""
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }

    def is_empty(self) -> bool:
        return not self.changes()


class Command(BaseModel):
    """One device instruction taken off the queue."""
    model_config = _WIRE_CONFIG

    id: str = Field(..., min_length=1)
    action: CommandAction
    fields: Optional[FeederPatch] = None
    command_id: Optional[str] = Field(None, description="producer idempotency key")

    @classmethod
    def from_json(cls, body: Union[str, bytes]) -> "Command":
        """
        Parse a queue message body.

        Raises:
            CommandValidationError: If the body is not a valid command
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as exc:
            raise CommandValidationError(None, f"malformed command: {exc}") from exc

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
