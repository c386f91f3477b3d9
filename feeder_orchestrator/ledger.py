"""
Short-lived record of actuation commands already handled.

Guards against double dispensing when the queue redelivers a command: once a
command has driven the hardware it is marked ``ACTUATED`` together with the
actuation time, so a redelivery reconciles with that time; once its state
write landed it is marked ``APPLIED``. Entries expire after ``ttl`` seconds.
"""

import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from .config import DEFAULT_LEDGER_TTL


class Stage(str, Enum):
    ACTUATED = "actuated"
    APPLIED = "applied"


class CommandLedger:
    """In-memory ledger keyed by command id"""

    def __init__(self, ttl: float = DEFAULT_LEDGER_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[Stage, float, Optional[int]]] = {}

    def stage(self, key: str) -> Optional[Stage]:
        self._expire()
        entry = self._entries.get(key)
        return entry[0] if entry else None

    def activated_at(self, key: str) -> Optional[int]:
        """Epoch ms of the actuation recorded for ``key``, if any"""
        self._expire()
        entry = self._entries.get(key)
        return entry[2] if entry else None

    def mark(self, key: str, stage: Stage, activated_at: Optional[int] = None) -> None:
        if activated_at is None:
            activated_at = self.activated_at(key)
        self._entries[key] = (stage, self._clock() + self.ttl, activated_at)

    def forget(self, key: str) -> None:
        self._entries.pop(key, None)

    def _expire(self) -> None:
        now = self._clock()
        for key in [k for k, (_, expires, _) in self._entries.items() if expires <= now]:
            del self._entries[key]

    def __len__(self) -> int:
        self._expire()
        return len(self._entries)
