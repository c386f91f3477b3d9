"""
Feeder state store adapters.

``patch`` writes only the fields named in the patch; fields outside it are
left as they are, so concurrent updates of disjoint fields never clobber each
other. Both adapters return the full post-update record.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from .exceptions import DeviceNotFound, StoreUnavailable
from .models import FeederPatch, FeederState

_LOGGER = logging.getLogger(__name__)


class FeederStateStore(ABC):
    """Keyed store of FeederState records"""

    @abstractmethod
    async def get(self, device_id: str) -> FeederState:
        """
        Raises:
            DeviceNotFound: If no record exists
            StoreUnavailable: On I/O failure
        """

    @abstractmethod
    async def patch(self, device_id: str, patch: FeederPatch) -> FeederState:
        """Apply the patch's fields and return the full updated record"""

    @abstractmethod
    async def put(self, state: FeederState) -> None:
        """Create or replace a whole record"""

    @abstractmethod
    async def list(self) -> List[FeederState]:
        """All records"""


class MemoryFeederStore(FeederStateStore):
    """Dict-backed store, one lock for all records."""

    def __init__(self, states: Optional[List[FeederState]] = None):
        self._records: Dict[str, FeederState] = {}
        self._lock = asyncio.Lock()
        self.patch_count = 0
        for state in states or []:
            self._records[state.id] = state.model_copy()

    async def get(self, device_id: str) -> FeederState:
        async with self._lock:
            state = self._records.get(device_id)
            if state is None:
                raise DeviceNotFound(device_id)
            return state.model_copy()

    async def patch(self, device_id: str, patch: FeederPatch) -> FeederState:
        async with self._lock:
            state = self._records.get(device_id)
            if state is None:
                raise DeviceNotFound(device_id)
            updated = state.model_copy(update=patch.changes())
            self._records[device_id] = updated
            self.patch_count += 1
            _LOGGER.debug("[%s] Patched %s", device_id, sorted(patch.changes()))
            return updated.model_copy()

    async def put(self, state: FeederState) -> None:
        async with self._lock:
            self._records[state.id] = state.model_copy()

    async def list(self) -> List[FeederState]:
        async with self._lock:
            return [state.model_copy() for state in self._records.values()]


class JsonFeederStore(FeederStateStore):
    """
    One JSON file per feeder under ``base_dir``, plus an index of ids.

    File access runs in a worker thread; the event loop is never blocked
    while a record is read or written.
    """
    _index_file = "index.json"

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self._lock = asyncio.Lock()

    def _index_path(self) -> Path:
        return self.base_dir / self._index_file

    def _record_path(self, device_id: str) -> Path:
        return self.base_dir / f"feeder_{device_id}.json"

    def _list_ids(self) -> List[str]:
        if not self._index_path().exists():
            return []
        with open(self._index_path(), "r", encoding="utf-8") as f:
            return json.load(f).get("ids", [])

    def _load(self, device_id: str) -> FeederState:
        path = self._record_path(device_id)
        if not path.exists():
            raise DeviceNotFound(device_id)
        with open(path, "r", encoding="utf-8") as f:
            return FeederState.model_validate(json.load(f))

    def _save(self, state: FeederState) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self._record_path(state.id)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.to_wire(), f, indent=2, ensure_ascii=False)
        tmp.replace(path)

        ids = self._list_ids()
        if state.id not in ids:
            ids.append(state.id)
            with open(self._index_path(), "w", encoding="utf-8") as f:
                json.dump({"ids": ids}, f, indent=2, ensure_ascii=False)

    def _load_all(self) -> List[FeederState]:
        return [self._load(device_id) for device_id in self._list_ids()]

    async def get(self, device_id: str) -> FeederState:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._load, device_id)
            except (OSError, ValueError, ValidationError) as exc:
                raise StoreUnavailable(device_id, f"read failed: {exc}") from exc

    async def patch(self, device_id: str, patch: FeederPatch) -> FeederState:
        async with self._lock:
            try:
                state = await asyncio.to_thread(self._load, device_id)
                updated = state.model_copy(update=patch.changes())
                await asyncio.to_thread(self._save, updated)
            except (OSError, ValueError, ValidationError) as exc:
                raise StoreUnavailable(device_id, f"write failed: {exc}") from exc
            _LOGGER.debug("[%s] Patched %s", device_id, sorted(patch.changes()))
            return updated

    async def put(self, state: FeederState) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._save, state)
            except OSError as exc:
                raise StoreUnavailable(state.id, f"write failed: {exc}") from exc

    async def list(self) -> List[FeederState]:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._load_all)
            except (OSError, ValueError, ValidationError) as exc:
                raise StoreUnavailable(None, f"list failed: {exc}") from exc
