"""State store adapters."""

import asyncio
import json
import time

import pytest

from feeder_orchestrator.exceptions import DeviceNotFound, StoreUnavailable
from feeder_orchestrator.models import FeederPatch, FeederState
from feeder_orchestrator.store import JsonFeederStore, MemoryFeederStore


def _state(device_id: str = "f1") -> FeederState:
    return FeederState(id=device_id, name="Kitchen", est_remaining_food=10, est_food_per_feeding=2)


def test_memory_patch_is_sparse():
    """Fields outside the patch are untouched and the full record is returned."""
    async def scenario():
        store = MemoryFeederStore([_state()])
        await store.patch("f1", FeederPatch(skip_next=True))
        updated = await store.patch("f1", FeederPatch(enabled=False))
        return updated

    updated = asyncio.run(scenario())
    assert updated.skip_next is True
    assert updated.enabled is False
    assert updated.name == "Kitchen"
    assert updated.est_remaining_food == 10


def test_memory_disjoint_concurrent_patches():
    """Concurrent writes of different fields both land."""
    async def scenario():
        store = MemoryFeederStore([_state()])
        await asyncio.gather(
            store.patch("f1", FeederPatch(name="Hall")),
            store.patch("f1", FeederPatch(est_remaining_food=3)),
        )
        return await store.get("f1")

    state = asyncio.run(scenario())
    assert state.name == "Hall"
    assert state.est_remaining_food == 3


def test_memory_returns_copies():
    """Mutating a returned record does not change the store."""
    async def scenario():
        store = MemoryFeederStore([_state()])
        state = await store.get("f1")
        state.name = "changed"
        return await store.get("f1")

    assert asyncio.run(scenario()).name == "Kitchen"


def test_memory_not_found():
    """Unknown ids raise DeviceNotFound for reads and writes."""
    store = MemoryFeederStore()
    with pytest.raises(DeviceNotFound):
        asyncio.run(store.get("nope"))
    with pytest.raises(DeviceNotFound):
        asyncio.run(store.patch("nope", FeederPatch(enabled=True)))


def test_json_store_put_get_patch_list(tmp_path):
    """Records persist as JSON files with camelCase keys."""
    async def scenario():
        store = JsonFeederStore(tmp_path)
        await store.put(_state("f1"))
        await store.put(_state("f2"))
        updated = await store.patch("f1", FeederPatch(est_remaining_food=4, est_remaining_feedings=2))
        return updated, await store.list()

    updated, records = asyncio.run(scenario())
    assert updated.est_remaining_food == 4
    assert updated.name == "Kitchen"
    assert sorted(r.id for r in records) == ["f1", "f2"]
    with open(tmp_path / "feeder_f1.json", "r", encoding="utf-8") as f:
        assert json.load(f)["estRemainingFeedings"] == 2


def test_json_store_reopen(tmp_path):
    """A new store instance sees earlier writes."""
    asyncio.run(JsonFeederStore(tmp_path).put(_state()))
    assert asyncio.run(JsonFeederStore(tmp_path).get("f1")).name == "Kitchen"


def test_json_store_missing(tmp_path):
    """Missing records are DeviceNotFound, not an I/O error."""
    with pytest.raises(DeviceNotFound):
        asyncio.run(JsonFeederStore(tmp_path).get("f1"))


def test_json_store_corrupt_record(tmp_path):
    """Unreadable records surface as StoreUnavailable."""
    (tmp_path / "feeder_f1.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreUnavailable) as info:
        asyncio.run(JsonFeederStore(tmp_path).get("f1"))
    assert info.value.terminal is False


def test_json_store_file_access_leaves_loop_running(tmp_path):
    """Other coroutines keep running while a slow disk write is in progress."""
    store = JsonFeederStore(tmp_path)
    save = store._save

    def slow_save(state):
        time.sleep(0.1)
        save(state)

    store._save = slow_save

    async def scenario():
        ticks = 0
        done = asyncio.Event()

        async def ticker():
            nonlocal ticks
            while not done.is_set():
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        await store.put(_state())
        done.set()
        await task
        return ticks, await store.get("f1")

    ticks, state = asyncio.run(scenario())
    assert ticks >= 3
    assert state.id == "f1"
