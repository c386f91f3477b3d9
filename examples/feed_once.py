#!/usr/bin/env python3
"""
Example: run the command worker against a JSON state store and feed once.

Run from project root:
    uv run python examples/feed_once.py devices.json state/ f1
    uv run python examples/feed_once.py devices.json state/ f1 skip

devices.json holds the device registry, e.g.
    {"devices": [{"id": "f1", "pin": 18, "phase_duration": 2000}]}

state/ holds one feeder_<id>.json record per feeder. Devices drive the servo
on their GPIO pin through pigpiod; add "transport": "simulated" for a dry run.
Endpoints are read from FEEDER_NOTIFICATION_URL / FEEDER_SCHEDULER_URL.
"""

import asyncio
import logging
import sys

from feeder_orchestrator import (
    Command,
    CommandWorker,
    DeviceRegistry,
    JsonFeederStore,
    MemoryCommandQueue,
    WorkerSettings,
)


async def main() -> None:
    if len(sys.argv) < 4:
        print("Usage: feed_once.py <registry.json> <state-dir> <device-id> [action]")
        return
    registry_path, store_dir, device_id = sys.argv[1:4]
    action = sys.argv[4] if len(sys.argv) > 4 else "activate"

    settings = WorkerSettings.from_env().model_copy(update={"receive_wait": 1.0})
    registry = DeviceRegistry.load(registry_path)
    store = JsonFeederStore(store_dir)
    queue = MemoryCommandQueue(settings.max_receive_count)
    worker = CommandWorker.from_settings(settings, store, registry, queue=queue)

    await queue.send(Command(id=device_id, action=action).to_json())

    stop = asyncio.Event()
    runner = asyncio.create_task(worker.run(stop))
    while queue.pending():
        await asyncio.sleep(0.1)
    stop.set()
    await runner

    state = await store.get(device_id)
    print(f"{state.id}: food={state.est_remaining_food} feedings={state.est_remaining_feedings} "
          f"enabled={state.enabled} skip_next={state.skip_next}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main())
