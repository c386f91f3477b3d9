"""
Command worker: the feeder state machine.

Takes commands off the queue, checks them against the feeder's current state,
drives the actuator when a feeding is due, writes back only the fields the
command is responsible for, and hands the new state to the notification sink.

Commands for the same feeder never overlap and run in the order they were
received; commands for different feeders run concurrently. Notifications for
one feeder are published in the order its writes landed.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from aiohttp import ClientSession

from .actuator import ActuatorSequencer
from .config import (
    DEFAULT_MAX_IN_FLIGHT,
    DEFAULT_NOTIFY_TIMEOUT,
    DEFAULT_RECEIVE_WAIT,
    WorkerSettings,
)
from .exceptions import (
    CommandValidationError,
    FeederDisabled,
    FeederError,
    OutOfFood,
)
from .ledger import CommandLedger, Stage
from .models import Command, CommandAction, FeederPatch, FeederState
from .notify import (
    HttpNotificationSink,
    HttpSchedulerRegistrar,
    NotificationSink,
    NullNotificationSink,
    NullSchedulerRegistrar,
    SchedulerRegistrar,
)
from .queue import CommandQueue, QueuedMessage
from .reconcile import activation_patch, now_ms, update_patch
from .registry import DeviceRegistry
from .schedule import validate_interval
from .store import FeederStateStore

_LOGGER = logging.getLogger(__name__)


class Disposition(str, Enum):
    """What to tell the queue about a processed message"""
    ACK = "ack"
    RETRY = "retry"


class CommandWorker:
    """
    Processes feeder commands.

    All collaborators are passed in; nothing is looked up globally.

    Example:
        worker = CommandWorker(store, registry, ActuatorSequencer(), queue=queue)
        await worker.run(stop_event)
    """

    def __init__(
        self,
        store: FeederStateStore,
        registry: DeviceRegistry,
        sequencer: ActuatorSequencer,
        queue: Optional[CommandQueue] = None,
        sink: Optional[NotificationSink] = None,
        registrar: Optional[SchedulerRegistrar] = None,
        ledger: Optional[CommandLedger] = None,
        clock: Callable[[], int] = now_ms,
        track_next_active: bool = False,
        notify_timeout: float = DEFAULT_NOTIFY_TIMEOUT,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        receive_wait: float = DEFAULT_RECEIVE_WAIT,
    ):
        self.store = store
        self.registry = registry
        self.sequencer = sequencer
        self.queue = queue
        self.sink = sink or NullNotificationSink()
        self.registrar = registrar or NullSchedulerRegistrar()
        self.ledger = ledger or CommandLedger()
        self.track_next_active = track_next_active
        self._clock = clock
        self._notify_timeout = notify_timeout
        self._max_in_flight = max_in_flight
        self._receive_wait = receive_wait
        self._device_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._publish_tails: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._handlers: Dict[CommandAction, Callable[[Command, Optional[str]], Awaitable[Optional[FeederState]]]] = {
            CommandAction.ACTIVATE: self._activate,
            CommandAction.SKIP: self._skip,
            CommandAction.TOGGLE_ENABLED: self._toggle_enabled,
            CommandAction.UPDATE: self._update,
            CommandAction.POST_ACTIVATION: self._post_activation,
        }

    @classmethod
    def from_settings(
        cls,
        settings: WorkerSettings,
        store: FeederStateStore,
        registry: DeviceRegistry,
        queue: Optional[CommandQueue] = None,
        sequencer: Optional[ActuatorSequencer] = None,
        session: Optional[ClientSession] = None,
    ) -> "CommandWorker":
        """Wire a worker from process settings"""
        sink: NotificationSink = NullNotificationSink()
        if settings.notification_url:
            sink = HttpNotificationSink(settings.notification_url, session, settings.notify_timeout)
        registrar: SchedulerRegistrar = NullSchedulerRegistrar()
        if settings.scheduler_url:
            registrar = HttpSchedulerRegistrar(settings.scheduler_url, session, settings.notify_timeout)
        return cls(
            store,
            registry,
            sequencer or ActuatorSequencer(),
            queue=queue,
            sink=sink,
            registrar=registrar,
            ledger=CommandLedger(settings.ledger_ttl),
            track_next_active=settings.track_next_active,
            notify_timeout=settings.notify_timeout,
            max_in_flight=settings.max_in_flight,
            receive_wait=settings.receive_wait,
        )

    # ---- queue loop -------------------------------------------------------

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """
        Pull and process messages until ``stop`` is set.

        Each message gets its own task; at most ``max_in_flight`` run at once.
        """
        if self.queue is None:
            raise RuntimeError("Worker has no queue to consume")
        stop = stop or asyncio.Event()
        slots = asyncio.Semaphore(self._max_in_flight)
        in_flight: Set[asyncio.Task] = set()
        _LOGGER.info("Worker started")
        try:
            while not stop.is_set():
                await slots.acquire()
                try:
                    message = await self.queue.receive(self._receive_wait)
                except Exception:
                    slots.release()
                    raise
                if message is None:
                    slots.release()
                    continue
                task = asyncio.create_task(self._consume(message, slots))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            await self.drain()
            _LOGGER.info("Worker stopped")

    async def _consume(self, message: QueuedMessage, slots: asyncio.Semaphore) -> None:
        try:
            try:
                disposition = await self.handle_message(message)
            except Exception:
                _LOGGER.exception("Unexpected error processing message %s", message.message_id)
                disposition = Disposition.RETRY
            if disposition == Disposition.ACK:
                await self.queue.ack(message)
            else:
                await self.queue.release(message)
        finally:
            slots.release()

    async def handle_message(self, message: QueuedMessage) -> Disposition:
        """Process one queue message and decide whether it may be deleted"""
        try:
            command = Command.from_json(message.body)
        except CommandValidationError as exc:
            _LOGGER.error("Dropping malformed message %s: %s", message.message_id, exc.reason)
            return Disposition.ACK

        try:
            await self.process(command, command_id=command.command_id or message.message_id)
        except FeederError as exc:
            if exc.terminal:
                _LOGGER.error(
                    "[%s] %s command rejected: %s", command.id, command.action.value, exc.reason,
                )
                return Disposition.ACK
            _LOGGER.warning(
                "[%s] %s command failed, leaving for redelivery (attempt %d): %s",
                command.id, command.action.value, message.receive_count, exc.reason,
            )
            return Disposition.RETRY
        return Disposition.ACK

    # ---- state machine ----------------------------------------------------

    async def process(self, command: Command, command_id: Optional[str] = None) -> Optional[FeederState]:
        """
        Apply one command.

        Args:
            command: The command to apply
            command_id: Idempotency key; a key already applied is a no-op

        Returns:
            The persisted record, or None if nothing was written

        Raises:
            FeederError: Subclass describing why the command failed
        """
        async with self._device_turn(command.id):
            if command_id and self.ledger.stage(command_id) == Stage.APPLIED:
                _LOGGER.info(
                    "[%s] Command %s already applied, skipping", command.id, command_id,
                )
                return None
            _LOGGER.debug("[%s] Processing %s", command.id, command.action.value)
            result = await self._handlers[command.action](command, command_id)
            if command_id:
                self.ledger.mark(command_id, Stage.APPLIED)
            return result

    async def _activate(self, command: Command, command_id: Optional[str]) -> Optional[FeederState]:
        state = await self.store.get(command.id)
        if command_id and self.ledger.stage(command_id) == Stage.ACTUATED:
            _LOGGER.info(
                "[%s] Command %s already actuated, reconciling only", command.id, command_id,
            )
            activated_at = self.ledger.activated_at(command_id) or self._clock()
        else:
            if not state.enabled:
                raise FeederDisabled(command.id)
            if state.skip_next:
                _LOGGER.info("[%s] Skipping this feeding", command.id)
                return await self._write(command.id, FeederPatch(skip_next=False))
            if state.est_remaining_food <= 0:
                raise OutOfFood(command.id)
            await self.sequencer.actuate(self.registry.get(command.id))
            activated_at = self._clock()
            if command_id:
                self.ledger.mark(command_id, Stage.ACTUATED, activated_at)

        patch = activation_patch(state, activated_at, self.track_next_active)
        return await self._write(command.id, patch)

    async def _post_activation(self, command: Command, command_id: Optional[str]) -> FeederState:
        changes = command.fields.changes() if command.fields else {}
        self._check_interval(command.id, changes)
        state = await self.store.get(command.id)
        activated_at = changes.pop("last_active", None) or self._clock()
        reported = update_patch(state, FeederPatch(**changes)).changes()
        reconciled = activation_patch(
            state.model_copy(update=reported), activated_at, self.track_next_active,
        )
        _LOGGER.info("[%s] Device reported feeding at %d", command.id, activated_at)
        return await self._write(command.id, FeederPatch(**{**reported, **reconciled.changes()}))

    async def _skip(self, command: Command, command_id: Optional[str]) -> FeederState:
        state = await self.store.get(command.id)
        return await self._write(command.id, FeederPatch(skip_next=not state.skip_next))

    async def _toggle_enabled(self, command: Command, command_id: Optional[str]) -> FeederState:
        state = await self.store.get(command.id)
        return await self._write(command.id, FeederPatch(enabled=not state.enabled))

    async def _update(self, command: Command, command_id: Optional[str]) -> FeederState:
        if command.fields is None or command.fields.is_empty():
            raise CommandValidationError(command.id, "update requires at least one field")
        changes = command.fields.changes()
        self._check_interval(command.id, changes)
        state = await self.store.get(command.id)
        updated = await self._write(
            command.id, update_patch(state, command.fields, self.track_next_active),
        )
        if "interval" in changes and changes["interval"] != state.interval:
            self._in_background(self._register_interval(command.id, changes["interval"]))
        return updated

    def _check_interval(self, device_id: str, changes: Dict) -> None:
        if "interval" not in changes:
            return
        try:
            validate_interval(changes["interval"])
        except ValueError as exc:
            raise CommandValidationError(device_id, f"invalid interval {changes['interval']!r}: {exc}") from exc

    # ---- side effects -----------------------------------------------------

    async def _write(self, device_id: str, patch: FeederPatch) -> FeederState:
        updated = await self.store.patch(device_id, patch)
        self._publish_in_order(updated)
        return updated

    def _publish_in_order(self, state: FeederState) -> None:
        """Queue a publish behind the previous one for the same feeder"""
        previous = self._publish_tails.get(state.id)
        task = self._in_background(self._publish(state, previous))
        self._publish_tails[state.id] = task
        task.add_done_callback(lambda done: self._drop_publish_tail(state.id, done))

    def _drop_publish_tail(self, device_id: str, task: asyncio.Task) -> None:
        if self._publish_tails.get(device_id) is task:
            del self._publish_tails[device_id]

    async def _publish(self, state: FeederState, previous: Optional[asyncio.Task] = None) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            await asyncio.wait_for(self.sink.publish(state), self._notify_timeout)
        except Exception as exc:
            _LOGGER.warning("[%s] Notification dropped: %r", state.id, exc)

    async def _register_interval(self, device_id: str, interval: str) -> None:
        try:
            await asyncio.wait_for(self.registrar.register(device_id, interval), self._notify_timeout)
        except Exception as exc:
            _LOGGER.warning("[%s] Interval registration dropped: %r", device_id, exc)

    def _in_background(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for pending notifications and registrations"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @asynccontextmanager
    async def _device_turn(self, device_id: str) -> AsyncIterator[None]:
        """Hold the feeder's lock; the lock is dropped once nobody waits on it"""
        lock = self._device_locks.get(device_id)
        if lock is None:
            lock = self._device_locks[device_id] = asyncio.Lock()
        self._lock_users[device_id] = self._lock_users.get(device_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[device_id] -= 1
            if not self._lock_users[device_id]:
                del self._lock_users[device_id]
                del self._device_locks[device_id]
