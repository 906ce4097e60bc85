"""One bridge's mirror: cache, propagation, polling and push, owned together."""
import asyncio
import contextlib
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from aiohttp import ClientSession

from .api import HueBridgeClient
from .cache import EntityCache
from .const import PUSH_RECONNECT_DELAYS, SCENE_AUTO_OFF_DELAY, TRANSPORT_ERROR_PREFIX
from .discovery import BridgeLocator, DiscoveryThrottle
from .eventstream import HueEventStream
from .models import (
    BridgeEndpoint,
    BridgeOptions,
    EntityRecord,
    EntityType,
    ScenePropagation,
    SceneRecord,
    UpdateSource,
)
from .propagator import Listener, StatePropagator
from .scheduler import PollScheduler

_LOGGER = logging.getLogger(__name__)

# Applied in this order on every poll cycle. Groups go first so that member
# colour/level fan-out lands on the fresh group records.
POLL_TYPES = (
    EntityType.GROUP,
    EntityType.LIGHT,
    EntityType.SCENE,
    EntityType.SENSOR,
    EntityType.BUTTON,
    EntityType.LABS_ACTIVATOR,
)

StreamFactory = Callable[[BridgeEndpoint, ClientSession], HueEventStream]
StateCallback = Callable[[EntityRecord], None]


class BridgeEndpointSession:
    """Everything that belongs to one paired bridge.

    Sessions share no mutable state; all cache mutation goes through the
    propagator, and the failure counter belongs to the scheduler.
    """

    def __init__(
        self,
        endpoint: BridgeEndpoint,
        options: BridgeOptions | None = None,
        *,
        client: HueBridgeClient | None = None,
        locator: BridgeLocator | None = None,
        stream_factory: StreamFactory = HueEventStream,
    ):
        self.endpoint = endpoint
        self.options = options or BridgeOptions()
        self.client = client
        self._owns_client = client is None
        self.locator = locator
        self._stream_factory = stream_factory
        self.cache = EntityCache(on_cleared=self._on_cache_cleared)
        self.propagator = StatePropagator(self.cache, self.options)
        self.scheduler = PollScheduler(
            endpoint,
            self._async_fetch_cycle,
            self._apply_cycle,
            self.options.poll_interval,
            on_status_change=self._on_status_change,
            on_failure=self._on_poll_failure,
        )
        self._throttle = DiscoveryThrottle()
        self._subscribers: Dict[Tuple[EntityType, str], List[StateCallback]] = {}
        self._representations: Dict[Tuple[EntityType, str], Any] = {}
        self._status_listeners: List[Callable[[BridgeEndpoint], None]] = []
        self._push_task: asyncio.Task | None = None
        self._stream: HueEventStream | None = None
        self._tasks: Set[asyncio.Task] = set()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._unsub_address: Callable[[], None] | None = None
        self._running = False
        self.propagator.add_listener(self._dispatch)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def async_start(self) -> bool:
        """Connect, run the first full refresh and start push; return refresh success."""
        if self.client is None:
            self.client = await HueBridgeClient.create(self.endpoint, self.options)
            self._owns_client = True
        self._running = True
        if self.locator is not None and self._unsub_address is None:
            self._unsub_address = self.locator.add_address_listener(self._on_address_changed)
        ok = await self.scheduler.async_start()
        if self.options.push_enabled:
            self._start_push()
        return ok

    async def async_stop(self) -> None:
        self._running = False
        if self._unsub_address is not None:
            self._unsub_address()
            self._unsub_address = None
        await self.scheduler.async_stop()
        await self._async_stop_push()
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self.client is not None and self._owns_client:
            await self.client.close()

    def update_options(self, options: BridgeOptions) -> None:
        """Apply new options without dropping the cache."""
        previous, self.options = self.options, options
        self.propagator.options = options
        if self.client is not None:
            self.client.options = options
        if options.poll_interval != previous.poll_interval:
            self.scheduler.set_interval(options.poll_interval)
        if options.push_enabled != previous.push_enabled:
            self.set_push_enabled(options.push_enabled)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entity_type: EntityType, entity_id: str) -> Optional[EntityRecord]:
        return self.cache.get(entity_type, entity_id)

    async def async_get_all(self, entity_type: EntityType) -> Optional[Dict[str, EntityRecord]]:
        """Return every record of a type, fetching the type first if it isn't populated."""
        if not self.cache.is_populated(entity_type):
            records, err = await self.client.fetch_snapshot(entity_type)
            if err:
                self.scheduler.record_failure(err)
                return None
            self.scheduler.record_success()
            self.propagator.apply_snapshot(entity_type, records)
        return self.cache.all(entity_type)

    async def async_refresh(self) -> bool:
        return await self.scheduler.async_request_refresh()

    def clear_cache(self, entity_type: EntityType) -> None:
        self.cache.clear(entity_type)

    @property
    def push_connected(self) -> bool:
        return self._stream is not None and self._stream.connected

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def async_command(
        self, entity_type: EntityType, entity_id: str, delta: Mapping[str, Any]
    ) -> Tuple[bool, Optional[str]]:
        """Apply a command optimistically, then send it to the bridge."""
        record = self.cache.get(entity_type, entity_id)
        if record is None:
            return False, f"Unknown {entity_type.value} {entity_id}"
        if entity_type is EntityType.SCENE and "active" in delta and not delta["active"]:
            return await self._async_scene_off(record)

        self.propagator.apply_command(entity_type, entity_id, delta)
        ok, err = await self.client.send_command(entity_type, entity_id, dict(delta), record)
        self._record_contact(ok, err)
        if not ok:
            _LOGGER.warning("Command to %s %s failed: %s", entity_type.value, entity_id, err)
        elif entity_type is EntityType.SCENE and delta.get("active"):
            self._after_scene_command(entity_id, activated=True)
        return ok, err

    async def _async_scene_off(self, scene: EntityRecord) -> Tuple[bool, Optional[str]]:
        if not isinstance(scene, SceneRecord):
            return False, f"Not a scene: {scene.id}"
        self.propagator.apply_command(EntityType.SCENE, scene.id, {"active": False})
        self._after_scene_command(scene.id, activated=False)
        if scene.group is not None:
            return await self.async_command(EntityType.GROUP, scene.group, {"on": False})
        result: Tuple[bool, Optional[str]] = (True, None)
        for light_id in scene.lights:
            if self.cache.get(EntityType.LIGHT, light_id) is None:
                continue
            ok, err = await self.async_command(EntityType.LIGHT, light_id, {"on": False})
            if not ok and result[0]:
                result = (ok, err)
        return result

    def _after_scene_command(self, scene_id: str, activated: bool) -> None:
        if activated and self.options.scene_propagation is ScenePropagation.AUTO_OFF:
            self._call_later(
                SCENE_AUTO_OFF_DELAY, lambda: self.propagator.set_scene_active(scene_id, False)
            )
        delay = self.options.scene_refresh_delay
        if delay > 0:
            _LOGGER.debug("Refreshing %s %ss after scene %s", self.endpoint.host, delay, scene_id)
            self._call_later(delay, lambda: self._spawn(self.scheduler.async_request_refresh()))

    def _record_contact(self, ok: bool, err: Optional[str]) -> None:
        if not ok and err and err.startswith(TRANSPORT_ERROR_PREFIX):
            self.scheduler.record_failure(err)
        else:
            # The bridge answered, even if it rejected the request
            self.scheduler.record_success()

    # ------------------------------------------------------------------
    # Downstream wiring
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        return self.propagator.add_listener(listener)

    def subscribe(
        self, entity_type: EntityType, entity_id: str, callback: StateCallback
    ) -> Callable[[], None]:
        """Call ``callback(state)`` whenever the entity's emitted state changes."""
        key = (entity_type, entity_id)
        self._subscribers.setdefault(key, []).append(callback)

        def _remove() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[key]

        return _remove

    def attach_representation(
        self, entity_type: EntityType, entity_id: str, factory: Callable[[], Any]
    ) -> Tuple[Any, bool]:
        """Return ``(representation, created)``; an existing one is reused."""
        key = (entity_type, entity_id)
        existing = self._representations.get(key)
        if existing is not None:
            return existing, False
        representation = factory()
        self._representations[key] = representation
        return representation, True

    def detach_representation(self, entity_type: EntityType, entity_id: str) -> None:
        self._representations.pop((entity_type, entity_id), None)

    def add_status_listener(self, listener: Callable[[BridgeEndpoint], None]) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def _remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _remove

    def _dispatch(self, entity_type: EntityType, entity_id: str, state: EntityRecord) -> None:
        for callback in list(self._subscribers.get((entity_type, entity_id), ())):
            callback(state)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _async_fetch_cycle(self):
        return await self.client.fetch_snapshots(POLL_TYPES)

    def _apply_cycle(self, snapshots: Mapping[EntityType, Mapping[str, EntityRecord]]) -> None:
        with self.propagator.batch():
            for entity_type in POLL_TYPES:
                self.propagator.apply_snapshot(entity_type, snapshots[entity_type])

    def _on_cache_cleared(self, entity_type: EntityType) -> None:
        if self._running:
            self._spawn(self.async_get_all(entity_type))

    def _on_status_change(self, endpoint: BridgeEndpoint) -> None:
        if endpoint.online:
            self._throttle.reset()
        for listener in list(self._status_listeners):
            try:
                listener(endpoint)
            except Exception:
                _LOGGER.exception("Status listener failed for %s", endpoint.host)

    def _on_poll_failure(self, err: str) -> None:
        if self.locator is None or not self._running or not self._throttle.ready():
            return
        self._throttle.record_attempt()
        self._spawn(self._async_rediscover())

    async def _async_rediscover(self) -> None:
        host = await self.locator.async_rediscover()
        if host is None:
            _LOGGER.debug("Rediscovery found no bridge for %s", self.endpoint.host)
            return
        await self.locator.async_update_address(host)

    def _on_address_changed(self, endpoint: BridgeEndpoint) -> None:
        _LOGGER.debug("Refreshing %s after address change", endpoint.host)
        if self.options.push_enabled:
            self._spawn(self._async_restart_push())
        self._spawn(self.scheduler.async_request_refresh())

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def set_push_enabled(self, enabled: bool) -> None:
        if self.options.push_enabled != enabled:
            self.options = replace(self.options, push_enabled=enabled)
            self.propagator.options = self.options
        if not self._running:
            return
        if enabled:
            self._start_push()
        elif self._push_task is not None:
            _LOGGER.debug("Event stream disabled for %s", self.endpoint.host)
            self._push_task.cancel()
            self._push_task = None
            self._stream = None

    def _start_push(self) -> None:
        if self._push_task is not None and not self._push_task.done():
            return
        self._push_task = asyncio.create_task(self._async_push_loop())

    async def _async_stop_push(self) -> None:
        task, self._push_task = self._push_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._stream = None

    async def _async_restart_push(self) -> None:
        await self._async_stop_push()
        if self._running and self.options.push_enabled:
            self._start_push()

    async def _async_push_loop(self) -> None:
        drops = 0
        while True:
            stream = self._stream_factory(self.endpoint, self.client.session)
            self._stream = stream
            try:
                async for delta in stream.events():
                    drops = 0
                    self.scheduler.record_success()
                    self.propagator.apply_delta(
                        delta.entity_type, delta.entity_id, delta.delta, UpdateSource.PUSH
                    )
            except Exception:
                _LOGGER.exception("Event stream on %s failed", self.endpoint.host)
            self._stream = None
            delay = PUSH_RECONNECT_DELAYS[min(drops, len(PUSH_RECONNECT_DELAYS) - 1)]
            drops += 1
            _LOGGER.debug("Resubscribing to event stream on %s in %ss", self.endpoint.host, delay)
            await asyncio.sleep(delay)

    def _call_later(self, delay: float, callback: Callable[[], Any]) -> None:
        handle: asyncio.TimerHandle | None = None

        def _fire() -> None:
            self._timers.discard(handle)
            if self._running:
                callback()

        handle = asyncio.get_running_loop().call_later(delay, _fire)
        self._timers.add(handle)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
