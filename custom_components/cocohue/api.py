"""Minimal Hue bridge REST client."""
import asyncio
import json
import logging
from typing import Any, Dict, Iterable, Tuple

import aiohttp
from aiohttp import ClientSession

from .const import COMMAND_COALESCE_DELAY, REQUEST_TIMEOUT, TRANSPORT_ERROR_PREFIX
from .models import BridgeEndpoint, BridgeOptions, EntityRecord, EntityType
from .payloads import SNAPSHOT_PATHS, PayloadError, command_errors, command_request, parse_snapshot

_LOGGER = logging.getLogger(__name__)


class _Coalescer:
    """Coalesce rapid command deltas and send the merged result after a delay."""

    def __init__(self, delay: float = COMMAND_COALESCE_DELAY):
        self.delay = delay
        self._task: asyncio.Task | None = None
        self._future: asyncio.Future | None = None
        self._value: Dict[str, Any] = {}
        # Sequence number to invalidate older runners that weren't canceled in time
        self._seq: int = 0
        # Sends on the wire; those are never cancelled
        self._in_flight = 0

    def schedule(self, delta: Dict[str, Any], send_func):
        """Merge delta into the pending one and schedule send_func; return a Future of (ok, err)."""
        self._value.update(delta)
        loop = asyncio.get_running_loop()
        if self._future is None or self._future.done():
            self._future = loop.create_future()

        self._seq += 1
        my_seq = self._seq
        if self._task and not self._task.done() and not self._in_flight:
            self._task.cancel()

        async def runner():
            local_future = self._future
            try:
                await asyncio.sleep(self.delay)
                if my_seq != self._seq:
                    return
                value, self._value = self._value, {}
                self._in_flight += 1
                try:
                    result = await send_func(value)
                finally:
                    self._in_flight -= 1
                if my_seq == self._seq and local_future is not None and not local_future.done():
                    local_future.set_result(result)
            except asyncio.CancelledError:
                return
            except Exception as ex:
                _LOGGER.debug("Coalesced command failed: %s", ex)
                if my_seq == self._seq and local_future is not None and not local_future.done():
                    local_future.set_result((False, f"Exception: {ex}"))
            finally:
                if my_seq == self._seq:
                    self._task = None

        self._task = asyncio.create_task(runner())
        return self._future


class HueBridgeClient:
    """Transport adapter for the bridge's v1 REST API.

    Failures are returned as ``(None, err)`` / ``(False, err)`` tuples rather
    than raised so callers can treat them as connectivity signals. Errors
    caused by the network (not by the bridge rejecting a request) start with
    ``TRANSPORT_ERROR_PREFIX``.
    """

    def __init__(
        self,
        endpoint: BridgeEndpoint,
        options: BridgeOptions | None = None,
        *,
        session: ClientSession | None = None,
        coalesce_delay: float = COMMAND_COALESCE_DELAY,
    ):
        self.endpoint = endpoint
        self.options = options or BridgeOptions()
        self._session = session
        self._owns_session = session is None
        self._coalesce: Dict[Tuple[EntityType, str], _Coalescer] = {}
        self._coalesce_delay = coalesce_delay

    @classmethod
    async def create(cls, endpoint: BridgeEndpoint, options: BridgeOptions | None = None):
        """Async-safe constructor."""
        self = cls(endpoint, options)
        await self._init_session()
        return self

    async def _init_session(self):
        """Initialize aiohttp session; the bridge presents a self-signed certificate."""
        if self._session and not self._session.closed:
            await self._session.close()
        connector = aiohttp.TCPConnector(ssl=False)
        self._session = ClientSession(connector=connector)
        self._owns_session = True

    @property
    def session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError("HueBridgeClient used before create()")
        return self._session

    async def close(self):
        """Gracefully close aiohttp session."""
        for co in self._coalesce.values():
            if co._task and not co._task.done():
                co._task.cancel()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path: str) -> str:
        return f"http://{self.endpoint.host}/api/{self.endpoint.username}/{path}"

    async def _request(self, method: str, path: str, body: Dict[str, Any] | None = None) -> Tuple[Any, str | None]:
        url = self._url(path)
        try:
            async with self.session.request(
                method,
                url,
                json=body,
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            ) as resp:
                if resp.status >= 400:
                    return None, f"{TRANSPORT_ERROR_PREFIX} HTTP {resp.status}"
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as ex:
            return None, f"{TRANSPORT_ERROR_PREFIX} {type(ex).__name__}: {ex}"
        try:
            return json.loads(text), None
        except ValueError:
            # Something answered, but not a bridge speaking JSON
            return None, f"{TRANSPORT_ERROR_PREFIX} non-JSON response"

    async def fetch_snapshot(self, entity_type: EntityType) -> Tuple[Dict[str, EntityRecord] | None, str | None]:
        """Fetch the complete collection for one entity type."""
        snapshots, err = await self.fetch_snapshots((entity_type,))
        if err:
            return None, err
        return snapshots[entity_type], None

    async def fetch_snapshots(
        self, entity_types: Iterable[EntityType]
    ) -> Tuple[Dict[EntityType, Dict[str, EntityRecord]] | None, str | None]:
        """Fetch several collections, requesting each bridge path once.

        Sensors, buttons and activators share the ``sensors`` path. Any
        failure fails the whole batch.
        """
        raw: Dict[str, Any] = {}
        snapshots: Dict[EntityType, Dict[str, EntityRecord]] = {}
        for entity_type in entity_types:
            path = SNAPSHOT_PATHS[entity_type]
            if path not in raw:
                data, err = await self._request("GET", path)
                if err:
                    _LOGGER.debug("Snapshot of %s failed: %s", entity_type.value, err)
                    return None, err
                raw[path] = data
            try:
                records = parse_snapshot(entity_type, raw[path], self.options)
            except PayloadError as ex:
                _LOGGER.debug("Snapshot of %s rejected: %s", entity_type.value, ex)
                return None, f"{TRANSPORT_ERROR_PREFIX} {ex}"
            _LOGGER.debug("Fetched %s %s from bridge %s", len(records), entity_type.value, self.endpoint.host)
            snapshots[entity_type] = records
        return snapshots, None

    async def send_command(
        self,
        entity_type: EntityType,
        entity_id: str,
        delta: Dict[str, Any],
        record: EntityRecord | None = None,
    ) -> Tuple[bool, str | None]:
        """Send a command delta; rapid commands to one entity are merged."""
        key = (entity_type, entity_id)
        co = self._coalesce.get(key)
        if co is None:
            co = _Coalescer(self._coalesce_delay)
            self._coalesce[key] = co

        async def _send_latest(merged: Dict[str, Any]) -> Tuple[bool, str | None]:
            request = command_request(entity_type, entity_id, merged, record)
            if request is None:
                return True, None
            path, body = request
            _LOGGER.debug("PUT %s %s", path, body)
            data, err = await self._request("PUT", path, body)
            if err:
                return False, err
            errors = command_errors(data)
            if errors:
                return False, f"Bridge error: {'; '.join(errors)}"
            return True, None

        ok, err = await co.schedule(delta, _send_latest)
        return ok, err
