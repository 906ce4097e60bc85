"""Bridge location, identity probing and rediscovery throttling."""
import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

import aiohttp
from aiohttp import ClientSession

from .const import REQUEST_TIMEOUT
from .models import BridgeEndpoint
from .scheduler import backoff_delay

_LOGGER = logging.getLogger(__name__)

AddressListener = Callable[[BridgeEndpoint], None]


class HueBridgeError(Exception):
    """Could not talk to a Hue bridge at the given address."""


class HueAuthError(HueBridgeError):
    """The bridge rejected the application key."""


class BridgeLocator:
    """Source of the current endpoint and notifier of address changes."""

    def __init__(self) -> None:
        self._listeners: List[AddressListener] = []

    def current_endpoint(self) -> Optional[BridgeEndpoint]:
        raise NotImplementedError

    def add_address_listener(self, listener: AddressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def async_rediscover(self) -> Optional[str]:
        """Look for the bridge again and return its current host, if found."""
        return None

    async def async_update_address(self, host: str) -> bool:
        """Point the endpoint at ``host``; return True if the address changed."""
        endpoint = self.current_endpoint()
        if endpoint is None or not host or host == endpoint.host:
            return False
        _LOGGER.info("Bridge address changed from %s to %s", endpoint.host, host)
        endpoint.host = host
        for listener in list(self._listeners):
            try:
                listener(endpoint)
            except Exception:
                _LOGGER.exception("Address listener failed for %s", host)
        return True


class StaticBridgeLocator(BridgeLocator):
    """Locator for a configured host, with an optional rediscovery hook."""

    def __init__(
        self,
        endpoint: BridgeEndpoint,
        resolve: Callable[[], Awaitable[Optional[str]]] | None = None,
    ) -> None:
        super().__init__()
        self._endpoint = endpoint
        self._resolve = resolve

    def current_endpoint(self) -> Optional[BridgeEndpoint]:
        return self._endpoint

    async def async_rediscover(self) -> Optional[str]:
        if self._resolve is None:
            return None
        return await self._resolve()


class DiscoveryThrottle:
    """Rate limit for rediscovery, using the same staged backoff as polling."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.attempts = 0
        self._next_allowed = 0.0

    def ready(self) -> bool:
        return self._clock() >= self._next_allowed

    def record_attempt(self) -> None:
        self.attempts += 1
        self._next_allowed = self._clock() + backoff_delay(self.attempts)

    def reset(self) -> None:
        self.attempts = 0
        self._next_allowed = 0.0


async def _get_json(session: ClientSession, url: str) -> Any:
    try:
        async with session.get(
            url, ssl=False, timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
        ) as resp:
            if resp.status >= 400:
                raise HueBridgeError(f"HTTP {resp.status} from {url}")
            text = await resp.text()
    except (aiohttp.ClientError, asyncio.TimeoutError) as ex:
        raise HueBridgeError(f"{type(ex).__name__}: {ex}") from ex
    try:
        return json.loads(text)
    except ValueError:
        return None


def bridge_id_from_config(data: Any) -> Optional[str]:
    """Return the bridge id from an ``/api/0/config`` body, or None if it isn't one."""
    if not isinstance(data, dict):
        return None
    if not isinstance(data.get("swversion"), str) or not isinstance(data.get("apiversion"), str):
        return None
    bridge_id = data.get("bridgeid")
    if isinstance(bridge_id, str) and bridge_id:
        return bridge_id.lower()
    mac = data.get("mac")
    if isinstance(mac, str) and mac:
        # Older firmware: derive the id from the MAC address
        return mac.replace(":", "").lower()
    return None


async def async_probe_bridge(session: ClientSession, host: str) -> Optional[str]:
    """Return the id of the Hue bridge at ``host``, or None if something else answers.

    Raises HueBridgeError when nothing answers at all.
    """
    data = await _get_json(session, f"https://{host}/api/0/config")
    bridge_id = bridge_id_from_config(data)
    if bridge_id is None:
        _LOGGER.debug("Device at %s is not a Hue bridge", host)
    return bridge_id


async def async_validate_username(session: ClientSession, host: str, username: str) -> None:
    """Raise HueAuthError if the bridge does not accept ``username``."""
    data = await _get_json(session, f"https://{host}/api/{username}/config")
    if isinstance(data, list):
        for item in data:
            error = item.get("error") if isinstance(item, dict) else None
            if isinstance(error, dict):
                raise HueAuthError(str(error.get("description", "unauthorized user")))
    if not isinstance(data, dict) or "whitelist" not in data:
        raise HueAuthError("Application key not accepted")
