"""Hue v2 server-sent event stream reader."""
import asyncio
import json
import logging
from typing import AsyncIterator, List

import aiohttp
from aiohttp import ClientSession

from .models import BridgeEndpoint, PushDelta
from .payloads import parse_event_message

_LOGGER = logging.getLogger(__name__)

EVENTSTREAM_PATH = "/eventstream/clip/v2"


class HueEventStream:
    """One subscription to the bridge's push channel.

    ``events()`` yields push deltas until the connection drops, then ends.
    Resubscribing is the owner's job.
    """

    def __init__(self, endpoint: BridgeEndpoint, session: ClientSession):
        self.endpoint = endpoint
        self._session = session
        self.connected = False

    @property
    def url(self) -> str:
        return f"https://{self.endpoint.host}{EVENTSTREAM_PATH}"

    async def events(self) -> AsyncIterator[PushDelta]:
        headers = {
            "hue-application-key": self.endpoint.username,
            "Accept": "text/event-stream",
        }
        try:
            async with self._session.get(
                self.url,
                headers=headers,
                ssl=False,
                # No total timeout: the stream stays open indefinitely
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=15),
            ) as resp:
                if resp.status != 200:
                    _LOGGER.warning(
                        "Event stream on %s refused with HTTP %s", self.endpoint.host, resp.status
                    )
                    return
                self.connected = True
                _LOGGER.debug("Event stream connected to %s", self.endpoint.host)
                data_lines: List[str] = []
                async for raw in resp.content:
                    line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    if line:
                        if line.startswith("data:"):
                            data_lines.append(line[5:].lstrip())
                        # id:, event: and ": hi" comments carry nothing we use
                        continue
                    if not data_lines:
                        continue
                    payload, data_lines = "\n".join(data_lines), []
                    for delta in self._decode(payload):
                        yield delta
        # aiohttp raises ValueError for an oversized line
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as ex:
            _LOGGER.warning("Event stream on %s dropped: %s", self.endpoint.host, ex)
        finally:
            self.connected = False

    @staticmethod
    def _decode(payload: str) -> List[PushDelta]:
        try:
            data = json.loads(payload)
        except ValueError:
            _LOGGER.debug("Ignoring malformed event stream message: %s", payload[:200])
            return []
        return parse_event_message(data)
