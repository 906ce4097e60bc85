"""Poll scheduling, failure backoff and connectivity tracking."""
import asyncio
import contextlib
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple

from .const import BACKOFF_TIERS
from .models import BridgeEndpoint, ConnectivityStatus

_LOGGER = logging.getLogger(__name__)

FetchFunc = Callable[[], Awaitable[Tuple[Any, Optional[str]]]]
ApplyFunc = Callable[[Any], None]


class PollState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    APPLYING = "applying"
    FAILED = "failed"


def backoff_delay(failures: int) -> int:
    """Return the retry delay in seconds after ``failures`` consecutive failures."""
    for threshold, delay in BACKOFF_TIERS:
        if failures >= threshold:
            return delay
    return 0


class PollScheduler:
    """Drive periodic full refreshes of one bridge.

    A cycle is ``fetch`` (may suspend) followed by ``apply`` (synchronous).
    The scheduler alone owns the endpoint's failure counter; any successful
    contact, including push events and commands, resets it through
    :meth:`record_success`.
    """

    def __init__(
        self,
        endpoint: BridgeEndpoint,
        fetch: FetchFunc,
        apply: ApplyFunc,
        interval: int,
        *,
        on_status_change: Callable[[BridgeEndpoint], None] | None = None,
        on_failure: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.endpoint = endpoint
        self._fetch = fetch
        self._apply = apply
        self._interval = max(0, int(interval))
        self._on_status_change = on_status_change
        self._on_failure = on_failure
        self._clock = clock
        self.state = PollState.IDLE
        self._lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._running = False
        self.next_delay: float | None = None

    @property
    def interval(self) -> int:
        return self._interval

    def set_interval(self, interval: int) -> None:
        self._interval = max(0, int(interval))
        if self._running:
            self._schedule_next()

    def compute_next_delay(self) -> Optional[float]:
        """Delay before the next periodic cycle, or None when polling is disabled."""
        if self._interval <= 0:
            return None
        if self.endpoint.failures > 0:
            return float(max(self._interval, backoff_delay(self.endpoint.failures)))
        return float(self._interval)

    async def async_start(self) -> bool:
        """Run the first cycle immediately, then keep the schedule."""
        self._running = True
        return await self.async_request_refresh()

    async def async_stop(self) -> None:
        self._running = False
        self._cancel_timer()
        timer, self._timer = self._timer, None
        if timer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await timer

    async def async_request_refresh(self) -> bool:
        """Pre-empt the pending timer, refresh now and reschedule from here."""
        self._cancel_timer()
        ok = await self._async_run_cycle()
        if self._running:
            self._schedule_next()
        return ok

    def record_success(self) -> None:
        endpoint = self.endpoint
        had_failures = endpoint.failures > 0
        was_online = endpoint.online
        endpoint.failures = 0
        endpoint.last_contact = self._clock()
        endpoint.status = ConnectivityStatus.ONLINE
        if not was_online:
            _LOGGER.info("Bridge %s is online", endpoint.host)
            self._notify_status()
        # Drop back from a backoff delay to the normal cadence
        if had_failures and self._running and self.state is not PollState.POLLING:
            self._schedule_next()

    def record_failure(self, err: str) -> None:
        endpoint = self.endpoint
        was_online = endpoint.online
        endpoint.failures += 1
        endpoint.status = ConnectivityStatus.OFFLINE
        if was_online:
            _LOGGER.warning("Bridge %s is unavailable: %s", endpoint.host, err)
            self._notify_status()
        else:
            _LOGGER.debug(
                "Bridge %s still unavailable (%s failures): %s", endpoint.host, endpoint.failures, err
            )
        if self._on_failure is not None:
            self._on_failure(err)

    async def _async_run_cycle(self) -> bool:
        async with self._lock:
            self.state = PollState.POLLING
            try:
                result, err = await self._fetch()
            except asyncio.CancelledError:
                self.state = PollState.IDLE
                raise
            if err:
                self.state = PollState.FAILED
                self.record_failure(err)
                # The retry is scheduled by the caller; the cycle itself is over
                self.state = PollState.IDLE
                return False
            self.state = PollState.APPLYING
            self._apply(result)
            self.state = PollState.IDLE
            self.record_success()
            return True

    def _schedule_next(self) -> None:
        self._cancel_timer()
        delay = self.compute_next_delay()
        self.next_delay = delay
        if delay is None:
            _LOGGER.debug("Periodic polling disabled for %s", self.endpoint.host)
            return
        _LOGGER.debug("Next poll of %s in %ss", self.endpoint.host, delay)
        self._timer = asyncio.create_task(self._async_run_after(delay))

    async def _async_run_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        await self._async_run_cycle()
        if self._running:
            self._schedule_next()

    def _cancel_timer(self) -> None:
        timer = self._timer
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    def _notify_status(self) -> None:
        if self._on_status_change is None:
            return
        try:
            self._on_status_change(self.endpoint)
        except Exception:
            _LOGGER.exception("Connectivity listener failed for %s", self.endpoint.host)
