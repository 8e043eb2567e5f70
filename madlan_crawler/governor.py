# madlan_crawler/governor.py
"""Admission control for page fetches.

The governor combines four throttles: an adaptive concurrency gate, a random
per-request delay, a rolling one-minute request ceiling and the pause before
a fresh browser launch. Clock, sleep and RNG are injectable so tests can
drive it without real time passing.
"""
import asyncio
import random
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Dict

from .errors import CrawlStopped
from .utils import interruptible_sleep, logger, random_seconds

RATE_WINDOW_SECONDS = 60.0
SUCCESS_STREAK = 5


class Governor:
    def __init__(self, config, clock=time.monotonic, sleep=None, rng=random,
                 stop_event: asyncio.Event = None, success_streak: int = SUCCESS_STREAK):
        self.config = config
        self.stop_event = stop_event or asyncio.Event()
        self._clock = clock
        self._sleep = sleep or (lambda seconds: interruptible_sleep(seconds, self.stop_event))
        self._rng = rng
        self.success_streak = success_streak

        self._limit = config.concurrency_min
        self._in_flight = 0
        self._streak = 0
        self._gate = asyncio.Condition()

        self._stamps = deque()
        self._rate_lock = asyncio.Lock()

        self._failures: Dict[str, int] = {}
        self._launches = 0

    # -- concurrency -----------------------------------------------------------
    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    async def record_success(self) -> None:
        async with self._gate:
            self._streak += 1
            if self._streak >= self.success_streak and self._limit < self.config.concurrency_max:
                self._limit += 1
                self._streak = 0
                logger.debug("Concurrency raised to %d", self._limit)
                self._gate.notify_all()

    async def record_block(self) -> None:
        async with self._gate:
            self._streak = 0
            if self._limit > self.config.concurrency_min:
                self._limit -= 1
                logger.info("Blocked by site, concurrency lowered to %d", self._limit)

    @asynccontextmanager
    async def slot(self):
        """Admit one fetch: gate, random delay, then the rate ceiling.

        Raises `CrawlStopped` if a stop is requested before dispatch.
        """
        async with self._gate:
            await self._gate.wait_for(lambda: self._in_flight < self._limit or self.stopped)
            if self.stopped:
                raise CrawlStopped("stop requested")
            self._in_flight += 1
        try:
            await self._pause(random_seconds(
                self.config.request_delay_min_ms, self.config.request_delay_max_ms, self._rng))
            await self._acquire_rate()
            yield
        finally:
            async with self._gate:
                self._in_flight -= 1
                self._gate.notify_all()

    # -- rate ceiling ----------------------------------------------------------
    async def _acquire_rate(self) -> None:
        rpm = self.config.max_requests_per_minute
        async with self._rate_lock:
            while True:
                now = self._clock()
                while self._stamps and now - self._stamps[0] >= RATE_WINDOW_SECONDS:
                    self._stamps.popleft()
                if len(self._stamps) < rpm:
                    break
                wait = RATE_WINDOW_SECONDS - (now - self._stamps[0])
                logger.debug("Rate ceiling reached (%d/min), waiting %.1fs", rpm, wait)
                await self._pause(wait)
            self._stamps.append(self._clock())

    async def _pause(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)
        if self.stopped:
            raise CrawlStopped("stop requested")

    # -- session rotation ------------------------------------------------------
    @property
    def rotate_sessions(self) -> bool:
        return self.config.fresh_browser_per_property

    async def before_browser_launch(self) -> None:
        """Wait the random launch delay; the first launch goes immediately."""
        self._launches += 1
        if self._launches == 1:
            return
        delay = random_seconds(self.config.browser_launch_delay_min_ms,
                               self.config.browser_launch_delay_max_ms, self._rng)
        logger.info("Waiting %.1fs before launching a fresh browser", delay)
        await self._pause(delay)

    # -- per-URL retries -------------------------------------------------------
    def register_failure(self, url: str) -> int:
        self._failures[url] = self._failures.get(url, 0) + 1
        return self._failures[url]

    def retries_exhausted(self, url: str) -> bool:
        return self._failures.get(url, 0) > self.config.max_request_retries

    def forget(self, url: str) -> None:
        self._failures.pop(url, None)

    def stop(self) -> None:
        self.stop_event.set()
