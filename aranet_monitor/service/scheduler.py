"""
Poll scheduler driving the GATT session.

One-shot mode performs a single fetch. Continuous mode keeps the connection
open, re-reads on every refresh interval, backs off exponentially on
failures and never gives up; errors are surfaced through the ReadingCache.
"""

import asyncio
import logging
from typing import Optional

from ..ble.errors import ConnectionLostError, SessionError
from ..ble.protocol import Reading
from ..ble.session import GattSession, SessionState
from .cache import ReadingCache


class ExponentialBackoff:
    """Bounded exponential delay: base, base*factor, base*factor**2, ... up to maximum."""

    def __init__(self, base: float = 2.0, maximum: float = 300.0, factor: float = 2.0):
        self.base = base
        self.maximum = maximum
        self.factor = factor
        self.failures = 0

    def next_delay(self) -> float:
        delay = min(self.base * self.factor ** min(self.failures, 32), self.maximum)
        self.failures += 1
        return delay

    def reset(self):
        self.failures = 0


class PollScheduler:
    """
    Drives repeated calls to ``GattSession.fetch_once()`` and records their
    outcome in the cache. The scheduler is the cache's only writer.
    """

    def __init__(self,
                 session: GattSession,
                 cache: ReadingCache,
                 refresh_interval: Optional[float] = None,
                 backoff: Optional[ExponentialBackoff] = None,
                 persistent_error_limit: int = 5,
                 poll_granularity: float = 0.5,
                 logger=None):
        self.session = session
        self.cache = cache
        self.refresh_interval = refresh_interval
        self.backoff = backoff or ExponentialBackoff()
        self.persistent_error_limit = persistent_error_limit
        self.poll_granularity = poll_granularity
        self.logger = logger or logging.getLogger("aranet.scheduler")

        self.attempts = 0
        self._persistent_failures = 0
        self._stop_event = asyncio.Event()

    @classmethod
    def from_config(cls, config, session: GattSession, cache: ReadingCache,
                    logger=None) -> "PollScheduler":
        return cls(
            session,
            cache,
            refresh_interval=config.refresh_interval,
            backoff=ExponentialBackoff(config.retry_backoff_base, config.retry_backoff_max),
            persistent_error_limit=config.retry_persistent_error_limit,
            poll_granularity=config.shutdown_poll_interval,
            logger=logger,
        )

    @property
    def one_shot(self) -> bool:
        return self.refresh_interval is None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self):
        """Ask the loop to finish; honoured between attempts and during waits."""
        self._stop_event.set()

    async def run(self) -> Optional[Reading]:
        """Run in the mode selected by the refresh interval."""
        if self.one_shot:
            return await self.run_once()
        await self.run_forever()
        return None

    async def _attempt(self) -> Reading:
        self.attempts += 1
        try:
            reading = await self.session.fetch_once()
        except SessionError as e:
            self.cache.record_failure(e)
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected error from fetch: {e}")
            error = ConnectionLostError(f"Unexpected error from fetch: {type(e).__name__}: {e}")
            self.cache.record_failure(error)
            raise error from e
        self.cache.record_success(reading)
        return reading

    async def run_once(self) -> Reading:
        """
        Fetch a single reading and release the connection.

        Returns:
            Reading: The decoded reading

        Raises:
            SessionError: If the attempt fails; there is no retry
        """
        async with self.session:
            return await self._attempt()

    async def run_forever(self):
        """Poll until ``stop()`` is called."""
        self.logger.info(
            f"Polling {self.session.device} every {self.refresh_interval}s "
            f"(backoff {self.backoff.base}s..{self.backoff.maximum}s)"
        )

        async with self.session:
            while not self._stop_event.is_set():
                try:
                    reading = await self._attempt()
                except SessionError as e:
                    delay = self._on_failure(e)
                else:
                    delay = self._on_success(reading)
                await self._wait(delay)

        self.logger.info("Polling stopped")

    def _on_success(self, reading: Reading) -> float:
        if self.backoff.failures:
            self.logger.info(f"Recovered after {self.backoff.failures} failed attempts")
        self.backoff.reset()
        self._persistent_failures = 0
        self.logger.info(
            f"CO2={reading.co2}ppm T={reading.temperature:.2f}°C RH={reading.humidity}% "
            f"P={reading.pressure:.1f}hPa battery={reading.battery}% status={reading.status.name}"
        )
        return float(self.refresh_interval)

    def _on_failure(self, error: SessionError) -> float:
        self.session.state = SessionState.ERROR_BACKOFF

        if error.transient:
            self._persistent_failures = 0
        else:
            self._persistent_failures += 1

        delay = self.backoff.next_delay()
        if self._persistent_failures >= self.persistent_error_limit:
            if self._persistent_failures == self.persistent_error_limit:
                self.logger.critical(
                    f"{type(error).__name__} repeated {self._persistent_failures} times, "
                    f"check that {self.session.device.address} is an Aranet sensor: {error}"
                )
            delay = self.backoff.maximum

        self.logger.warning(f"Fetch failed ({type(error).__name__}): {error}; retrying in {delay:.1f}s")
        return delay

    async def _wait(self, delay: float):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay

        while not self._stop_event.is_set():
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=min(self.poll_granularity, remaining)
                )
            except asyncio.TimeoutError:
                pass
            for event in self.session.process_events():
                self.logger.info(f"Transport event while idle: {event.kind.value}")
