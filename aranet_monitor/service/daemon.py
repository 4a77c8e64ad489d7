"""
Long-running monitor for one Aranet sensor.
Wires the GATT session, poll scheduler, reading cache and metrics endpoint
together and handles signals, periodic statistics and graceful shutdown.
"""

import asyncio
import logging
import signal
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..ble.errors import SessionError
from ..ble.pairing import BluezPairingAgent, PinentryPinProvider, StaticPinProvider
from ..ble.protocol import Reading
from ..ble.session import GattSession
from ..metrics.exporter import MetricsServer, create_metrics_server
from ..utils.config import Config
from ..utils.logging import PerformanceMonitor
from .cache import ReadingCache
from .scheduler import PollScheduler


@dataclass
class DaemonStats:
    """Daemon statistics container."""
    start_time: datetime
    uptime_seconds: int = 0
    attempts: int = 0
    total_failures: int = 0
    consecutive_failures: int = 0
    connections: int = 0
    last_success: Optional[datetime] = None
    memory_usage_mb: Optional[float] = None


class AranetDaemonError(Exception):
    """Base exception for daemon operations."""
    pass


def build_pairing_agent(config: Config, logger=None) -> Optional[BluezPairingAgent]:
    """
    Create the BlueZ agent used when the sensor asks for a PIN.

    A configured PIN is answered directly; otherwise the user is prompted
    through pinentry.
    """
    if not config.ble_pairing_enabled:
        return None

    if config.ble_pairing_pin:
        provider = StaticPinProvider(config.ble_pairing_pin)
    else:
        provider = PinentryPinProvider(
            program=config.pinentry_program,
            timeout=config.ble_pair_timeout,
            logger=logger,
        )
    return BluezPairingAgent(provider, logger=logger)


class AranetDaemon:
    """
    Monitor for a single Aranet sensor.

    In one-shot mode (no refresh interval) ``start()`` returns the reading
    or raises the SessionError; in continuous mode it runs until SIGINT or
    SIGTERM, keeping the cache and metrics endpoint up to date.
    """

    def __init__(self, config: Config, logger=None,
                 performance_monitor: Optional[PerformanceMonitor] = None,
                 session: Optional[GattSession] = None):
        self.config = config
        self.logger = logger or logging.getLogger("aranet")
        self.performance_monitor = performance_monitor or PerformanceMonitor()

        self.cache = ReadingCache(logger=self.logger)
        self.session = session or GattSession.from_config(
            config,
            pairing_agent=build_pairing_agent(config, self.logger),
            logger=self.logger,
            performance_monitor=self.performance_monitor,
        )
        self.scheduler = PollScheduler.from_config(config, self.session, self.cache, logger=self.logger)
        self.metrics_server: Optional[MetricsServer] = create_metrics_server(
            config, self.cache, device_info_source=lambda: self.session.device_info, logger=self.logger
        )

        self._running = False
        self._stats_task: Optional[asyncio.Task] = None
        self._signals_installed = []
        self._stats = DaemonStats(start_time=datetime.now())

    def add_reading_callback(self, callback: Callable[[Reading], None]):
        """Call ``callback`` with every successfully decoded reading."""
        self.cache.add_callback(callback)

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received {signal.Signals(signum).name}, initiating graceful shutdown...")
            self.scheduler.stop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
                self._signals_installed.append(signum)
            except (NotImplementedError, RuntimeError) as e:
                self.logger.debug(f"Cannot install handler for {signum}: {e}")

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in self._signals_installed:
            loop.remove_signal_handler(signum)
        self._signals_installed = []

    def _update_stats(self):
        snapshot = self.cache.get_latest()
        self._stats.uptime_seconds = int((datetime.now() - self._stats.start_time).total_seconds())
        self._stats.attempts = self.scheduler.attempts
        self._stats.total_failures = snapshot.total_failures
        self._stats.consecutive_failures = snapshot.consecutive_failures
        self._stats.connections = self.session.connection_count
        self._stats.last_success = snapshot.last_success

        memory_samples = self.performance_monitor.metrics.get('memory_usage')
        if memory_samples:
            self._stats.memory_usage_mb = memory_samples[-1]['rss'] / 1024 / 1024

    async def _statistics_loop(self):
        """Periodically log resource usage and fetch statistics."""
        interval = self.config.performance_log_interval
        while self._running:
            await asyncio.sleep(interval)
            self.performance_monitor.log_system_resources()
            status = self.get_status()
            stats = status["stats"]
            summary = self.performance_monitor.get_performance_summary()["fetches"]
            self.logger.info(
                f"Statistics: state={status['session_state']} healthy={status['healthy']} "
                f"attempts={stats['attempts']} failures={stats['total_failures']} "
                f"connections={stats['connections']} avg_fetch={summary['avg_duration']:.2f}s"
            )

    def get_status(self) -> Dict[str, Any]:
        """Get current daemon status."""
        self._update_stats()
        snapshot = self.cache.get_latest()
        return {
            "running": self._running,
            "mode": "one-shot" if self.scheduler.one_shot else "continuous",
            "session_state": self.session.state.value,
            "healthy": snapshot.is_healthy,
            "last_error": str(snapshot.error) if snapshot.error else None,
            "stats": asdict(self._stats),
            "metrics_endpoint": self.metrics_server is not None and self.metrics_server.is_running,
        }

    async def start(self) -> Optional[Reading]:
        """
        Run the monitor.

        Returns:
            Optional[Reading]: The reading in one-shot mode, None otherwise

        Raises:
            SessionError: If the one-shot fetch fails
            AranetDaemonError: If the metrics endpoint cannot be started
        """
        if self._running:
            raise AranetDaemonError("Daemon is already running")

        self.logger.info(f"Starting Aranet monitor for {self.session.device}")
        if self.metrics_server is not None:
            try:
                self.metrics_server.start()
            except OSError as e:
                raise AranetDaemonError(f"Cannot start metrics endpoint: {e}") from e

        self._running = True
        self._setup_signal_handlers()
        if not self.scheduler.one_shot:
            self._stats_task = asyncio.create_task(self._statistics_loop())

        try:
            return await self.scheduler.run()
        finally:
            await self.stop()

    async def stop(self):
        """Stop the daemon gracefully."""
        if not self._running:
            return

        self.logger.info("Stopping Aranet monitor...")
        self._running = False
        self.scheduler.stop()
        self._remove_signal_handlers()

        if self._stats_task and not self._stats_task.done():
            self._stats_task.cancel()
            try:
                await self._stats_task
            except asyncio.CancelledError:
                pass

        await self.session.disconnect()
        if self.metrics_server is not None:
            self.metrics_server.stop()

        self.logger.info("Aranet monitor stopped")


async def run_daemon(config: Config, reading_callback: Optional[Callable[[Reading], None]] = None,
                     logger=None, performance_monitor: Optional[PerformanceMonitor] = None) -> Optional[Reading]:
    """
    Run the monitor until it finishes or is interrupted.

    Raises:
        SessionError: If the one-shot fetch fails
        AranetDaemonError: If startup fails
    """
    daemon = AranetDaemon(config, logger=logger, performance_monitor=performance_monitor)
    if reading_callback is not None:
        daemon.add_reading_callback(reading_callback)

    try:
        return await daemon.start()
    except SessionError as e:
        daemon.logger.error(f"Fetch failed: {e}")
        raise
