"""
Unit tests for the poll scheduler and its backoff policy.
"""

import asyncio
from unittest.mock import Mock

import pytest

from aranet_monitor.ble.errors import (
    ConnectionLostError,
    DeviceUnreachableError,
    ProtocolError,
    ServiceNotFoundError,
)
from aranet_monitor.ble.session import SessionState
from aranet_monitor.service.cache import ReadingCache
from aranet_monitor.service.scheduler import ExponentialBackoff, PollScheduler
from tests.mocks.mock_session import ScriptedSession


class TestExponentialBackoff:
    """Test suite for ExponentialBackoff."""

    def test_sequence_doubles_until_maximum(self):
        backoff = ExponentialBackoff(base=1.0, maximum=10.0)
        delays = [backoff.next_delay() for _ in range(6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_reset(self):
        backoff = ExponentialBackoff(base=2.0, maximum=300.0)
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()
        assert backoff.failures == 0
        assert backoff.next_delay() == 2.0

    def test_never_exceeds_maximum_after_many_failures(self):
        backoff = ExponentialBackoff(base=2.0, maximum=300.0)
        for _ in range(1000):
            assert backoff.next_delay() <= 300.0


class TestPollSchedulerOneShot:
    """One-shot mode performs exactly one attempt."""

    def setup_method(self):
        self.cache = ReadingCache(logger=Mock())

    @pytest.mark.asyncio
    async def test_single_attempt_on_success(self, sample_reading):
        session = ScriptedSession([sample_reading])
        scheduler = PollScheduler(session, self.cache, refresh_interval=None, logger=Mock())

        reading = await scheduler.run()

        assert reading == sample_reading
        assert session.fetch_calls == 1
        assert session.disconnects == 1
        assert self.cache.get_latest().reading == sample_reading

    @pytest.mark.asyncio
    async def test_single_attempt_on_failure(self):
        error = DeviceUnreachableError("not found")
        session = ScriptedSession([error])
        scheduler = PollScheduler(session, self.cache, refresh_interval=None, logger=Mock())

        with pytest.raises(DeviceUnreachableError):
            await scheduler.run()

        assert session.fetch_calls == 1
        assert session.disconnects == 1
        assert self.cache.get_latest().error is error

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self):
        session = ScriptedSession([EOFError("bus closed")])
        scheduler = PollScheduler(session, self.cache, refresh_interval=None, logger=Mock())

        with pytest.raises(ConnectionLostError) as exc_info:
            await scheduler.run()

        assert isinstance(exc_info.value.__cause__, EOFError)
        assert self.cache.get_latest().error is exc_info.value


class TestPollSchedulerContinuous:
    """Continuous mode polls, backs off and stops on request."""

    def setup_method(self):
        self.cache = ReadingCache(logger=Mock())
        self.logger = Mock()

    def make_scheduler(self, session, interval=0.05, base=0.01, maximum=0.04, limit=5, granularity=0.005):
        return PollScheduler(
            session,
            self.cache,
            refresh_interval=interval,
            backoff=ExponentialBackoff(base, maximum),
            persistent_error_limit=limit,
            poll_granularity=granularity,
            logger=self.logger,
        )

    async def run_until(self, scheduler, condition, timeout=2.0):
        task = asyncio.create_task(scheduler.run())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition() and loop.time() < deadline:
            await asyncio.sleep(0.005)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_eventual_success_after_failures(self, sample_reading):
        outcomes = [DeviceUnreachableError("a"), ConnectionLostError("b"), DeviceUnreachableError("c"), sample_reading]
        session = ScriptedSession(outcomes)
        scheduler = self.make_scheduler(session)

        await self.run_until(scheduler, lambda: self.cache.get_latest().is_healthy)

        snapshot = self.cache.get_latest()
        assert snapshot.reading == sample_reading
        assert snapshot.total_failures == 3
        assert snapshot.consecutive_failures == 0
        assert scheduler.backoff.failures == 0

    @pytest.mark.asyncio
    async def test_backoff_delays_are_bounded(self):
        session = ScriptedSession([DeviceUnreachableError("down")])
        scheduler = self.make_scheduler(session, base=0.01, maximum=0.03)

        await self.run_until(scheduler, lambda: session.fetch_calls >= 6)

        gaps = [b - a for a, b in zip(session.fetch_times, session.fetch_times[1:])]
        # Allow generous scheduling slack, the bound is what matters
        assert all(gap < 0.03 + 0.1 for gap in gaps)
        assert self.cache.get_latest().reading is None

    @pytest.mark.asyncio
    async def test_one_attempt_per_interval(self, sample_reading):
        session = ScriptedSession([sample_reading])
        scheduler = self.make_scheduler(session, interval=0.05)

        await self.run_until(scheduler, lambda: session.fetch_calls >= 3)

        gaps = [b - a for a, b in zip(session.fetch_times, session.fetch_times[1:])]
        assert all(gap >= 0.045 for gap in gaps)

    @pytest.mark.asyncio
    async def test_stop_is_prompt_during_long_wait(self, sample_reading):
        session = ScriptedSession([sample_reading])
        scheduler = self.make_scheduler(session, interval=60.0, granularity=0.01)

        task = asyncio.create_task(scheduler.run())
        while session.fetch_calls == 0:
            await asyncio.sleep(0.005)

        loop = asyncio.get_running_loop()
        stopped_at = loop.time()
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert loop.time() - stopped_at < 0.5
        assert session.fetch_calls == 1
        assert session.disconnects == 1

    @pytest.mark.asyncio
    async def test_stop_is_prompt_during_backoff(self):
        session = ScriptedSession([DeviceUnreachableError("down")])
        scheduler = self.make_scheduler(session, base=60.0, maximum=60.0, granularity=0.01)

        task = asyncio.create_task(scheduler.run())
        while session.state is not SessionState.ERROR_BACKOFF:
            await asyncio.sleep(0.005)

        loop = asyncio.get_running_loop()
        stopped_at = loop.time()
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert loop.time() - stopped_at < 0.5
        assert session.fetch_calls == 1
        assert self.cache.get_latest().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_polling(self, sample_reading):
        session = ScriptedSession([EOFError("bus closed"), sample_reading])
        scheduler = self.make_scheduler(session)

        task = asyncio.create_task(scheduler.run())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while not self.cache.get_latest().is_healthy and loop.time() < deadline:
            await asyncio.sleep(0.005)

        assert not task.done()
        snapshot = self.cache.get_latest()
        assert snapshot.reading == sample_reading
        assert snapshot.total_failures == 1
        self.logger.exception.assert_called_once()

        scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_idle_wait_processes_events(self, sample_reading):
        session = ScriptedSession([sample_reading])
        scheduler = self.make_scheduler(session, interval=0.05, granularity=0.01)

        await self.run_until(scheduler, lambda: session.process_events_calls >= 3)

        assert session.process_events_calls >= 3

    @pytest.mark.asyncio
    async def test_failure_sets_error_backoff_state(self):
        session = ScriptedSession([DeviceUnreachableError("down")])
        scheduler = self.make_scheduler(session, base=1.0, maximum=1.0)

        task = asyncio.create_task(scheduler.run())
        while session.fetch_calls == 0:
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.02)

        assert session.state is SessionState.ERROR_BACKOFF
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_persistent_errors_logged_critical_once(self):
        session = ScriptedSession([ServiceNotFoundError("wrong device")])
        scheduler = self.make_scheduler(session, limit=2)

        await self.run_until(scheduler, lambda: session.fetch_calls >= 5)

        assert self.logger.critical.call_count == 1

    @pytest.mark.asyncio
    async def test_transient_errors_do_not_count_as_persistent(self):
        outcomes = [ProtocolError("bad"), DeviceUnreachableError("gone"), ProtocolError("bad")]
        session = ScriptedSession(outcomes + [DeviceUnreachableError("gone")])
        scheduler = self.make_scheduler(session, limit=2)

        await self.run_until(scheduler, lambda: session.fetch_calls >= 5)

        self.logger.critical.assert_not_called()

    @pytest.mark.asyncio
    async def test_continuous_mode_never_exits_on_its_own(self):
        session = ScriptedSession([ServiceNotFoundError("wrong device")])
        scheduler = self.make_scheduler(session, limit=1, maximum=0.01)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.2)

        assert not task.done()
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)


class TestPollSchedulerFromConfig:

    def test_from_config(self, mock_config):
        mock_config.refresh_interval = 30
        scheduler = PollScheduler.from_config(mock_config, ScriptedSession(), ReadingCache(logger=Mock()))

        assert scheduler.refresh_interval == 30
        assert not scheduler.one_shot
        assert scheduler.backoff.base == mock_config.retry_backoff_base
        assert scheduler.backoff.maximum == mock_config.retry_backoff_max
        assert scheduler.persistent_error_limit == mock_config.retry_persistent_error_limit
