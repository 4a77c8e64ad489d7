"""
Unit tests for the Prometheus exposition of the cached reading.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from prometheus_client import CollectorRegistry, generate_latest

from aranet_monitor.ble.errors import DeviceUnreachableError
from aranet_monitor.ble.protocol import DeviceInfo
from aranet_monitor.metrics.exporter import (
    MetricsServer,
    ReadingCollector,
    create_metrics_server,
    parse_listen_address,
)
from aranet_monitor.service.cache import ReadingCache


ADDRESS = "AA:BB:CC:DD:EE:FF"
LABELS = {"address": ADDRESS}


class TestParseListenAddress:

    @pytest.mark.parametrize("value, expected", [
        ("127.0.0.1:9100", ("127.0.0.1", 9100)),
        (":9100", ("0.0.0.0", 9100)),
        ("9100", ("0.0.0.0", 9100)),
        ("[::1]:9200", ("::1", 9200)),
        ("localhost:8000", ("localhost", 8000)),
    ])
    def test_valid(self, value, expected):
        assert parse_listen_address(value) == expected

    @pytest.mark.parametrize("value", ["localhost", "host:0", "host:70000", "host:http", ""])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_listen_address(value)


class TestReadingCollector:
    """Test suite for ReadingCollector."""

    def setup_method(self):
        self.cache = ReadingCache(logger=Mock())
        self.registry = CollectorRegistry()

    def register(self, **kwargs):
        collector = ReadingCollector(self.cache, ADDRESS, **kwargs)
        self.registry.register(collector)
        return collector

    def sample(self, name, labels=None):
        return self.registry.get_sample_value(name, labels or LABELS)

    def test_no_reading_reports_down_without_values(self):
        self.register()

        assert self.sample("aranet_up") == 0.0
        assert self.sample("aranet_fetch_failures_total") == 0.0
        assert self.sample("aranet_co2_ppm") is None
        assert self.sample("aranet_temperature_celsius") is None
        assert self.sample("aranet_humidity_percent") is None

    def test_failure_before_first_reading(self):
        self.register()
        self.cache.record_failure(DeviceUnreachableError("gone"))

        assert self.sample("aranet_up") == 0.0
        assert self.sample("aranet_fetch_failures_total") == 1.0
        assert self.sample("aranet_consecutive_failures") == 1.0
        assert self.sample("aranet_co2_ppm") is None

    def test_reading_values(self, sample_reading):
        self.register()
        when = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.cache.record_success(sample_reading, when=when)

        assert self.sample("aranet_up") == 1.0
        assert self.sample("aranet_co2_ppm") == 420.0
        assert self.sample("aranet_temperature_celsius") == 21.5
        assert self.sample("aranet_humidity_percent") == 55.0
        assert self.sample("aranet_pressure_hpa") == pytest.approx(1014.2)
        assert self.sample("aranet_battery_percent") == 80.0
        assert self.sample("aranet_status") == 1.0
        assert self.sample("aranet_last_success_timestamp_seconds") == when.timestamp()
        assert self.sample("aranet_temperature_fahrenheit") is None

    def test_reading_age(self, sample_reading):
        self.register()
        self.cache.record_success(sample_reading, when=datetime.now(timezone.utc) - timedelta(seconds=30))

        assert 30.0 <= self.sample("aranet_reading_age_seconds") < 60.0

    def test_no_reading_age_before_first_reading(self):
        self.register()
        assert self.sample("aranet_reading_age_seconds") is None

    def test_stale_reading_kept_but_down(self, sample_reading):
        self.register()
        self.cache.record_success(sample_reading)
        self.cache.record_failure(DeviceUnreachableError("gone"))

        assert self.sample("aranet_up") == 0.0
        assert self.sample("aranet_co2_ppm") == 420.0

    def test_fahrenheit(self, sample_reading):
        self.register(fahrenheit=True)
        self.cache.record_success(sample_reading)

        assert self.sample("aranet_temperature_fahrenheit") == pytest.approx(70.7)
        assert self.sample("aranet_temperature_celsius") is None

    def test_device_info(self, sample_reading):
        info = DeviceInfo(name="Aranet4 12345", model_number="Aranet4", firmware_revision="v1.4.19")
        self.register(device_info_source=lambda: info)
        self.cache.record_success(sample_reading)

        labels = dict(LABELS, name="Aranet4 12345", model="Aranet4", serial="",
                      firmware="v1.4.19", manufacturer="")
        assert self.sample("aranet_device_info", labels) == 1.0

    def test_text_exposition(self, sample_reading):
        self.register()
        self.cache.record_success(sample_reading)

        text = generate_latest(self.registry).decode()
        assert f'aranet_co2_ppm{{address="{ADDRESS}"}} 420.0' in text


class TestMetricsServer:

    def test_start_and_stop(self):
        collector = ReadingCollector(ReadingCache(logger=Mock()), ADDRESS)
        server = Mock()
        thread = Mock()

        with patch("aranet_monitor.metrics.exporter.start_http_server", return_value=(server, thread)) as start:
            metrics_server = MetricsServer(collector, "127.0.0.1:9101", logger=Mock())
            metrics_server.start()

            assert metrics_server.is_running
            start.assert_called_once_with(9101, addr="127.0.0.1", registry=metrics_server.registry)

            metrics_server.stop()

        server.shutdown.assert_called_once()
        server.server_close.assert_called_once()
        thread.join.assert_called_once()
        assert not metrics_server.is_running

    def test_stop_without_start(self):
        metrics_server = MetricsServer(ReadingCollector(ReadingCache(logger=Mock()), ADDRESS), ":9101")
        metrics_server.stop()


class TestCreateMetricsServer:

    def test_disabled_without_listen_address(self, mock_config):
        assert create_metrics_server(mock_config, ReadingCache(logger=Mock())) is None

    def test_celsius_unless_honouring_display_unit(self, mock_config):
        mock_config.metrics_listen_address = ":9100"
        mock_config.display_fahrenheit = True

        server = create_metrics_server(mock_config, ReadingCache(logger=Mock()))
        assert server.collector.fahrenheit is False

        mock_config.metrics_honor_display_unit = True
        server = create_metrics_server(mock_config, ReadingCache(logger=Mock()))
        assert server.collector.fahrenheit is True
