"""
Pytest configuration and shared fixtures for Aranet monitor tests.
Provides common test fixtures, mock objects, and test utilities.
"""

import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock

import pytest

from aranet_monitor.ble.protocol import AlarmStatus, Reading
from aranet_monitor.utils.config import Config
from aranet_monitor.utils.logging import PerformanceMonitor
from tests.fixtures.sensor_data import SensorDataFixtures


ARANET_ENV_PREFIXES = ("ARANET_", "BLE_", "RETRY_", "LOG_", "PINENTRY_", "SHUTDOWN_", "PERFORMANCE_")


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep settings from the developer's shell out of the tests."""
    import os
    for key in list(os.environ):
        if key.startswith(ARANET_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def mock_config():
    """Create a mock configuration for testing."""
    config = Mock(spec=Config)

    # Device configuration
    config.device_address = SensorDataFixtures.DEVICE_ADDRESS
    config.ble_adapter = "hci0"
    config.display_fahrenheit = False
    config.refresh_interval = None

    # Metrics configuration
    config.metrics_listen_address = None
    config.metrics_honor_display_unit = False

    # BLE configuration
    config.ble_scan_timeout = 1.0
    config.ble_connect_timeout = 1.0
    config.ble_pair_timeout = 1.0
    config.ble_read_timeout = 1.0
    config.ble_pairing_enabled = False
    config.ble_pairing_pin = None
    config.pinentry_program = "pinentry"

    # Retry configuration
    config.retry_backoff_base = 0.01
    config.retry_backoff_max = 0.05
    config.retry_persistent_error_limit = 3
    config.shutdown_poll_interval = 0.01

    # Logging configuration
    config.log_level = "DEBUG"
    config.log_enable_console = False
    config.log_enable_file = False
    config.log_enable_syslog = False
    config.performance_log_interval = 60

    return config


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    logger = Mock(spec=logging.Logger)
    return logger


@pytest.fixture
def mock_performance_monitor():
    """Create a mock performance monitor for testing."""
    monitor = MagicMock(spec=PerformanceMonitor)
    monitor.metrics = {}

    return monitor


@pytest.fixture
def sample_reading():
    """Sample decoded reading for testing."""
    return Reading(
        timestamp=datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
        co2=420,
        temperature=21.5,
        humidity=55,
        pressure=1014.2,
        battery=80,
        status=AlarmStatus.OK,
        raw_status=1,
    )


@pytest.fixture
def indoor_payload():
    return SensorDataFixtures.indoor_payload()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "requires_bluetooth: mark test as requiring Bluetooth hardware"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on test location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)

        if "continuous" in item.name or "long" in item.name:
            item.add_marker(pytest.mark.slow)
