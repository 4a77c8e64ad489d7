"""
Prometheus exposition of the cached reading.

The collector reads the ReadingCache on every scrape; nothing is pushed into
metric objects ahead of time, so a scrape always reflects the latest
snapshot and never reports values for a reading that was never captured.
"""

import logging
from typing import Iterator, Optional, Tuple

from prometheus_client import CollectorRegistry, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, InfoMetricFamily, Metric
from prometheus_client.registry import Collector

from ..service.cache import ReadingCache


DEFAULT_METRICS_PORT = 9100


def parse_listen_address(value: str) -> Tuple[str, int]:
    """
    Split a ``host:port`` listen address.

    Accepts ``0.0.0.0:9100``, ``:9100``, ``[::1]:9100`` and a bare ``9100``.

    Raises:
        ValueError: If the port is missing or out of range
    """
    value = value.strip()
    if value.isdigit():
        host, port_text = "", value
    else:
        host, sep, port_text = value.rpartition(":")
        if not sep:
            raise ValueError(f"Listen address '{value}' must be host:port")
        host = host.strip("[]")

    port = int(port_text)
    if not 0 < port < 65536:
        raise ValueError(f"Listen port {port} out of range")
    return host or "0.0.0.0", port


class ReadingCollector(Collector):
    """Renders the cache snapshot as Prometheus metric families."""

    def __init__(self, cache: ReadingCache, address: str,
                 fahrenheit: bool = False, device_info_source=None):
        self.cache = cache
        self.address = address
        self.fahrenheit = fahrenheit
        self.device_info_source = device_info_source

    def _gauge(self, name: str, documentation: str, value: float) -> GaugeMetricFamily:
        gauge = GaugeMetricFamily(name, documentation, labels=["address"])
        gauge.add_metric([self.address], value)
        return gauge

    def collect(self) -> Iterator[Metric]:
        snapshot = self.cache.get_latest()

        yield self._gauge(
            "aranet_up",
            "1 if the latest fetch from the sensor succeeded",
            1.0 if snapshot.is_healthy else 0.0,
        )

        failures = CounterMetricFamily(
            "aranet_fetch_failures", "Failed fetch attempts", labels=["address"]
        )
        failures.add_metric([self.address], snapshot.total_failures)
        yield failures

        yield self._gauge(
            "aranet_consecutive_failures",
            "Failed fetch attempts since the last success",
            snapshot.consecutive_failures,
        )

        reading = snapshot.reading
        if reading is None:
            return

        yield self._gauge("aranet_co2_ppm", "CO2 concentration in ppm", reading.co2)
        if self.fahrenheit:
            yield self._gauge(
                "aranet_temperature_fahrenheit", "Temperature in degrees Fahrenheit",
                reading.temperature_fahrenheit,
            )
        else:
            yield self._gauge(
                "aranet_temperature_celsius", "Temperature in degrees Celsius", reading.temperature
            )
        yield self._gauge("aranet_humidity_percent", "Relative humidity in percent", reading.humidity)
        yield self._gauge("aranet_pressure_hpa", "Atmospheric pressure in hPa", reading.pressure)
        yield self._gauge("aranet_battery_percent", "Battery level in percent", reading.battery)
        yield self._gauge(
            "aranet_status", "CO2 indicator (1 green, 2 amber, 3 red)", reading.raw_status
        )
        yield self._gauge(
            "aranet_last_success_timestamp_seconds",
            "Unix time of the last successful fetch",
            snapshot.last_success.timestamp(),
        )
        yield self._gauge(
            "aranet_reading_age_seconds",
            "Seconds since the last successful fetch",
            snapshot.age_seconds(),
        )

        device_info = self.device_info_source() if self.device_info_source else None
        if device_info is not None:
            info = InfoMetricFamily("aranet_device", "Sensor identification", labels=["address"])
            info.add_metric([self.address], device_info.as_labels())
            yield info


class MetricsServer:
    """HTTP endpoint serving the ReadingCollector on a private registry."""

    def __init__(self, collector: ReadingCollector, listen_address: str, logger=None):
        self.collector = collector
        self.host, self.port = parse_listen_address(listen_address)
        self.logger = logger or logging.getLogger("aranet.metrics")
        self.registry = CollectorRegistry()
        self.registry.register(collector)
        self._server = None
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def start(self):
        if self._server is not None:
            return
        self._server, self._thread = start_http_server(
            self.port, addr=self.host, registry=self.registry
        )
        self.logger.info(f"Metrics endpoint listening on http://{self.host}:{self.port}/metrics")

    def stop(self):
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self.logger.info("Metrics endpoint stopped")


def create_metrics_server(config, cache: ReadingCache, device_info_source=None,
                          logger=None) -> Optional[MetricsServer]:
    """Build the metrics server when a listen address is configured."""
    if not config.metrics_listen_address:
        return None

    fahrenheit = config.metrics_honor_display_unit and config.display_fahrenheit
    collector = ReadingCollector(
        cache,
        config.device_address.upper(),
        fahrenheit=fahrenheit,
        device_info_source=device_info_source,
    )
    return MetricsServer(collector, config.metrics_listen_address, logger=logger)
