"""
Bluetooth Low Energy discovery for Aranet sensors.
Listens to advertisements for a fixed duration and reports the devices that
carry the SAF Tehnika manufacturer id or advertise the Aranet service.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .errors import AdapterUnavailableError
from .protocol import ARANET_SERVICE_UUID, SAF_TEHNIKA_MANUFACTURER_ID


@dataclass
class DiscoveredSensor:
    """An Aranet sensor seen in an advertisement."""
    address: str
    name: Optional[str] = None
    rssi: Optional[int] = None
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def is_aranet_advertisement(advertisement_data: AdvertisementData) -> bool:
    """True when the advertisement comes from an Aranet sensor."""
    if SAF_TEHNIKA_MANUFACTURER_ID in advertisement_data.manufacturer_data:
        return True
    service_uuids = [uuid.lower() for uuid in advertisement_data.service_uuids or []]
    if ARANET_SERVICE_UUID in service_uuids:
        return True
    name = advertisement_data.local_name or ""
    return name.startswith("Aranet")


class AranetScanner:
    """
    One-shot advertisement scanner.

    Used by the ``scan`` command to find the address to configure; the poll
    loop itself looks the configured device up through GattSession.
    """

    def __init__(self, adapter: str = "hci0", scan_timeout: float = 10.0,
                 logger=None, performance_monitor=None):
        self.adapter = adapter
        self.scan_timeout = scan_timeout
        self.logger = logger or logging.getLogger("aranet.ble")
        self.performance_monitor = performance_monitor

        self._discovered_devices: Dict[str, DiscoveredSensor] = {}
        self._callbacks: List[Callable[[DiscoveredSensor], None]] = []

    @classmethod
    def from_config(cls, config, logger=None, performance_monitor=None) -> "AranetScanner":
        return cls(
            adapter=config.ble_adapter,
            scan_timeout=config.ble_scan_timeout,
            logger=logger,
            performance_monitor=performance_monitor,
        )

    def add_callback(self, callback: Callable[[DiscoveredSensor], None]):
        """
        Add callback for discovery events.

        Args:
            callback: Function to call when a sensor is first seen or updated
        """
        self._callbacks.append(callback)

    def _notify_callbacks(self, sensor: DiscoveredSensor):
        for callback in self._callbacks:
            try:
                callback(sensor)
            except Exception as e:
                self.logger.error(f"Error in callback {callback.__name__}: {e}")

    def _detection_callback(self, device: BLEDevice, advertisement_data: AdvertisementData):
        if not is_aranet_advertisement(advertisement_data):
            return

        address = device.address.upper()
        sensor = DiscoveredSensor(
            address=address,
            name=advertisement_data.local_name or device.name,
            rssi=advertisement_data.rssi,
        )
        if address not in self._discovered_devices:
            self.logger.info(f"Discovered Aranet sensor: {address} ({sensor.name}, RSSI: {sensor.rssi}dBm)")
        self._discovered_devices[address] = sensor
        self._notify_callbacks(sensor)

    async def scan_once(self, duration: Optional[float] = None) -> Dict[str, DiscoveredSensor]:
        """
        Listen for advertisements once.

        Args:
            duration: Scan duration in seconds (uses the configured timeout if None)

        Returns:
            Dict[str, DiscoveredSensor]: Discovered sensors by address

        Raises:
            AdapterUnavailableError: If the adapter cannot scan
        """
        scan_duration = duration or self.scan_timeout
        self._discovered_devices.clear()

        scanner = BleakScanner(detection_callback=self._detection_callback, adapter=self.adapter)
        self.logger.info(f"Starting BLE scan on {self.adapter} for {scan_duration} seconds...")
        try:
            await scanner.start()
        except (BleakError, OSError) as e:
            raise AdapterUnavailableError(f"Cannot scan on {self.adapter}: {e}") from e

        try:
            await asyncio.sleep(scan_duration)
        finally:
            try:
                await scanner.stop()
            except (BleakError, OSError) as e:
                self.logger.warning(f"Error stopping scanner: {e}")

        self.logger.info(f"BLE scan completed. Found {len(self._discovered_devices)} Aranet sensors")
        if self.performance_monitor is not None:
            self.performance_monitor.record_metric("ble_sensors_found", len(self._discovered_devices))

        return dict(self._discovered_devices)
