"""
GATT session for a single Aranet sensor.
Owns the BLE connection: device lookup, connect, pairing, service resolution,
characteristic reads and disconnect, with a timeout on every step.
"""

import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakDBusError, BleakError

from .errors import (
    AdapterUnavailableError,
    CharacteristicNotFoundError,
    ConnectionLostError,
    DeviceUnreachableError,
    PairingDeniedError,
    PairingTimeoutError,
    ProtocolError,
    ServiceNotFoundError,
    SessionError,
)
from .pairing import BluezPairingAgent
from .protocol import (
    ARANET_SERVICE_UUID,
    CURRENT_READINGS_CHAR_UUID,
    DEVICE_NAME_CHAR_UUID,
    FIRMWARE_REVISION_CHAR_UUID,
    MANUFACTURER_NAME_CHAR_UUID,
    MODEL_NUMBER_CHAR_UUID,
    SERIAL_NUMBER_CHAR_UUID,
    DecodeError,
    DeviceInfo,
    Reading,
    decode_current_readings,
)


# BlueZ errors raised by Device1.Pair()
PAIRING_TIMEOUT_ERRORS = {
    "org.bluez.Error.AuthenticationTimeout",
    "org.bluez.Error.ConnectionAttemptFailed",
}
ALREADY_PAIRED_ERROR = "org.bluez.Error.AlreadyExists"


class SessionState(Enum):
    """Lifecycle state of the GATT session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    PAIRING = "pairing"
    CONNECTED = "connected"
    POLLING = "polling"
    ERROR_BACKOFF = "error_backoff"


class SessionEventType(Enum):
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class SessionEvent:
    """Asynchronous notification from the transport."""
    kind: SessionEventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class DeviceAddress:
    """Hardware address of the sensor plus the local adapter used to reach it."""
    address: str
    adapter: str = "hci0"

    def __post_init__(self):
        object.__setattr__(self, "address", self.address.strip().upper())

    def as_bytes(self) -> bytes:
        return bytes(int(part, 16) for part in self.address.split(":"))

    def __str__(self) -> str:
        return f"{self.address} via {self.adapter}"


class GattSession:
    """
    Connection to one Aranet sensor.

    ``fetch_once()`` connects on demand and keeps the link open between calls;
    any failure releases the link before the error propagates, and leaving an
    ``async with`` block always disconnects.
    """

    def __init__(self,
                 device: DeviceAddress,
                 pairing_agent: Optional[BluezPairingAgent] = None,
                 scan_timeout: float = 10.0,
                 connect_timeout: float = 20.0,
                 pair_timeout: float = 60.0,
                 read_timeout: float = 10.0,
                 logger=None,
                 performance_monitor=None):
        self.device = device
        self.pairing_agent = pairing_agent
        self.scan_timeout = scan_timeout
        self.connect_timeout = connect_timeout
        self.pair_timeout = pair_timeout
        self.read_timeout = read_timeout
        self.logger = logger or logging.getLogger("aranet.ble")
        self.performance_monitor = performance_monitor

        self.state = SessionState.DISCONNECTED
        self.events: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self.device_info: Optional[DeviceInfo] = None

        self._client: Optional[BleakClient] = None
        self._readings_char: Optional[BleakGATTCharacteristic] = None
        self._connection_count = 0

    @classmethod
    def from_config(cls, config, pairing_agent: Optional[BluezPairingAgent] = None,
                    logger=None, performance_monitor=None) -> "GattSession":
        """Build a session from application configuration."""
        return cls(
            DeviceAddress(config.device_address, config.ble_adapter),
            pairing_agent=pairing_agent,
            scan_timeout=config.ble_scan_timeout,
            connect_timeout=config.ble_connect_timeout,
            pair_timeout=config.ble_pair_timeout,
            read_timeout=config.ble_read_timeout,
            logger=logger,
            performance_monitor=performance_monitor,
        )

    async def __aenter__(self) -> "GattSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    @property
    def connection_count(self) -> int:
        """Number of connections established so far."""
        return self._connection_count

    def _on_disconnect(self, client: BleakClient):
        # Called by bleak; intentional disconnects have already dropped the handle.
        if client is not self._client:
            return
        self.events.put_nowait(SessionEvent(SessionEventType.DISCONNECTED))

    def process_events(self) -> List[SessionEvent]:
        """
        Apply pending transport notifications to the session state.

        Returns:
            List[SessionEvent]: Events consumed by this call
        """
        consumed = []
        while True:
            try:
                event = self.events.get_nowait()
            except asyncio.QueueEmpty:
                break
            consumed.append(event)
            if event.kind is SessionEventType.DISCONNECTED and self._client is not None:
                self.logger.warning(f"Connection to {self.device.address} lost")
                self._client = None
                self._readings_char = None
                self.state = SessionState.DISCONNECTED
        return consumed

    async def _find_device(self) -> BLEDevice:
        self.logger.debug(f"Looking for {self.device.address} on {self.device.adapter}...")
        try:
            ble_device = await BleakScanner.find_device_by_address(
                self.device.address,
                timeout=self.scan_timeout,
                adapter=self.device.adapter,
            )
        except (BleakError, OSError) as e:
            raise AdapterUnavailableError(
                f"Bluetooth adapter {self.device.adapter} unavailable: {e}"
            ) from e

        if ble_device is None:
            raise DeviceUnreachableError(
                f"Device {self.device.address} not found within {self.scan_timeout:.0f}s"
            )
        return ble_device

    async def connect(self, resolve_endpoints: bool = True):
        """
        Establish the connection, pair if configured and resolve the readings characteristic.

        Args:
            resolve_endpoints: Look up the Aranet service and characteristic

        Raises:
            SessionError: If any step fails (the link is released first)
        """
        self.process_events()
        if self.is_connected:
            return

        self.state = SessionState.CONNECTING
        ble_device = await self._find_device()

        self.logger.info(f"Connecting to {self.device}...")
        client = BleakClient(
            ble_device,
            disconnected_callback=self._on_disconnect,
            timeout=self.connect_timeout,
            adapter=self.device.adapter,
        )
        self._client = client

        try:
            try:
                await asyncio.wait_for(client.connect(), timeout=self.connect_timeout)
            except asyncio.TimeoutError:
                raise DeviceUnreachableError(
                    f"Connection to {self.device.address} timed out after {self.connect_timeout:.0f}s"
                )
            except BleakError as e:
                raise DeviceUnreachableError(f"Connection to {self.device.address} failed: {e}") from e

            self._connection_count += 1
            self.logger.info(f"Connected to {self.device.address}")

            if self.pairing_agent is not None:
                self.state = SessionState.PAIRING
                await self._pair()

            if resolve_endpoints:
                self._resolve_endpoints()
                self.device_info = await self._read_device_info()

            self._raise_if_disconnected()
        except BaseException:
            await self.disconnect()
            raise

        self.state = SessionState.CONNECTED

    async def _pair(self):
        """Bond with the device, answering BlueZ PIN requests through the agent."""
        self.logger.debug(f"Pairing with {self.device.address}...")

        async with self.pairing_agent.registered():
            try:
                await asyncio.wait_for(self._client.pair(), timeout=self.pair_timeout)
            except asyncio.TimeoutError:
                raise PairingTimeoutError(
                    f"Pairing with {self.device.address} timed out after {self.pair_timeout:.0f}s"
                )
            except BleakDBusError as e:
                if e.dbus_error == ALREADY_PAIRED_ERROR:
                    self.logger.debug(f"{self.device.address} is already paired")
                    return
                if self.pairing_agent.last_failure is not None:
                    raise self.pairing_agent.last_failure from e
                self._raise_if_disconnected()
                if e.dbus_error in PAIRING_TIMEOUT_ERRORS:
                    raise PairingTimeoutError(f"Pairing with {self.device.address} timed out: {e}") from e
                raise PairingDeniedError(f"Pairing with {self.device.address} failed: {e}") from e
            except BleakError as e:
                self._raise_if_disconnected()
                raise PairingDeniedError(f"Pairing with {self.device.address} failed: {e}") from e

        self.logger.info(f"Paired with {self.device.address}")

    def _resolve_endpoints(self):
        service = self._client.services.get_service(ARANET_SERVICE_UUID)
        if service is None:
            raise ServiceNotFoundError(
                f"{self.device.address} does not expose the Aranet service {ARANET_SERVICE_UUID}"
            )

        characteristic = service.get_characteristic(CURRENT_READINGS_CHAR_UUID)
        if characteristic is None:
            raise CharacteristicNotFoundError(
                f"{self.device.address} does not expose the current readings "
                f"characteristic {CURRENT_READINGS_CHAR_UUID}"
            )

        self._readings_char = characteristic
        self.logger.debug(f"Resolved current readings characteristic (handle {characteristic.handle})")

    async def _read_text(self, uuid: str) -> str:
        characteristic = self._client.services.get_characteristic(uuid)
        if characteristic is None:
            return ""
        try:
            value = await asyncio.wait_for(
                self._client.read_gatt_char(characteristic), timeout=self.read_timeout
            )
        except (BleakError, asyncio.TimeoutError) as e:
            self.logger.debug(f"Could not read {uuid}: {e}")
            return ""
        return bytes(value).decode("utf-8", errors="replace").rstrip("\x00").strip()

    async def _read_device_info(self) -> DeviceInfo:
        info = DeviceInfo(
            name=await self._read_text(DEVICE_NAME_CHAR_UUID),
            model_number=await self._read_text(MODEL_NUMBER_CHAR_UUID),
            serial_number=await self._read_text(SERIAL_NUMBER_CHAR_UUID),
            firmware_revision=await self._read_text(FIRMWARE_REVISION_CHAR_UUID),
            manufacturer_name=await self._read_text(MANUFACTURER_NAME_CHAR_UUID),
        )
        self.logger.info(
            f"Device {self.device.address}: name={info.name!r} model={info.model_number!r} "
            f"firmware={info.firmware_revision!r}"
        )
        return info

    def _raise_if_disconnected(self):
        self.process_events()
        if self._client is None or not self._client.is_connected:
            raise ConnectionLostError(f"Connection to {self.device.address} lost")

    async def _read_current_readings(self) -> bytes:
        try:
            value = await asyncio.wait_for(
                self._client.read_gatt_char(self._readings_char), timeout=self.read_timeout
            )
        except asyncio.TimeoutError:
            self._raise_if_disconnected()
            raise DeviceUnreachableError(
                f"Read from {self.device.address} timed out after {self.read_timeout:.0f}s"
            )
        except (BleakError, OSError) as e:
            self._raise_if_disconnected()
            if "auth" in str(e).lower():
                raise PairingDeniedError(
                    f"{self.device.address} refused the read, pairing is required: {e}"
                ) from e
            raise DeviceUnreachableError(f"Read from {self.device.address} failed: {e}") from e
        return bytes(value)

    async def fetch_once(self) -> Reading:
        """
        Read and decode the current readings.

        Returns:
            Reading: Freshly decoded reading

        Raises:
            SessionError: On any failure; the connection has been released
        """
        timer = self.performance_monitor.measure_time("fetch") if self.performance_monitor else nullcontext()
        with timer:
            try:
                await self.connect()
                self.state = SessionState.POLLING
                payload = await self._read_current_readings()
                try:
                    reading = decode_current_readings(payload)
                except DecodeError as e:
                    raise ProtocolError(f"Cannot decode current readings: {e}", e) from e
                self.logger.debug(f"Read {payload.hex()} from {self.device.address}")
                return reading
            except SessionError:
                await self.disconnect()
                raise
            except Exception as e:
                # Anything bleak or D-Bus raises outside the mapped errors
                await self.disconnect()
                raise ConnectionLostError(
                    f"Unexpected error talking to {self.device.address}: {type(e).__name__}: {e}"
                ) from e

    async def describe_services(self) -> List[Dict[str, Any]]:
        """
        List the GATT services and characteristics exposed by the device.

        Returns:
            List[Dict[str, Any]]: One entry per service with its characteristics
        """
        await self.connect(resolve_endpoints=False)
        if self.device_info is None:
            self.device_info = await self._read_device_info()

        services = []
        for service in self._client.services:
            services.append({
                "uuid": str(service.uuid),
                "description": service.description,
                "characteristics": [
                    {
                        "uuid": str(char.uuid),
                        "description": char.description,
                        "handle": char.handle,
                        "properties": list(char.properties),
                    }
                    for char in service.characteristics
                ],
            })
        return services

    async def disconnect(self):
        """Release the connection; safe to call when already disconnected."""
        client, self._client = self._client, None
        self._readings_char = None
        self.state = SessionState.DISCONNECTED
        if client is None:
            return

        try:
            await asyncio.wait_for(client.disconnect(), timeout=self.connect_timeout)
            self.logger.debug(f"Disconnected from {self.device.address}")
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Error disconnecting from {self.device.address}: {e}")
