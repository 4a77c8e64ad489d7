"""
Aranet4 GATT protocol definitions.
Holds the service/characteristic identifiers, the Reading data model and the
decoder for the "current readings" characteristic payload.
"""

import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


# SAF Tehnika service (firmware v1.2.0 and later)
ARANET_SERVICE_UUID = "0000fce0-0000-1000-8000-00805f9b34fb"
CURRENT_READINGS_CHAR_UUID = "f0cd1503-95da-4f4b-9ac8-aa55d312af0c"

# Standard services read for device information
GAP_SERVICE_UUID = "00001800-0000-1000-8000-00805f9b34fb"
DEVICE_NAME_CHAR_UUID = "00002a00-0000-1000-8000-00805f9b34fb"
DEVICE_INFO_SERVICE_UUID = "0000180a-0000-1000-8000-00805f9b34fb"
MODEL_NUMBER_CHAR_UUID = "00002a24-0000-1000-8000-00805f9b34fb"
SERIAL_NUMBER_CHAR_UUID = "00002a25-0000-1000-8000-00805f9b34fb"
FIRMWARE_REVISION_CHAR_UUID = "00002a26-0000-1000-8000-00805f9b34fb"
MANUFACTURER_NAME_CHAR_UUID = "00002a29-0000-1000-8000-00805f9b34fb"

# SAF Tehnika Bluetooth SIG company identifier, used in advertisements
SAF_TEHNIKA_MANUFACTURER_ID = 0x0702

# co2, temperature, pressure, humidity, battery, status
CURRENT_READINGS_FORMAT = "<HhHBBB"
CURRENT_READINGS_LENGTH = struct.calcsize(CURRENT_READINGS_FORMAT)

TEMPERATURE_SCALE = 20.0  # raw units per degree Celsius
PRESSURE_SCALE = 10.0     # raw units per hPa


class AlarmStatus(Enum):
    """CO2 indicator state reported by the sensor."""
    OK = 1
    CO2_WARNING = 2
    CO2_ALARM = 3
    UNKNOWN = -1

    @classmethod
    def from_raw(cls, value: int) -> "AlarmStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class DecodeError(Exception):
    """Raised when a characteristic value cannot be decoded into a Reading."""

    def __init__(self, message: str, payload: bytes = b""):
        super().__init__(message)
        self.payload = bytes(payload)


class TooShortError(DecodeError):
    """Payload is shorter than the fixed current-readings layout."""
    pass


def celsius_to_fahrenheit(celsius: float) -> float:
    return celsius * 9.0 / 5.0 + 32.0


def fahrenheit_to_celsius(fahrenheit: float) -> float:
    return (fahrenheit - 32.0) * 5.0 / 9.0


@dataclass(frozen=True)
class Reading:
    """One decoded snapshot of the sensor's current readings."""
    timestamp: datetime = field(compare=False)
    co2: int             # ppm
    temperature: float   # Celsius
    humidity: int        # %RH
    pressure: float      # hPa
    battery: int         # %
    status: AlarmStatus
    raw_status: int = AlarmStatus.UNKNOWN.value

    @property
    def temperature_fahrenheit(self) -> float:
        return celsius_to_fahrenheit(self.temperature)

    def temperature_in(self, fahrenheit: bool) -> float:
        """Temperature in the requested display unit."""
        return self.temperature_fahrenheit if fahrenheit else self.temperature

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "co2": self.co2,
            "temperature": self.temperature,
            "humidity": self.humidity,
            "pressure": self.pressure,
            "battery": self.battery,
            "status": self.status.name,
        }


@dataclass(frozen=True)
class DeviceInfo:
    """Static identification read from the GAP and Device Information services."""
    name: str = ""
    model_number: str = ""
    serial_number: str = ""
    firmware_revision: str = ""
    manufacturer_name: str = ""

    def as_labels(self) -> dict:
        return {
            "name": self.name,
            "model": self.model_number,
            "serial": self.serial_number,
            "firmware": self.firmware_revision,
            "manufacturer": self.manufacturer_name,
        }


def decode_current_readings(data: bytes, timestamp: Optional[datetime] = None) -> Reading:
    """
    Decode the "current readings" characteristic value.

    Args:
        data: Raw characteristic value
        timestamp: Capture instant (defaults to now, UTC)

    Returns:
        Reading: Decoded reading

    Raises:
        TooShortError: If the payload is shorter than the fixed layout
    """
    payload = bytes(data)

    if len(payload) < CURRENT_READINGS_LENGTH:
        raise TooShortError(
            f"Current readings payload is {len(payload)} bytes, "
            f"expected {CURRENT_READINGS_LENGTH}",
            payload,
        )

    # Newer firmware may append fields after the fixed layout
    co2, temp_raw, pressure_raw, humidity, battery, status = struct.unpack(
        CURRENT_READINGS_FORMAT, payload[:CURRENT_READINGS_LENGTH]
    )

    return Reading(
        timestamp=timestamp or datetime.now(timezone.utc),
        co2=co2,
        temperature=temp_raw / TEMPERATURE_SCALE,
        humidity=humidity,
        pressure=pressure_raw / PRESSURE_SCALE,
        battery=battery,
        status=AlarmStatus.from_raw(status),
        raw_status=status,
    )

