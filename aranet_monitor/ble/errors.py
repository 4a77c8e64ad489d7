"""
Exception hierarchy for the BLE session layer.

Every failure of a fetch attempt surfaces as a SessionError subclass. The
``transient`` flag tells the scheduler whether the failure is expected to
clear on its own (radio or link trouble) or will repeat until someone
intervenes (wrong device, rejected pairing, unknown payload).
"""

from typing import Optional

from .protocol import DecodeError


class SessionError(Exception):
    """Base exception for GATT session operations."""
    transient = True


class AdapterUnavailableError(SessionError):
    """The local Bluetooth adapter cannot be opened."""
    pass


class DeviceUnreachableError(SessionError):
    """The device was not found or the connection did not complete in time."""
    pass


class PairingDeniedError(SessionError):
    """Pairing was rejected by the agent or by the device."""
    transient = False


class PairingTimeoutError(SessionError):
    """The pairing handshake did not complete in time."""
    pass


class ServiceNotFoundError(SessionError):
    """The connected device does not expose the Aranet service."""
    transient = False


class CharacteristicNotFoundError(SessionError):
    """The Aranet service lacks the current readings characteristic."""
    transient = False


class ConnectionLostError(SessionError):
    """The transport dropped the connection mid-operation."""
    pass


class ProtocolError(SessionError):
    """The characteristic value could not be decoded."""
    transient = False

    def __init__(self, message: str, decode_error: Optional[DecodeError] = None):
        super().__init__(message)
        self.decode_error = decode_error
