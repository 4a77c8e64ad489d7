"""
Pairing support for Aranet sensors.

Aranet4 devices require a 6-digit PIN shown on the sensor display the first
time a host bonds with them. BlueZ asks a registered ``org.bluez.Agent1`` for
that PIN; this module exports such an agent over D-Bus and delegates the PIN
itself to an injected PinProvider (an interactive pinentry dialog or a fixed
value from configuration).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional
from urllib.parse import unquote

from dbus_fast import BusType, DBusError
from dbus_fast.aio import MessageBus
from dbus_fast.service import ServiceInterface, method

from .errors import AdapterUnavailableError, PairingDeniedError, PairingTimeoutError, SessionError


BLUEZ_SERVICE = "org.bluez"
BLUEZ_ROOT_PATH = "/org/bluez"
AGENT_INTERFACE = "org.bluez.Agent1"
AGENT_MANAGER_INTERFACE = "org.bluez.AgentManager1"
AGENT_PATH = "/org/aranet_monitor/agent"

REJECTED_ERROR = "org.bluez.Error.Rejected"
CANCELED_ERROR = "org.bluez.Error.Canceled"


def device_path_to_address(device_path: str) -> str:
    """
    Convert a BlueZ device object path to a MAC address.

    Args:
        device_path: Object path such as ``/org/bluez/hci0/dev_ED_12_89_6C_08_37``

    Returns:
        str: Address such as ``ED:12:89:6C:08:37`` (the path itself if it has no device node)
    """
    node = device_path.rstrip("/").rsplit("/", 1)[-1]
    if not node.startswith("dev_"):
        return device_path
    return node[len("dev_"):].replace("_", ":").upper()


class PinProvider(ABC):
    """
    Capability interface for answering a pairing PIN request.

    Implementations return the PIN as a string of digits, or raise
    PairingDeniedError / PairingTimeoutError.
    """

    @abstractmethod
    async def request_pin(self, device: str) -> str:
        pass


class StaticPinProvider(PinProvider):
    """Answers every request with a PIN taken from configuration."""

    def __init__(self, pin: str):
        self.pin = pin.strip()

    async def request_pin(self, device: str) -> str:
        if not self.pin.isdigit():
            raise PairingDeniedError(f"Configured PIN for {device} is not numeric")
        return self.pin


def parse_pinentry_output(lines: List[str]) -> str:
    """
    Extract the PIN from pinentry's Assuan responses.

    Args:
        lines: Response lines written by pinentry

    Returns:
        str: The entered PIN

    Raises:
        PairingDeniedError: If the dialog was cancelled or returned no usable PIN
    """
    for line in lines:
        if line.startswith("D "):
            pin = unquote(line[2:]).strip()
            if not pin:
                break
            if not pin.isdigit():
                raise PairingDeniedError(f"PIN must be numeric, got {len(pin)} non-numeric characters")
            return pin
        if line.startswith("ERR"):
            raise PairingDeniedError(f"PIN entry cancelled: {line[4:].strip()}")

    raise PairingDeniedError("PIN entry returned no PIN")


class PinentryPinProvider(PinProvider):
    """
    Asks the user for the PIN through a pinentry program (pinentry-qt,
    pinentry-gtk, pinentry-curses...) speaking the Assuan protocol.
    """

    def __init__(self, program: str = "pinentry", timeout: float = 60.0,
                 logger: Optional[logging.Logger] = None):
        self.program = program
        self.timeout = timeout
        self.logger = logger or logging.getLogger("aranet.ble")

    def _commands(self, device: str) -> bytes:
        description = f"Enter the PIN shown on the display of {device}".replace("%", "%25")
        commands = [
            "SETTITLE Bluetooth PIN",
            f"SETDESC {description}",
            "SETPROMPT PIN:",
            "GETPIN",
            "BYE",
        ]
        return ("\n".join(commands) + "\n").encode()

    async def request_pin(self, device: str) -> str:
        self.logger.info(f"Device {device} requests a PIN, starting {self.program}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.program,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise PairingDeniedError(f"Cannot start {self.program}: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(self._commands(device)), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise PairingTimeoutError(f"No PIN entered for {device} within {self.timeout:.0f}s")

        return parse_pinentry_output(stdout.decode(errors="replace").splitlines())


class BluezPairingAgent(ServiceInterface):
    """
    BlueZ ``org.bluez.Agent1`` implementation backed by a PinProvider.

    Register it around a pairing attempt with ``async with agent.registered():``.
    The outcome of the last PIN request is kept in ``last_failure`` so the
    session can report why BlueZ aborted the bond.
    """

    def __init__(self, pin_provider: PinProvider, capability: str = "KeyboardOnly",
                 logger: Optional[logging.Logger] = None):
        super().__init__(AGENT_INTERFACE)
        self.pin_provider = pin_provider
        self.capability = capability
        self.logger = logger or logging.getLogger("aranet.ble")
        self.last_failure: Optional[SessionError] = None
        self.requests = 0

    async def _ask(self, device_path: str) -> str:
        address = device_path_to_address(device_path)
        self.requests += 1
        try:
            pin = await self.pin_provider.request_pin(address)
        except SessionError as e:
            self.last_failure = e
            self.logger.warning(f"PIN request for {address} failed: {e}")
            raise DBusError(REJECTED_ERROR, str(e))
        self.last_failure = None
        return pin

    @method()
    async def RequestPasskey(self, device: "o") -> "u":  # noqa: F821
        return int(await self._ask(device))

    @method()
    async def RequestPinCode(self, device: "o") -> "s":  # noqa: F821
        return await self._ask(device)

    @method()
    def DisplayPasskey(self, device: "o", passkey: "u", entered: "q"):  # noqa: F821
        self.logger.info(f"Passkey for {device_path_to_address(device)}: {passkey:06d}")

    @method()
    def RequestConfirmation(self, device: "o", passkey: "u"):  # noqa: F821
        self.logger.info(f"Confirming passkey {passkey:06d} for {device_path_to_address(device)}")

    @method()
    def RequestAuthorization(self, device: "o"):  # noqa: F821
        pass

    @method()
    def AuthorizeService(self, device: "o", uuid: "s"):  # noqa: F821
        pass

    @method()
    def Cancel(self):
        self.logger.warning("Pairing request cancelled by BlueZ")
        if self.last_failure is None:
            self.last_failure = PairingTimeoutError("Pairing cancelled by BlueZ")

    @method()
    def Release(self):
        self.logger.debug("Pairing agent released by BlueZ")

    @asynccontextmanager
    async def registered(self) -> AsyncIterator["BluezPairingAgent"]:
        """
        Export the agent on the system bus and make it BlueZ's default agent.

        Raises:
            AdapterUnavailableError: If the system bus or BlueZ cannot be reached
        """
        self.last_failure = None
        try:
            bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        except (OSError, DBusError) as e:
            raise AdapterUnavailableError(f"Cannot connect to the system D-Bus: {e}") from e

        try:
            bus.export(AGENT_PATH, self)
            introspection = await bus.introspect(BLUEZ_SERVICE, BLUEZ_ROOT_PATH)
            proxy = bus.get_proxy_object(BLUEZ_SERVICE, BLUEZ_ROOT_PATH, introspection)
            manager = proxy.get_interface(AGENT_MANAGER_INTERFACE)
            await manager.call_register_agent(AGENT_PATH, self.capability)
            await manager.call_request_default_agent(AGENT_PATH)
        except DBusError as e:
            bus.unexport(AGENT_PATH)
            bus.disconnect()
            raise AdapterUnavailableError(f"Cannot register pairing agent with BlueZ: {e}") from e

        self.logger.debug(f"Pairing agent registered at {AGENT_PATH} ({self.capability})")
        try:
            yield self
        finally:
            try:
                await manager.call_unregister_agent(AGENT_PATH)
            except DBusError as e:
                self.logger.warning(f"Error unregistering pairing agent: {e}")
            bus.unexport(AGENT_PATH)
            bus.disconnect()
            self.logger.debug("Pairing agent unregistered")
