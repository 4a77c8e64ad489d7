"""
Troubleshooting support for session failures.

Maps each SessionError to a diagnosis of the local Bluetooth stack and a
short list of things the operator can try. Nothing here changes system
state; the checks only read service and adapter status.
"""

import logging
import shutil
import subprocess
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..ble.errors import (
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


HINTS: Dict[type, List[str]] = {
    AdapterUnavailableError: [
        "Check bluetooth service: sudo systemctl status bluetooth",
        "Check adapter status: hciconfig (or: bluetoothctl list)",
        "Unblock the radio: rfkill unblock bluetooth",
    ],
    DeviceUnreachableError: [
        "Move the adapter closer to the sensor",
        "Confirm the address with: aranet-monitor scan",
        "Make sure Smart Home integration is enabled in the Aranet4 settings",
    ],
    PairingDeniedError: [
        "Enter the PIN shown on the sensor display",
        "Remove a stale bond and retry: bluetoothctl remove <address>",
    ],
    PairingTimeoutError: [
        "Answer the PIN prompt before the pairing timeout",
        "Set BLE_PAIRING_PIN to pair without a prompt",
    ],
    ServiceNotFoundError: [
        "The device does not expose the Aranet service; check the address",
        "List what the device offers with: aranet-monitor services",
    ],
    CharacteristicNotFoundError: [
        "Update the sensor firmware; older releases lack the readings characteristic",
        "List what the device offers with: aranet-monitor services",
    ],
    ConnectionLostError: [
        "The link dropped mid-read; weak signal or a low battery are the usual causes",
    ],
    ProtocolError: [
        "The sensor answered with a truncated payload; check the firmware version",
    ],
}


class EdgeCaseHandler:
    """
    Diagnoses session failures for the CLI and the daemon.

    System checks run at most ``max_diagnostics`` times per error type within
    ``diagnostic_cooldown`` so a daemon in backoff does not spawn
    subprocesses on every retry.
    """

    def __init__(self, config=None, logger=None,
                 max_diagnostics: int = 3,
                 diagnostic_cooldown: timedelta = timedelta(minutes=5)):
        self.config = config
        self.logger = logger or logging.getLogger("aranet.ble")
        self.max_diagnostics = max_diagnostics
        self.diagnostic_cooldown = diagnostic_cooldown
        self.diagnostic_attempts: Dict[str, Tuple[int, datetime]] = {}

    @property
    def adapter(self) -> str:
        if self.config is None:
            return "hci0"
        return self.config.ble_adapter

    def handle_session_error(self, error: SessionError) -> Tuple[bool, str]:
        """
        Diagnose a failed fetch.

        Args:
            error: The session failure

        Returns:
            Tuple of (retry_may_help, message) where message carries the
            check findings followed by hints for the operator
        """
        error_type = type(error).__name__
        self.logger.debug(f"Diagnosing {error_type}: {error}")

        findings: List[str] = []
        if isinstance(error, (AdapterUnavailableError, DeviceUnreachableError)) \
                and self._can_run_diagnostics(error_type):
            self._record_diagnostics(error_type)
            for check in (self._check_bluetooth_service, self._check_bluetooth_hardware):
                ok, message = check()
                if not ok:
                    findings.append(message)

        lines = [f"{error_type}: {error}"]
        lines.extend(findings)
        lines.extend(f"• {hint}" for hint in self.hints_for(error))
        return error.transient, "\n".join(lines)

    def check_system(self) -> List[Tuple[bool, str]]:
        """Run every system check regardless of the diagnostic rate limit."""
        return [self._check_bluetooth_service(), self._check_bluetooth_hardware()]

    @staticmethod
    def hints_for(error: SessionError) -> List[str]:
        for error_class in type(error).__mro__:
            if error_class in HINTS:
                return HINTS[error_class]
        return []

    def _can_run_diagnostics(self, error_type: str) -> bool:
        if error_type not in self.diagnostic_attempts:
            return True

        attempts, last_attempt = self.diagnostic_attempts[error_type]
        if attempts < self.max_diagnostics:
            return True
        if datetime.now() - last_attempt > self.diagnostic_cooldown:
            self.diagnostic_attempts[error_type] = (0, datetime.now())
            return True
        return False

    def _record_diagnostics(self, error_type: str):
        attempts, _ = self.diagnostic_attempts.get(error_type, (0, datetime.now()))
        self.diagnostic_attempts[error_type] = (attempts + 1, datetime.now())

    def _run(self, command: List[str]) -> Optional[subprocess.CompletedProcess]:
        if shutil.which(command[0]) is None:
            return None
        try:
            return subprocess.run(command, capture_output=True, text=True, timeout=5)
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.debug(f"Unable to run {command[0]}: {e}")
            return None

    def _check_bluetooth_service(self) -> Tuple[bool, str]:
        """Check if bluetooth service is running."""
        result = self._run(['systemctl', 'is-active', 'bluetooth'])
        if result is None:
            return True, "Bluetooth service state unknown"
        if result.returncode != 0:
            return False, "Bluetooth service is not active. Run: sudo systemctl start bluetooth"
        return True, "Bluetooth service is active"

    def _check_bluetooth_hardware(self) -> Tuple[bool, str]:
        """Check bluetooth adapter availability."""
        result = self._run(['hciconfig', self.adapter])
        if result is None:
            return True, "Bluetooth adapter state unknown"
        if result.returncode != 0 or self.adapter not in result.stdout:
            return False, f"Bluetooth adapter {self.adapter} not found. Check hardware connection."
        if 'DOWN' in result.stdout:
            return False, f"Bluetooth adapter is down. Run: sudo hciconfig {self.adapter} up"
        return True, "Bluetooth hardware is available and up"

    def troubleshooting_guide(self) -> str:
        """Generic BLE troubleshooting text for the CLI."""
        guide = [
            "BLE Troubleshooting Guide:",
            "=" * 50,
            "Quick Fixes:",
            "1. Check bluetooth service: sudo systemctl status bluetooth",
            "2. Add user to bluetooth group: sudo usermod -a -G bluetooth $USER",
            "3. Restart bluetooth: sudo systemctl restart bluetooth",
            f"4. Check adapter status: hciconfig {self.adapter}",
            "",
            "Pairing:",
            "• The sensor shows a PIN on its display while pairing",
            "• Remove stale bonds with bluetoothctl remove <address>",
            "",
            "If problems persist:",
            "• Check system logs: journalctl -u bluetooth",
            "• Test with bluetoothctl scan on",
        ]
        return "\n".join(guide)
