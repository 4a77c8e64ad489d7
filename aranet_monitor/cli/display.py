"""
Rendering of readings and device details for the terminal.
"""

from typing import Any, Dict, List

from rich.table import Table

from ..ble.protocol import AlarmStatus, DeviceInfo, Reading
from ..ble.scanner import DiscoveredSensor


STATUS_LABELS = {
    AlarmStatus.OK: "[green]OK[/green]",
    AlarmStatus.CO2_WARNING: "[yellow]CO2 warning[/yellow]",
    AlarmStatus.CO2_ALARM: "[red]CO2 alarm[/red]",
    AlarmStatus.UNKNOWN: "[dim]unknown[/dim]",
}


def unit_symbol(fahrenheit: bool) -> str:
    return "F" if fahrenheit else "C"


def format_oneline(reading: Reading, fahrenheit: bool = False) -> str:
    """Compact form, e.g. ``612ppm 21.50°C 41% 1003hPa``."""
    return (
        f"{reading.co2}ppm "
        f"{reading.temperature_in(fahrenheit):.2f}°{unit_symbol(fahrenheit)} "
        f"{reading.humidity}% "
        f"{int(reading.pressure)}hPa"
    )


def reading_table(reading: Reading, fahrenheit: bool = False, title: str = "Aranet4") -> Table:
    """Detailed view of one reading."""
    table = Table(title=title)
    table.add_column("Measurement", style="cyan")
    table.add_column("Value", style="green", justify="right")

    table.add_row("CO2", f"{reading.co2} ppm")
    table.add_row("Temperature", f"{reading.temperature_in(fahrenheit):.2f} °{unit_symbol(fahrenheit)}")
    table.add_row("Humidity", f"{reading.humidity} %")
    table.add_row("Pressure", f"{reading.pressure:.1f} hPa")
    table.add_row("Battery", f"{reading.battery} %")
    table.add_row("Status", STATUS_LABELS[reading.status])
    table.add_row("Captured", reading.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S"))
    return table


def device_info_table(info: DeviceInfo) -> Table:
    table = Table(title="Device")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in info.as_labels().items():
        table.add_row(key.capitalize(), value or "[dim]-[/dim]")
    return table


def services_table(services: List[Dict[str, Any]]) -> Table:
    """GATT services with their characteristics."""
    table = Table(title="GATT Services")
    table.add_column("Service", style="cyan")
    table.add_column("Characteristic", style="green")
    table.add_column("Handle", justify="right")
    table.add_column("Properties", style="dim")

    for service in services:
        table.add_row(f"{service['uuid']}\n[dim]{service['description']}[/dim]", "", "", "")
        for char in service["characteristics"]:
            table.add_row(
                "",
                f"{char['uuid']}\n[dim]{char['description']}[/dim]",
                f"0x{char['handle']:04x}",
                ", ".join(char["properties"]),
            )
    return table


def sensors_table(sensors: Dict[str, DiscoveredSensor]) -> Table:
    table = Table(title="Discovered Aranet Sensors")
    table.add_column("Address", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("RSSI", justify="right")

    for sensor in sorted(sensors.values(), key=lambda s: s.rssi or -999, reverse=True):
        rssi = f"{sensor.rssi} dBm" if sensor.rssi is not None else "N/A"
        table.add_row(sensor.address, sensor.name or "Unknown", rssi)
    return table
