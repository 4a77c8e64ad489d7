"""
Command-line interface for the Aranet monitor.
Provides the click command group and rich output for reading, monitoring and
inspecting an Aranet4 sensor.
"""

import asyncio
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .. import __version__
from ..ble.errors import SessionError
from ..ble.protocol import Reading
from ..ble.scanner import AranetScanner
from ..ble.session import GattSession
from ..exceptions.edge_cases import EdgeCaseHandler
from ..service.cache import ReadingCache
from ..service.daemon import AranetDaemonError, build_pairing_agent, run_daemon
from ..service.scheduler import PollScheduler
from ..utils.config import Config, ConfigurationError
from ..utils.logging import PerformanceMonitor, setup_logging
from .display import device_info_table, format_oneline, reading_table, sensors_table, services_table


console = Console()
error_console = Console(stderr=True)


class CLIContext:
    """Options shared by every command."""

    def __init__(self, env_file: Optional[str], overrides: dict):
        self.env_file = env_file
        self.overrides = overrides

    def load_config(self, validate: bool = True, **extra_overrides) -> Config:
        overrides = dict(self.overrides)
        overrides.update(extra_overrides)
        try:
            config = Config(self.env_file, overrides=overrides)
            if validate:
                config.validate_configuration()
        except ConfigurationError as e:
            error_console.print(f"[red]Configuration Error: {e}[/red]")
            sys.exit(1)
        setup_logging(config)
        return config


def _report_session_error(config: Config, error: SessionError):
    handler = EdgeCaseHandler(config)
    _, message = handler.handle_session_error(error)
    error_console.print(f"[red]{message}[/red]")


def _print_reading(reading: Reading, fahrenheit: bool, oneline: bool):
    if oneline:
        console.print(format_oneline(reading, fahrenheit), highlight=False)
    else:
        console.print(reading_table(reading, fahrenheit))


@click.group()
@click.version_option(version=__version__, prog_name="aranet-monitor")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None,
              help="Environment file to load (default: ./.env)")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                                               case_sensitive=False),
              default=None, help="Override LOG_LEVEL")
@click.option("--address", default=None, help="Sensor address, overrides ARANET_DEVICE_ADDRESS")
@click.option("--adapter", default=None, help="Bluetooth adapter, overrides ARANET_ADAPTER")
@click.pass_context
def cli(ctx, env_file, log_level, address, adapter):
    """Aranet Monitor - read an Aranet4 CO2 sensor over Bluetooth LE."""
    ctx.obj = CLIContext(env_file, {
        "LOG_LEVEL": log_level.upper() if log_level else None,
        "ARANET_DEVICE_ADDRESS": address,
        "ARANET_ADAPTER": adapter,
    })


@cli.command()
@click.option("--oneline", is_flag=True, help="Print each reading on a single line")
@click.pass_obj
def run(obj: CLIContext, oneline):
    """Read once, or poll continuously when ARANET_REFRESH_INTERVAL is set."""
    config = obj.load_config()
    fahrenheit = config.display_fahrenheit

    try:
        asyncio.run(run_daemon(
            config,
            reading_callback=lambda reading: _print_reading(reading, fahrenheit, oneline),
            performance_monitor=PerformanceMonitor(),
        ))
    except SessionError as e:
        _report_session_error(config, e)
        sys.exit(1)
    except AranetDaemonError as e:
        error_console.print(f"[red]{e}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--oneline", is_flag=True, help="Print the reading on a single line")
@click.option("--json", "as_json", is_flag=True, help="Print the reading as JSON")
@click.option("--fahrenheit/--celsius", default=None, help="Temperature display unit")
@click.pass_obj
def read(obj: CLIContext, oneline, fahrenheit, as_json):
    """Read the sensor once and exit."""
    config = obj.load_config(ARANET_DISPLAY_FAHRENHEIT=fahrenheit)

    async def read_once() -> Reading:
        session = GattSession.from_config(config, pairing_agent=build_pairing_agent(config))
        scheduler = PollScheduler(session, ReadingCache())
        return await scheduler.run_once()

    try:
        reading = asyncio.run(read_once())
    except SessionError as e:
        _report_session_error(config, e)
        sys.exit(1)

    if as_json:
        console.print_json(data=reading.to_dict())
        return
    _print_reading(reading, config.display_fahrenheit, oneline)


@cli.command()
@click.pass_obj
def services(obj: CLIContext):
    """Connect and list the GATT services the sensor exposes."""
    config = obj.load_config()

    async def describe():
        async with GattSession.from_config(config, pairing_agent=build_pairing_agent(config)) as session:
            return await session.describe_services(), session.device_info

    try:
        service_list, info = asyncio.run(describe())
    except SessionError as e:
        _report_session_error(config, e)
        sys.exit(1)

    if info is not None:
        console.print(device_info_table(info))
    console.print(services_table(service_list))


@cli.command()
@click.option("--duration", "-d", type=float, default=None, help="Scan duration in seconds")
@click.pass_obj
def scan(obj: CLIContext, duration):
    """Discover nearby Aranet sensors."""
    config = obj.load_config(validate=False)
    scanner = AranetScanner.from_config(config)
    seen = set()

    def on_sensor(sensor):
        if sensor.address not in seen:
            seen.add(sensor.address)
            console.print(f"Found [cyan]{sensor.address}[/cyan] {sensor.name or ''} ({sensor.rssi} dBm)")

    scanner.add_callback(on_sensor)

    try:
        with console.status("[bold green]Scanning for Aranet sensors..."):
            sensors = asyncio.run(scanner.scan_once(duration))
    except SessionError as e:
        _report_session_error(config, e)
        sys.exit(1)

    if not sensors:
        console.print("[yellow]No Aranet sensors found[/yellow]")
        console.print("[dim]Make sure Smart Home integration is enabled on the sensor[/dim]")
        return
    console.print(sensors_table(sensors))


@cli.command()
@click.pass_obj
def troubleshoot(obj: CLIContext):
    """Check the local Bluetooth stack and print troubleshooting steps."""
    config = obj.load_config(validate=False)
    handler = EdgeCaseHandler(config)

    for ok, message in handler.check_system():
        style = "green" if ok else "red"
        console.print(f"[{style}]{'OK  ' if ok else 'FAIL'}[/{style}] {message}")
    console.print()
    console.print(handler.troubleshooting_guide(), highlight=False)


@cli.command(name="config")
@click.pass_obj
def show_config(obj: CLIContext):
    """Validate and show the effective configuration."""
    config = obj.load_config()

    for section, values in config.get_summary().items():
        table = Table(title=section.capitalize())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        for key, value in values.items():
            table.add_row(key, "[dim]not set[/dim]" if value is None else str(value))
        console.print(table)


if __name__ == "__main__":
    cli()
