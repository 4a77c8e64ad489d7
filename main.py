#!/usr/bin/env python3
"""
Aranet Monitor - Main Entry Point

Usage:
    python main.py --help                 # Show help
    python main.py read                   # Read the sensor once
    python main.py run                    # Read once or poll, per ARANET_REFRESH_INTERVAL
    python main.py scan                   # Discover nearby sensors
    python main.py services               # List the sensor's GATT services
    python main.py config                 # Show effective configuration

Environment Setup:
    Copy and configure the environment file:
    cp .env.sample .env
    # Set ARANET_DEVICE_ADDRESS

Requirements:
    - Python 3.10+
    - Bluetooth adapter managed by BlueZ
"""

from aranet_monitor.cli.commands import cli


if __name__ == "__main__":
    cli()
