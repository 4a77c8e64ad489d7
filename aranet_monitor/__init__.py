"""
Aranet Monitor - Aranet4 CO2 sensor reader.

Connects to an Aranet4 sensor over Bluetooth Low Energy, decodes its current
readings and either prints them once or polls continuously while serving the
latest values as Prometheus metrics.

Features:
- GATT session with BlueZ pairing (static PIN or pinentry prompt)
- Poll scheduler with bounded exponential backoff
- Thread-safe latest-reading cache
- Prometheus metrics endpoint
- Configuration through environment variables and .env files
"""

__version__ = "1.0.0"
__description__ = "Aranet4 CO2 sensor reader and Prometheus exporter"
