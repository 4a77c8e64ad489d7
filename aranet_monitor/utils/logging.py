"""
Logging configuration for the Aranet monitor.
Provides logging setup with console, rotating file and syslog handlers, plus
lightweight performance tracking for the fetch loop.
"""

import logging
import logging.handlers
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import colorlog
import psutil


class ProductionLogger:
    """
    Logging setup for long-running deployment with multiple handlers and
    per-component log files.
    """

    def __init__(self,
                 app_name: str = "aranet_monitor",
                 log_dir: str = "./logs",
                 log_level: str = "INFO",
                 max_file_size: int = 10 * 1024 * 1024,  # 10MB
                 backup_count: int = 5,
                 enable_console: bool = True,
                 enable_file: bool = True,
                 enable_syslog: bool = False):

        self.app_name = app_name
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper())
        self.max_file_size = max_file_size
        self.backup_count = backup_count
        self.enable_console = enable_console
        self.enable_file = enable_file
        self.enable_syslog = enable_syslog

        if self.enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._setup_root_logger()
        if self.enable_file:
            self._setup_component_loggers()

    def _rotating_handler(self, filename: str) -> logging.handlers.RotatingFileHandler:
        return logging.handlers.RotatingFileHandler(
            self.log_dir / filename,
            maxBytes=self.max_file_size,
            backupCount=self.backup_count
        )

    def _setup_root_logger(self):
        """Configure root logger with multiple handlers."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)

        # Clear existing handlers
        root_logger.handlers.clear()

        # Console goes to stderr so stdout stays clean for readings
        if self.enable_console:
            console_handler = colorlog.StreamHandler(sys.stderr)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(colorlog.ColoredFormatter(
                '%(log_color)s%(asctime)s [%(levelname)8s] %(name)s: %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
                log_colors={
                    'DEBUG': 'cyan',
                    'INFO': 'green',
                    'WARNING': 'yellow',
                    'ERROR': 'red',
                    'CRITICAL': 'red,bg_white',
                }
            ))
            root_logger.addHandler(console_handler)

        if self.enable_file:
            file_handler = self._rotating_handler(f"{self.app_name}.log")
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)8s] %(name)s [%(process)d:%(thread)d] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            root_logger.addHandler(file_handler)

        # Syslog handler for systemd integration
        if self.enable_syslog:
            try:
                syslog_handler = logging.handlers.SysLogHandler(address='/dev/log')
                syslog_handler.setLevel(logging.WARNING)
                syslog_handler.setFormatter(logging.Formatter(
                    f'{self.app_name}[%(process)d]: %(levelname)s - %(message)s'
                ))
                root_logger.addHandler(syslog_handler)
            except OSError as e:
                root_logger.warning(f"Could not setup syslog handler: {e}")

    def _setup_component_loggers(self):
        """Configure specific loggers for different components."""
        components = [
            ('aranet.ble', "ble_session.log", '%(asctime)s [%(levelname)s] BLE: %(message)s'),
            ('aranet.metrics', "metrics.log", '%(asctime)s [%(levelname)s] METRICS: %(message)s'),
            ('aranet.performance', "performance.log", '%(asctime)s PERF: %(message)s'),
        ]
        for name, filename, fmt in components:
            component_logger = logging.getLogger(name)
            for handler in list(component_logger.handlers):
                component_logger.removeHandler(handler)
                handler.close()
            handler = self._rotating_handler(filename)
            handler.setFormatter(logging.Formatter(fmt))
            component_logger.addHandler(handler)


class PerformanceMonitor:
    """
    Fetch timing and process resource tracking.
    """

    # Bound memory for long-running daemons
    MAX_SAMPLES = 1000

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger('aranet.performance')
        self.metrics = {
            'fetch_times': [],
            'memory_usage': [],
            'cpu_usage': []
        }
        self.start_time = datetime.now()

    def _append(self, name: str, sample: dict):
        samples = self.metrics.setdefault(name, [])
        samples.append(sample)
        if len(samples) > self.MAX_SAMPLES:
            del samples[:len(samples) - self.MAX_SAMPLES]

    @contextmanager
    def measure_time(self, operation_name: str):
        """
        Context manager for measuring operation time.

        The sample lands in ``metrics['<operation_name>_times']``; an exception
        leaving the block marks it unsuccessful and is re-raised.
        """
        start_time = time.monotonic()
        success = False
        try:
            yield
            success = True
        finally:
            duration = time.monotonic() - start_time
            self._append(f"{operation_name}_times", {
                'duration': duration,
                'success': success,
                'timestamp': datetime.now()
            })
            self.logger.info(f"TIMING {operation_name}={duration:.3f}s success={success}")

    def log_system_resources(self):
        """Log current process resource usage."""
        try:
            process = psutil.Process()
            memory_info = process.memory_info()
            cpu_percent = process.cpu_percent()
        except psutil.Error as e:
            self.logger.error(f"Failed to log system resources: {e}")
            return

        now = datetime.now()
        self._append('memory_usage', {'rss': memory_info.rss, 'vms': memory_info.vms, 'timestamp': now})
        self._append('cpu_usage', {'cpu_percent': cpu_percent, 'timestamp': now})

        self.logger.info(
            f"RESOURCES memory_rss={memory_info.rss/1024/1024:.1f}MB "
            f"memory_vms={memory_info.vms/1024/1024:.1f}MB cpu={cpu_percent:.1f}%"
        )

    def get_performance_summary(self) -> dict:
        """Summarize fetch statistics since startup."""
        fetches = self.metrics['fetch_times']
        successful = [fetch for fetch in fetches if fetch['success']]
        summary = {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'fetches': {
                'total': len(fetches),
                'successful': len(successful),
                'failed': len(fetches) - len(successful),
                'avg_duration': 0,
            }
        }

        if successful:
            summary['fetches']['avg_duration'] = sum(f['duration'] for f in successful) / len(successful)

        return summary

    def record_metric(self, metric_name: str, value: float):
        """Record a metric value."""
        self._append(metric_name, {'value': value, 'timestamp': datetime.now()})
        self.logger.debug(f"METRIC {metric_name}={value}")


def setup_logging(config) -> ProductionLogger:
    """
    Setup logging for the Aranet monitor using configuration.

    Args:
        config: Configuration instance

    Returns:
        ProductionLogger instance
    """
    return ProductionLogger(
        log_level=config.log_level,
        log_dir=str(config.log_dir),
        max_file_size=config.log_max_file_size,
        backup_count=config.log_backup_count,
        enable_console=config.log_enable_console,
        enable_file=config.log_enable_file,
        enable_syslog=config.log_enable_syslog
    )
