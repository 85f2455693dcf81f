"""
Logging configuration for the weather station hub.
Provides logging setup with multiple handlers and lightweight metrics collection.
"""

import logging
import logging.handlers
import sys
import time
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import colorlog


# Component log files: logger name -> (file name, format prefix)
COMPONENT_LOGGERS = {
    'weatherhub.ble': ("ble.log", "BLE"),
    'weatherhub.store': ("store.log", "STORE"),
    'weatherhub.mqtt': ("mqtt.log", "MQTT"),
}


class ProductionLogger:
    """
    Logging setup for production deployment with console, rotating file
    and syslog handlers plus per-component log files.
    """

    def __init__(self,
                 app_name: str = "weatherhub",
                 log_dir: str = "./logs",
                 log_level: str = "INFO",
                 max_file_size: int = 10 * 1024 * 1024,  # 10MB
                 backup_count: int = 5,
                 enable_console: bool = True,
                 enable_syslog: bool = False,
                 enable_file: bool = True):

        self.app_name = app_name
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper())
        self.max_file_size = max_file_size
        self.backup_count = backup_count
        self.enable_console = enable_console
        self.enable_syslog = enable_syslog
        self.enable_file = enable_file

        if self.enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._setup_root_logger()
        if self.enable_file:
            self._setup_component_loggers()

    def _setup_root_logger(self):
        """Configure root logger with multiple handlers."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)

        root_logger.handlers.clear()

        if self.enable_console:
            console_handler = colorlog.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_formatter = colorlog.ColoredFormatter(
                '%(log_color)s%(asctime)s [%(levelname)8s] %(name)s: %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
                log_colors={
                    'DEBUG': 'cyan',
                    'INFO': 'green',
                    'WARNING': 'yellow',
                    'ERROR': 'red',
                    'CRITICAL': 'red,bg_white',
                }
            )
            console_handler.setFormatter(console_formatter)
            root_logger.addHandler(console_handler)

        if self.enable_file:
            file_handler = logging.handlers.RotatingFileHandler(
                self.log_dir / f"{self.app_name}.log",
                maxBytes=self.max_file_size,
                backupCount=self.backup_count
            )
            file_handler.setLevel(self.log_level)
            file_formatter = logging.Formatter(
                '%(asctime)s [%(levelname)8s] %(name)s [%(process)d:%(thread)d] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            root_logger.addHandler(file_handler)

        # Syslog handler for systemd integration
        if self.enable_syslog:
            try:
                syslog_handler = logging.handlers.SysLogHandler(address='/dev/log')
                syslog_handler.setLevel(logging.WARNING)
                syslog_formatter = logging.Formatter(
                    f'{self.app_name}[%(process)d]: %(levelname)s - %(message)s'
                )
                syslog_handler.setFormatter(syslog_formatter)
                root_logger.addHandler(syslog_handler)
            except OSError as e:
                print(f"Warning: Could not setup syslog handler: {e}")

        # uvicorn installs its own handlers unless told otherwise
        for name in ('uvicorn', 'uvicorn.error', 'uvicorn.access'):
            logging.getLogger(name).handlers.clear()
            logging.getLogger(name).propagate = True

    def _setup_component_loggers(self):
        """Configure specific loggers for different components."""
        for logger_name, (file_name, prefix) in COMPONENT_LOGGERS.items():
            component_logger = logging.getLogger(logger_name)
            component_logger.handlers.clear()
            handler = logging.handlers.RotatingFileHandler(
                self.log_dir / file_name,
                maxBytes=self.max_file_size,
                backupCount=self.backup_count
            )
            handler.setFormatter(logging.Formatter(
                f'%(asctime)s [%(levelname)s] {prefix}: %(message)s'
            ))
            component_logger.addHandler(handler)

        perf_logger = logging.getLogger('weatherhub.performance')
        perf_logger.handlers.clear()
        perf_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "performance.log",
            maxBytes=self.max_file_size,
            backupCount=self.backup_count
        )
        perf_handler.setFormatter(logging.Formatter(
            '%(asctime)s PERF: %(message)s'
        ))
        perf_logger.addHandler(perf_handler)

    def get_logger(self, name: str = None) -> logging.Logger:
        """Get a logger instance."""
        if name:
            return logging.getLogger(name)
        return logging.getLogger()

    def debug(self, message: str, *args, **kwargs):
        """Log debug message."""
        logging.getLogger().debug(message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        """Log info message."""
        logging.getLogger().info(message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        """Log warning message."""
        logging.getLogger().warning(message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        """Log error message."""
        logging.getLogger().error(message, *args, **kwargs)

    def critical(self, message: str, *args, **kwargs):
        """Log critical message."""
        logging.getLogger().critical(message, *args, **kwargs)


class PerformanceMonitor:
    """
    Counters and timings for the ingestion path.

    Values are aggregated in place (count, total, min, max) so a long running
    hub does not accumulate one entry per event.
    """

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger('weatherhub.performance')
        self.counters: Dict[str, int] = defaultdict(int)
        self.metrics: Dict[str, Dict[str, float]] = {}
        self.start_time = datetime.now()

    def increment(self, counter_name: str, amount: int = 1):
        """Increment a named event counter."""
        self.counters[counter_name] += amount

    def record_metric(self, metric_name: str, value: float):
        """Record a metric value."""
        entry = self.metrics.get(metric_name)
        if entry is None:
            entry = {'count': 0, 'total': 0.0, 'min': value, 'max': value, 'last': value}
            self.metrics[metric_name] = entry

        entry['count'] += 1
        entry['total'] += value
        entry['min'] = min(entry['min'], value)
        entry['max'] = max(entry['max'], value)
        entry['last'] = value

        self.logger.debug(f"METRIC {metric_name}={value}")

    @contextmanager
    def measure_time(self, operation_name: str):
        """Context manager for measuring operation time."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            self.record_metric(f"{operation_name}_duration", duration)

    def get_metrics(self) -> dict:
        """Get all recorded metrics."""
        return {name: dict(entry) for name, entry in self.metrics.items()}

    def get_counters(self) -> Dict[str, int]:
        return dict(self.counters)

    def get_performance_summary(self) -> dict:
        """Generate performance summary for the statistics log."""
        summary = {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'counters': self.get_counters(),
            'timings': {},
        }

        for name, entry in self.metrics.items():
            if entry['count']:
                summary['timings'][name] = {
                    'count': entry['count'],
                    'avg': entry['total'] / entry['count'],
                    'max': entry['max'],
                }

        return summary

    def log_summary(self):
        """Write a one-line summary to the performance log."""
        summary = self.get_performance_summary()
        counters = " ".join(f"{key}={value}" for key, value in sorted(summary['counters'].items()))
        self.logger.info(f"STATS uptime={summary['uptime_seconds']:.0f}s {counters}")


def setup_logging(config) -> ProductionLogger:
    """
    Setup logging for the hub using configuration.

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
        enable_syslog=config.log_enable_syslog,
        enable_file=config.log_enable_file,
    )
