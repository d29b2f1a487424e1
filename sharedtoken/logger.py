"""
Structured logging for shared token resolution.

Provides centralized logging with console and file destinations and
counters tracking how tokens are found, generated and stored.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks resolution counters for monitoring token storage health.
    """

    def __init__(
        self,
        name: str = "sharedtoken",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = False,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()  # Remove existing handlers

        self.metrics = {
            "tokens_found": 0,
            "tokens_generated": 0,
            "tokens_stored": 0,
            "store_conflicts": 0,
            "store_failures": 0,
            "ambiguous_targets": 0,
            "errors_by_type": {},
        }

        # Console handler
        if enable_console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        # File handler
        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"sharedtoken_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        """Internal logging method with context."""
        if not self.logger.isEnabledFor(level):
            return
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Counters

    def record_found(self):
        """Record a token served from storage."""
        self.metrics["tokens_found"] += 1

    def record_generated(self):
        """Record a freshly computed token."""
        self.metrics["tokens_generated"] += 1

    def record_stored(self):
        """Record a token written to storage."""
        self.metrics["tokens_stored"] += 1

    def record_conflict(self):
        """Record a create that found the key already stored."""
        self.metrics["store_conflicts"] += 1

    def record_ambiguous_target(self):
        """Record a directory store that matched more than one entry."""
        self.metrics["ambiguous_targets"] += 1

    def record_failure(self, error_type: str):
        """Record a failed resolution by error class name."""
        if error_type.startswith("Storage") or error_type == "NoTargetEntry":
            self.metrics["store_failures"] += 1
        if error_type not in self.metrics["errors_by_type"]:
            self.metrics["errors_by_type"][error_type] = 0
        self.metrics["errors_by_type"][error_type] += 1

    def get_metrics(self) -> dict:
        """Return a copy of the current counters."""
        metrics_copy = self.metrics.copy()
        metrics_copy["errors_by_type"] = dict(self.metrics["errors_by_type"])
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current counters."""
        metrics = self.get_metrics()

        self.info("=== Shared Token Metrics ===")
        self.info(f"Found: {metrics['tokens_found']}")
        self.info(f"Generated: {metrics['tokens_generated']}")
        self.info(
            f"Stored: {metrics['tokens_stored']} "
            f"(conflicts {metrics['store_conflicts']}, failures {metrics['store_failures']})"
        )
        if metrics["ambiguous_targets"]:
            self.info(f"Ambiguous directory targets: {metrics['ambiguous_targets']}")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "sharedtoken",
    level: Optional[str] = None,
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level, defaults to $SHAREDTOKEN_LOG_LEVEL or INFO
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        if level is None:
            level = os.getenv("SHAREDTOKEN_LOG_LEVEL", "INFO")
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
