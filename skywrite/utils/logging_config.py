"""
Logging setup for the skywrite bot.

Console output is coloured (or JSON with ``LOG_JSON``); long-running
``start`` sessions also write a daily rotating log and a separate errors log.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


PLAIN_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        metrics = getattr(record, 'extra_data', None)
        if metrics:
            entry['metrics'] = metrics
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        line = (
            f"[{self.formatTime(record, '%H:%M:%S')}] {record.levelname:8} "
            f"[{record.name}] {record.getMessage()}"
        )
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return f"{self.COLORS.get(record.levelname, '')}{line}{self.RESET}"


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_file_logging: bool = True,
    enable_structured_logging: bool = False
) -> None:
    """
    Configure the root logger. Replaces any handlers already installed.

    Args:
        log_level: Console log level name
        log_dir: Directory for log files (defaults to ./logs)
        enable_file_logging: Write skywrite.log and errors.log
        enable_structured_logging: Emit JSON instead of human-readable lines
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = StructuredFormatter() if enable_structured_logging else None

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if enable_file_logging else level)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(formatter or ColoredConsoleFormatter())
    root.addHandler(console)

    if enable_file_logging:
        log_path = Path(log_dir or "logs")
        log_path.mkdir(parents=True, exist_ok=True)

        daily = logging.handlers.TimedRotatingFileHandler(
            log_path / "skywrite.log", when='midnight', backupCount=7, encoding='utf-8'
        )
        daily.setLevel(logging.DEBUG)
        daily.setFormatter(formatter or logging.Formatter(PLAIN_FORMAT))
        root.addHandler(daily)

        errors = logging.FileHandler(log_path / "errors.log", encoding='utf-8')
        errors.setLevel(logging.ERROR)
        errors.setFormatter(formatter or logging.Formatter(PLAIN_FORMAT))
        root.addHandler(errors)

    configure_library_loggers()


def configure_library_loggers() -> None:
    """Quiet chatty third-party loggers."""
    for name in ('aiosqlite', 'httpx', 'PIL'):
        logging.getLogger(name).setLevel(logging.WARNING)


class PerformanceTracker:
    """Times a block and logs how long it took."""

    def __init__(self, operation_name: str, logger: Optional[logging.Logger] = None):
        self.operation_name = operation_name
        self.logger = logger or logging.getLogger(__name__)
        self.duration_ms = 0.0
        self._started = 0.0

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        if exc_type:
            self.logger.error(f"Failed: {self.operation_name} ({self.duration_ms:.1f}ms) - {exc_val!r}")
        else:
            self.logger.info(f"Completed: {self.operation_name} ({self.duration_ms:.1f}ms)")


def log_pipeline_metrics(
    logger: logging.Logger,
    stage: str,
    input_count: int,
    output_count: int,
    duration_ms: float,
    **extra_data
):
    """Log input/output counts for one stage, attaching them for the JSON formatter."""
    metrics = {
        'stage': stage,
        'input_count': input_count,
        'output_count': output_count,
        'duration_ms': round(duration_ms, 1),
        **extra_data
    }
    logger.info(f"{stage}: {input_count} -> {output_count} ({duration_ms:.1f}ms)", extra={'extra_data': metrics})
