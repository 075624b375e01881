"""
Centralized logging configuration for the relay service.

Provides:
- Console logging with colored, prefixed output by application area
- Optional file logging with timestamps for post-mortem analysis
- Easy-to-use logger factory for different components
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


# ANSI color codes for console output
class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"

    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_YELLOW = "\033[93m"
    BRIGHT_BLUE = "\033[94m"
    BRIGHT_MAGENTA = "\033[95m"
    BRIGHT_CYAN = "\033[96m"


# Area-specific colors and prefixes
AREA_CONFIG = {
    "main": {"color": Colors.BRIGHT_CYAN, "prefix": "RELAY.main"},
    "api": {"color": Colors.BRIGHT_GREEN, "prefix": "RELAY.api"},
    "sessions": {"color": Colors.BRIGHT_BLUE, "prefix": "RELAY.sessions"},
    "storage": {"color": Colors.BLUE, "prefix": "RELAY.storage"},
    "catalog": {"color": Colors.GREEN, "prefix": "RELAY.catalog"},
    "pipeline": {"color": Colors.BRIGHT_MAGENTA, "prefix": "RELAY.pipeline"},
    "jobs": {"color": Colors.BRIGHT_YELLOW, "prefix": "RELAY.jobs"},
    "progress": {"color": Colors.MAGENTA, "prefix": "RELAY.progress"},
    "websocket": {"color": Colors.CYAN, "prefix": "RELAY.websocket"},
}

# Default for unknown areas
DEFAULT_AREA_CONFIG = {"color": Colors.WHITE, "prefix": "RELAY"}


class ColoredConsoleFormatter(logging.Formatter):
    """Custom formatter that adds colors and area prefixes to console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DIM,
        logging.INFO: Colors.RESET,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BRIGHT_RED + Colors.BOLD,
    }

    def __init__(self, area: str = "main"):
        super().__init__()
        config = AREA_CONFIG.get(area, DEFAULT_AREA_CONFIG)
        self.area_color = config["color"]
        self.area_prefix = config["prefix"]

    def format(self, record: logging.LogRecord) -> str:
        level_color = self.LEVEL_COLORS.get(record.levelno, Colors.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        # Format: [RELAY.area] HH:MM:SS LEVEL: message
        prefix = f"{self.area_color}[{self.area_prefix}]{Colors.RESET}"
        time_str = f"{Colors.DIM}{timestamp}{Colors.RESET}"
        level_str = f"{level_color}{record.levelname:<8}{Colors.RESET}"

        message = f"{prefix} {time_str} {level_str} {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class FileFormatter(logging.Formatter):
    """Formatter for file output with full timestamps and structured format."""

    def __init__(self, area: str = "main"):
        super().__init__()
        config = AREA_CONFIG.get(area, DEFAULT_AREA_CONFIG)
        self.area_prefix = config["prefix"]

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        # Include job context if the caller passed it via `extra`
        extra = ""
        if hasattr(record, "job_id"):
            extra += f" job_id={record.job_id}"
        if hasattr(record, "subscriber_id"):
            extra += f" subscriber_id={record.subscriber_id}"

        line = f"{timestamp} [{self.area_prefix}] {record.levelname}: {record.getMessage()}{extra}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


_log_dir: Optional[Path] = None
_file_handler: Optional[logging.FileHandler] = None


def setup_logging(
    log_dir: Optional[str] = None,
    file_level: int = logging.DEBUG,
) -> Optional[Path]:
    """
    Initialize file logging.

    Console output is configured per area by get_logger(); this only adds the
    shared log file. Without a log_dir, nothing is written to disk.

    Args:
        log_dir: Directory for log files
        file_level: Minimum level for file output

    Returns:
        Path to the log directory, or None when file logging is disabled
    """
    global _log_dir, _file_handler

    if not log_dir:
        return None

    _log_dir = Path(log_dir)
    _log_dir.mkdir(parents=True, exist_ok=True)

    log_filename = datetime.now().strftime("relay_%Y%m%d_%H%M%S.log")
    log_path = _log_dir / log_filename

    # Keep a stable pointer to the newest log
    latest_link = _log_dir / "latest.log"
    try:
        if latest_link.is_symlink() or latest_link.exists():
            latest_link.unlink()
        latest_link.symlink_to(log_filename)
    except OSError:
        pass  # Symlinks may not work on all systems

    _file_handler = logging.FileHandler(log_path, encoding="utf-8")
    _file_handler.setLevel(file_level)
    _file_handler.setFormatter(FileFormatter("main"))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(_file_handler)
    root_logger.info(f"Logging initialized. Log file: {log_path}")

    # Loggers created before setup_logging() get the file handler now
    for name, logger in logging.root.manager.loggerDict.items():
        if isinstance(logger, logging.Logger) and name.startswith("relay."):
            _attach_file_handler(logger, name[len("relay."):])

    return _log_dir


def _attach_file_handler(logger: logging.Logger, area: str) -> None:
    if _file_handler is None:
        return
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler):
            return
    area_file_handler = logging.FileHandler(_file_handler.baseFilename, encoding="utf-8")
    area_file_handler.setLevel(_file_handler.level)
    area_file_handler.setFormatter(FileFormatter(area))
    logger.addHandler(area_file_handler)


def get_logger(area: str = "main") -> logging.Logger:
    """
    Get a logger for a specific application area.

    Args:
        area: The application area (e.g., "pipeline", "storage", "jobs")

    Returns:
        Configured logger instance

    Example:
        logger = get_logger("pipeline")
        logger.info("Job 3f2a started")
        # Output: [RELAY.pipeline] 14:32:15 INFO     Job 3f2a started
    """
    logger = logging.getLogger(f"relay.{area}")

    if not logger.handlers:
        logger.setLevel(logging.DEBUG)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(ColoredConsoleFormatter(area))
        logger.addHandler(console_handler)

        _attach_file_handler(logger, area)

        # Don't propagate to root to avoid duplicate logs
        logger.propagate = False

    return logger
