"""
Logging Utility

Console logging for the learning session core:
- Color-coded log levels
- Component icons keyed by logger name
- Pretty printing for structured data
- Section separators for walkthrough scripts
"""

import json
import logging
import sys
from datetime import datetime
from pprint import pformat
from typing import Any, Dict, Optional


class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    # Log levels
    DEBUG = '\033[36m'      # Cyan
    INFO = '\033[32m'       # Green
    WARNING = '\033[33m'    # Yellow
    ERROR = '\033[31m'      # Red
    CRITICAL = '\033[35m'   # Magenta

    # Sections
    SECTION = '\033[94m'    # Bright Blue
    SUBSECTION = '\033[96m' # Bright Cyan

    # Data
    KEY = '\033[93m'        # Bright Yellow
    VALUE = '\033[92m'      # Bright Green
    TIMESTAMP = '\033[90m'  # Dark Gray


LEVEL_COLORS = {
    'DEBUG': Colors.DEBUG,
    'INFO': Colors.INFO,
    'WARNING': Colors.WARNING,
    'ERROR': Colors.ERROR,
    'CRITICAL': Colors.CRITICAL,
}


class ColoredFormatter(logging.Formatter):
    """Formatter with level colors and a per-component icon."""

    ICONS = {
        'DEBUG': '🔍',
        'INFO': 'ℹ️',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '🚨',
    }

    # Keyed by the last dotted part of the logger name
    COMPONENT_ICONS = {
        'navigation_controller': '🧭',
        'progress_sync': '💾',
        'progress_store': '🗄️',
        'progress_api': '🌐',
        'guided_validator': '✅',
        'guided_surfaces': '🧩',
        'tutor_channel': '📣',
        'tutor_widget': '🎓',
        'auth': '🔐',
        'course_publisher': '📚',
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        icon = self.COMPONENT_ICONS.get(
            record.name.split('.')[-1],
            self.ICONS.get(record.levelname, '•')
        )
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]

        if self.use_colors:
            level_color = LEVEL_COLORS.get(record.levelname, Colors.RESET)
            reset = Colors.RESET
            timestamp_color = Colors.TIMESTAMP
            bold = Colors.BOLD
        else:
            level_color = reset = timestamp_color = bold = ''

        message = record.getMessage()

        # Pretty print messages that are a bare JSON document
        stripped = message.strip()
        if stripped.startswith('{') or stripped.startswith('['):
            try:
                message = f"\n{pformat(json.loads(stripped), indent=2, width=100)}"
            except (json.JSONDecodeError, ValueError):
                pass

        formatted = (
            f"{timestamp_color}[{timestamp}]{reset} "
            f"{icon} {level_color}{record.levelname:8s}{reset} "
            f"{bold}{record.name}{reset} "
            f"| {message}"
        )

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


class StructuredLogger:
    """Logger wrapper that appends formatted data blocks to messages."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(name)

    def _format_data(self, data: Any, indent: int = 2) -> str:
        if isinstance(data, dict):
            lines = []
            for key, value in data.items():
                if isinstance(value, (dict, list)):
                    lines.append(f"{' ' * indent}{key}: {self._format_data(value, indent + 2)}")
                else:
                    lines.append(f"{' ' * indent}{key}: {value}")
            return "{\n" + "\n".join(lines) + f"\n{' ' * (indent - 2)}}}"
        if isinstance(data, list):
            shown = data[:3] if len(data) > 5 else data
            items = ",\n".join(self._format_data(item, indent + 2) for item in shown)
            pad = ' ' * (indent - 2)
            if len(data) > 5:
                return f"[\n{items}\n{pad}... ({len(data)} items total)\n{pad}]"
            return f"[\n{items}\n{pad}]"
        return str(data)

    def _with_data(self, message: str, data: Optional[Dict[str, Any]]) -> str:
        return f"{message}\n{self._format_data(data)}" if data else message

    def section(self, title: str, data: Optional[Dict[str, Any]] = None):
        """Print a banner separating one walkthrough stage from the next."""
        separator = "=" * 80
        tty = sys.stdout.isatty()
        color = Colors.SECTION if tty else ''
        reset = Colors.RESET if tty else ''
        print(f"\n{color}{separator}{reset}")
        print(f"{color}📋 {title.upper()}{reset}")
        if data:
            print(self._format_data(data))
        print(f"{color}{separator}{reset}\n")

    def subsection(self, title: str, data: Optional[Dict[str, Any]] = None):
        separator = "-" * 60
        tty = sys.stdout.isatty()
        color = Colors.SUBSECTION if tty else ''
        reset = Colors.RESET if tty else ''
        print(f"\n{color}{separator}{reset}")
        print(f"{color}  → {title}{reset}")
        if data:
            print(self._format_data(data))
        print(f"{color}{separator}{reset}\n")

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.debug(self._with_data(message, data))

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(message, data))

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.warning(self._with_data(message, data))

    def error(self, message: str, error: Optional[Exception] = None, data: Optional[Dict[str, Any]] = None):
        """Log an error, attaching the exception type and traceback when given."""
        error_info = f" Error: {type(error).__name__}: {error}" if error else ""
        self.logger.error(self._with_data(f"{message}{error_info}", data), exc_info=error)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(f"✅ {message}", data))


def setup_logging(level: int = logging.INFO, use_colors: bool = True) -> logging.Logger:
    """Install the colored console handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # Suppress noisy loggers
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name, logging.getLogger(name))
