"""
Console Logging for Personalization Tools

Provides readable, structured logging for scripts and services that embed
the personalization engine:
- Color-coded log levels
- Per-component icons
- Pretty printing for profile/snapshot data

Library modules only call logging.getLogger(__name__); handlers are installed
by entry points through setup_logging().
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

    DEBUG = '\033[36m'      # Cyan
    INFO = '\033[32m'       # Green
    WARNING = '\033[33m'    # Yellow
    ERROR = '\033[31m'      # Red
    CRITICAL = '\033[35m'   # Magenta

    KEY = '\033[93m'        # Bright Yellow
    VALUE = '\033[92m'      # Bright Green
    TIMESTAMP = '\033[90m'  # Dark Gray


class ColoredFormatter(logging.Formatter):
    """Formatter with colors, level icons and component icons."""

    ICONS = {
        'DEBUG': '🔍',
        'INFO': 'ℹ️',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '🚨',
    }

    # Keyed by the last segment of the logger name
    COMPONENT_ICONS = {
        'personalization': '🧩',
        'knowledge_graph': '🧠',
        'conversation_state': '💬',
        'rule_extractor': '🔎',
        'llm_extractor': '🤖',
        'text_generation': '🤖',
        'profile_store': '💾',
        'identity_index': '🪪',
        'retrieval': '📚',
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        icon = self.COMPONENT_ICONS.get(record.name.split('.')[-1], self.ICONS.get(record.levelname, '•'))
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]

        if self.use_colors:
            level_color = {
                'DEBUG': Colors.DEBUG,
                'INFO': Colors.INFO,
                'WARNING': Colors.WARNING,
                'ERROR': Colors.ERROR,
                'CRITICAL': Colors.CRITICAL,
            }.get(record.levelname, Colors.RESET)
            reset = Colors.RESET
            timestamp_color = Colors.TIMESTAMP
            bold = Colors.BOLD
        else:
            level_color = reset = timestamp_color = bold = ''

        message = record.getMessage()

        # Pretty print messages that are pure JSON payloads
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
    """Logger wrapper that appends an optional data dict to each message."""

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
            indent_str = ' ' * (indent - 2)
            shown = data[:3] if len(data) > 5 else data
            items = ",\n".join(self._format_data(item, indent + 2) for item in shown)
            suffix = f"\n{indent_str}... ({len(data)} items total)" if len(data) > 5 else ""
            return f"[\n{items}{suffix}\n{indent_str}]"
        return str(data)

    def _with_data(self, message: str, data: Optional[Dict[str, Any]]) -> str:
        return f"{message}\n{self._format_data(data)}" if data else message

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.debug(self._with_data(message, data))

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(message, data))

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.warning(self._with_data(message, data))

    def error(self, message: str, error: Optional[Exception] = None, data: Optional[Dict[str, Any]] = None):
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
    for noisy in ('asyncio', 'httpx', 'httpcore', 'urllib3', 'chromadb', 'sentence_transformers'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name, logging.getLogger(name))
