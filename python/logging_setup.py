"""
Logging configuration

Configures the root logger from the `logging` section of config.yaml and
provides sanitization for user-controlled values before they are logged.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from config_manager import LoggingConfig


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install console and file handlers on the root logger

    Args:
        config: Logging section of the configuration (defaults when None)
    """
    config = config or LoggingConfig()
    level = getattr(logging, str(config.level).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    formatter = logging.Formatter(config.format)

    if config.console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def sanitize_for_logging(text, max_length: int = 500) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text
        max_length: Truncate after this many characters

    Returns:
        Sanitized text safe for logging
    """
    if text is None or text == '':
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:max_length] if len(sanitized) > max_length else sanitized
