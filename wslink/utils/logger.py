# Logger - Centralized Logging System
# One registry entry per logger name so handlers are attached only once

"""
Logger Module

Responsibilities:
- Setup named loggers for the connection manager and the runner
- Configure log levels
- Configure log handlers (console, optional rotating file)
- Log formatting
- Prevent duplicate handler registration
- Redact registered secrets (auth tokens) from every record
"""

import logging
import sys
import atexit
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional
from urllib.parse import quote_plus

from .helpers import mask_token

# Loggers already configured by setup_logger
_configured_loggers = {}

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Secret -> replacement, filled by register_secret
_secrets = {}

class SecretFilter(logging.Filter):
    """Replace registered secrets in the formatted message with their masked form"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not _secrets:
            return True
        message = record.getMessage()
        for secret, masked in _secrets.items():
            message = message.replace(secret, masked)
        record.msg = message
        record.args = None
        return True

def register_secret(secret: str):
    """
    Keep a secret out of the logs

    Both the raw value and its query-string encoding are redacted, so a
    token inside a connection URI is masked too.

    Args:
        secret: Value to redact, ignored when empty
    """
    if not secret:
        return
    masked = mask_token(secret)
    _secrets[secret] = masked
    _secrets[quote_plus(secret)] = masked

def setup_logger(name: str = "wslink", level: str = "INFO", log_file: Optional[str] = None):
    """
    Setup logger with console and file handlers

    Returns the existing logger when the name was configured before, so
    repeated calls never stack handlers.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path

    Returns:
        Configured logger instance (existing or new)
    """
    if name in _configured_loggers:
        return _configured_loggers[name]

    logger = logging.getLogger(name)

    # Handlers attached elsewhere (e.g. by a host application) are kept as is
    if logger.handlers:
        _configured_loggers[name] = logger
        return logger

    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)
    console_handler.addFilter(SecretFilter())
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(SecretFilter())
        logger.addHandler(file_handler)

    def cleanup_handlers():
        """Close all handlers on interpreter exit."""
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    atexit.register(cleanup_handlers)

    _configured_loggers[name] = logger

    return logger

def get_logger(name: str = "wslink"):
    """
    Get existing logger or create new one if not exists.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    if name in _configured_loggers:
        return _configured_loggers[name]
    return setup_logger(name)
