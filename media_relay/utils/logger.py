"""
Logging setup for the media relay service.

Console and optional rotating file output. Every handler masks registered
credentials, so an access grant echoed back by uplink or a password in a
failing URL never reaches the console or a log file.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional


# Module-level logger cache
_loggers: dict[str, logging.Logger] = {}
_initialized = False

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Third-party loggers held at WARNING or above
NOISY_LOGGERS = ('aiohttp.access', 'botocore', 'boto3', 'urllib3')

MASK = '****'


class SecretFilter(logging.Filter):
    """Replaces registered secret values in log messages."""

    # Short values would match ordinary words
    min_length = 6

    def __init__(self):
        super().__init__()
        self.secrets = set()

    def add(self, *secrets: Optional[str]) -> None:
        for secret in secrets:
            if isinstance(secret, str) and len(secret) >= self.min_length:
                self.secrets.add(secret)

    def _redact(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True

        message = record.getMessage()
        redacted = self._redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None

        # Formatters reuse a cached exc_text instead of formatting the traceback again
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self._redact(record.exc_text)
        if record.stack_info:
            record.stack_info = self._redact(record.stack_info)
        return True


_secret_filter = SecretFilter()


def register_secrets(*secrets: Optional[str]) -> None:
    """Mask these values in every record logged from now on."""
    _secret_filter.add(*secrets)


def setup_logging(
    log_file: Optional[str] = None,
    level: str = 'INFO',
    max_size_mb: int = 50,
    backup_count: int = 5,
    log_format: Optional[str] = None,
    console: bool = True,
    quiet: Iterable[str] = NOISY_LOGGERS
) -> None:
    """
    Initialize logging configuration.

    Args:
        log_file: Path to log file (None = no file logging)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        max_size_mb: Maximum log file size in MB before rotation
        backup_count: Number of backup files to keep
        log_format: Log format string
        console: Whether to log to console
        quiet: Logger names raised to at least WARNING
    """
    global _initialized

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(log_format or DEFAULT_FORMAT)

    handlers = []
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler):
            handler.close()
    root_logger.handlers = []

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(_secret_filter)
        root_logger.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the specified module.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    if name not in _loggers:
        # Initialize with defaults if not already done
        if not _initialized:
            setup_logging()

        _loggers[name] = logging.getLogger(name)

    return _loggers[name]


def setup_from_config(config: dict, secrets: Iterable[str] = ()) -> None:
    """
    Setup logging from configuration dictionary.

    Args:
        config: Logging configuration dict with keys:
            - level: Log level
            - file: Log file path
            - max_size_mb: Max file size
            - backup_count: Backup count
            - format: Log format
            - console: Console output enabled
            - quiet: Third-party logger names kept at WARNING
        secrets: Credential values to mask in every record
    """
    register_secrets(*secrets)

    setup_logging(
        log_file=config.get('file'),
        level=config.get('level', 'INFO'),
        max_size_mb=config.get('max_size_mb', 50),
        backup_count=config.get('backup_count', 5),
        log_format=config.get('format'),
        console=config.get('console', True),
        quiet=config.get('quiet', NOISY_LOGGERS)
    )
