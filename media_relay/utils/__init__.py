"""
Utilities module for the media relay service.
"""

from .config import load_config, Config
from .logger import setup_logging, get_logger, register_secrets
from .exceptions import (
    RelayError,
    ConfigurationError,
    RequestValidationError,
    OriginFetchError,
    AuthError,
    SinkError,
    ObjectNotFoundError,
    TransferToolError,
    SinkApiError,
    FanOutError,
    RelayFailedError,
    MoveError,
    RetryExhaustedError,
)

__all__ = [
    'load_config',
    'Config',
    'setup_logging',
    'get_logger',
    'register_secrets',
    'RelayError',
    'ConfigurationError',
    'RequestValidationError',
    'OriginFetchError',
    'AuthError',
    'SinkError',
    'ObjectNotFoundError',
    'TransferToolError',
    'SinkApiError',
    'FanOutError',
    'RelayFailedError',
    'MoveError',
    'RetryExhaustedError',
]
