"""
Media Relay

Copies videos from Cloudflare Stream into Storj, S3-compatible storage and
Sia, and moves them between the general and restricted partitions.
"""

__version__ = "1.0.0"

from .utils.config import load_config, Config
from .utils.logger import setup_logging, get_logger
from .main import Service, main

__all__ = [
    'load_config',
    'Config',
    'setup_logging',
    'get_logger',
    'Service',
    'main',
]
