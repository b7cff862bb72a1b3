"""
Server module for the media relay service.

Provides the aiohttp HTTP API.
"""

from .app import RelayServer, error_response

__all__ = [
    'RelayServer',
    'error_response',
]
