"""
Data model module for the media relay service.
"""

from .models import (
    Partition,
    SinkKind,
    RelayRequest,
    CachedToken,
    SinkDescriptor,
    RelayOutcome,
    video_key,
)

__all__ = [
    'Partition',
    'SinkKind',
    'RelayRequest',
    'CachedToken',
    'SinkDescriptor',
    'RelayOutcome',
    'video_key',
]
