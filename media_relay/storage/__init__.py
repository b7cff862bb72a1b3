"""
Storage module for the media relay service.

Object sinks for Storj (uplink), S3-compatible stores and Sia (renterd).
"""

from typing import Dict, List, Optional

import aiohttp

from ..state.models import Partition, SinkKind
from ..utils.config import Config
from ..utils.exceptions import ConfigurationError
from .base import ByteStream, ObjectSink, content_type_for
from .renterd_sink import RenterdSink
from .s3_sink import S3Sink
from .token_cache import TokenCache
from .uplink_sink import UplinkSink


def create_sink(
    sink_config: dict,
    session: Optional[aiohttp.ClientSession] = None,
    token_cache: Optional[TokenCache] = None,
    chunk_size: int = 64 * 1024,
    token_validity_ms: int = 3600000
) -> ObjectSink:
    """
    Factory function to create one sink from its configuration entry.

    Args:
        sink_config: Entry of partitions.<name>.sinks
        session: Shared HTTP session (required for http sinks)
        token_cache: Shared token cache (required for http sinks)
        chunk_size: Read chunk size
        token_validity_ms: Validity requested for renterd session tokens

    Returns:
        ObjectSink instance
    """
    kind = SinkKind(sink_config['kind'])
    name = sink_config.get('name') or f"{kind.value}:{sink_config['bucket']}"

    if kind is SinkKind.PROCESS:
        return UplinkSink(
            name=name,
            bucket=sink_config['bucket'],
            access_grant=sink_config['access_grant'],
            binary=sink_config.get('binary', 'uplink'),
            read_chunk_size=chunk_size,
        )

    if kind is SinkKind.SDK:
        return S3Sink(
            name=name,
            bucket=sink_config['bucket'],
            access_key=sink_config['access_key'],
            secret_key=sink_config['secret_key'],
            endpoint_url=sink_config.get('endpoint_url'),
            region=sink_config.get('region', 'eu-central'),
            read_chunk_size=chunk_size,
        )

    if session is None or token_cache is None:
        raise ConfigurationError(f"Sink {name} needs an HTTP session and token cache")

    return RenterdSink(
        name=name,
        bucket=sink_config['bucket'],
        base_url=sink_config['base_url'],
        password=sink_config['password'],
        session=session,
        token_cache=token_cache,
        token_validity_ms=token_validity_ms,
        read_chunk_size=chunk_size,
    )


def create_partition_sinks(
    config: Config,
    session: Optional[aiohttp.ClientSession] = None,
    token_cache: Optional[TokenCache] = None
) -> Dict[Partition, List[ObjectSink]]:
    """
    Build every configured sink, grouped by partition in configuration order.

    Raises:
        ConfigurationError: If two sinks share a name
    """
    chunk_size = config.get('relay.chunk_size', 64 * 1024)
    token_validity_ms = config.get_token_config().get('validity_ms', 3600000)

    sinks: Dict[Partition, List[ObjectSink]] = {}
    seen = set()

    for partition in Partition:
        sinks[partition] = []
        for sink_config in config.get_sink_configs(partition.value):
            sink = create_sink(sink_config, session, token_cache, chunk_size, token_validity_ms)
            if sink.name in seen:
                raise ConfigurationError(f"Duplicate sink name: {sink.name}")
            seen.add(sink.name)
            sinks[partition].append(sink)

    return sinks


__all__ = [
    'ByteStream',
    'ObjectSink',
    'content_type_for',
    'UplinkSink',
    'S3Sink',
    'RenterdSink',
    'TokenCache',
    'create_sink',
    'create_partition_sinks',
]
