"""
Shared fixtures: in-memory sinks and a wired relay stack.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import pytest

from media_relay.relay.mover import MoveOperator
from media_relay.relay.orchestrator import RelayOrchestrator
from media_relay.relay.raw_upload import RawUploader
from media_relay.state.models import Partition, SinkDescriptor, SinkKind
from media_relay.storage.base import ObjectSink
from media_relay.utils.exceptions import ObjectNotFoundError, SinkApiError


@dataclass
class StoredObject:
    data: bytes
    metadata: dict
    expires: Optional[int] = None


class MemorySink(ObjectSink):
    """
    Dict-backed sink.

    fail_write: exception raised after the body was consumed
    fail_early: exception raised before reading anything
    read_failures: number of transient read errors before reads succeed
    """

    def __init__(
        self,
        name: str,
        fail_write: Optional[Exception] = None,
        fail_early: Optional[Exception] = None,
        fail_delete: Optional[Exception] = None,
        read_failures: int = 0,
        delay: float = 0.0
    ):
        super().__init__(SinkDescriptor(
            name=name,
            kind=SinkKind.SDK,
            destination_root=f"mem://{name}",
        ))
        self.objects = {}
        self.writes = []
        self.reads = 0
        self.fail_write = fail_write
        self.fail_early = fail_early
        self.fail_delete = fail_delete
        self.read_failures = read_failures
        self.delay = delay

    async def write(self, key, metadata, stream, expires=None):
        self.writes.append(key)
        if self.fail_early:
            raise self.fail_early

        chunks = []
        async for chunk in stream:
            chunks.append(chunk)
            if self.delay:
                await asyncio.sleep(self.delay)

        if self.fail_write:
            raise self.fail_write
        self.objects[key] = StoredObject(b''.join(chunks), dict(metadata), expires)

    async def read(self, key):
        self.reads += 1
        if self.read_failures > 0:
            self.read_failures -= 1
            raise SinkApiError(503, "temporarily unavailable")
        if key not in self.objects:
            raise ObjectNotFoundError(key, self.name)
        yield self.objects[key].data

    async def delete(self, key):
        if self.fail_delete:
            raise self.fail_delete
        if key not in self.objects:
            raise ObjectNotFoundError(key, self.name)
        del self.objects[key]


async def chunks_of(data: bytes, size: int = 4):
    """Async byte stream over data in fixed-size chunks."""
    for i in range(0, len(data), size):
        yield data[i:i + size]


@pytest.fixture
def primary():
    return MemorySink('primary')


@pytest.fixture
def mirror():
    return MemorySink('mirror')


@pytest.fixture
def restricted():
    return MemorySink('restricted')


@pytest.fixture
def sinks(primary, mirror, restricted):
    return {
        Partition.GENERAL: [primary, mirror],
        Partition.RESTRICTED: [restricted],
    }


@pytest.fixture
def orchestrator(sinks):
    return RelayOrchestrator(sinks, queue_size=2)


@pytest.fixture
def mover(sinks):
    return MoveOperator(sinks, attempts=3, retry_delay=0)


@pytest.fixture
def raw_uploader(orchestrator, tmp_path):
    return RawUploader(orchestrator, temp_dir=tmp_path / 'spool', chunk_size=4)
