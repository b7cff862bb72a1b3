"""
Object sink interface shared by every storage backend.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterable, AsyncIterator, Mapping, Optional

from ..state.models import SinkDescriptor


# Any async source of byte chunks: origin responses, tee branches, request bodies
ByteStream = AsyncIterable[bytes]


def content_type_for(key: str) -> str:
    """Guess the content type of a relayed object from its key."""
    if key.endswith('.mp4'):
        return 'video/mp4'
    if key.endswith('.m3u8'):
        return 'application/vnd.apple.mpegurl'
    if key.endswith('.ts'):
        return 'video/mp2t'
    return 'application/octet-stream'


class ObjectSink(ABC):
    """
    A destination object store capable of write, read and delete.

    Every call is at-most-once: sinks never retry internally. Callers must not
    issue concurrent writes to the same key.
    """

    def __init__(self, descriptor: SinkDescriptor):
        self.descriptor = descriptor

    @property
    def name(self) -> str:
        return self.descriptor.name

    @abstractmethod
    async def write(
        self,
        key: str,
        metadata: Mapping[str, str],
        stream: ByteStream,
        expires: Optional[int] = None
    ) -> None:
        """
        Store the whole stream under key, replacing any previous object.

        Args:
            key: Object key relative to the sink's root
            metadata: Flat string metadata stored with the object
            stream: Body chunks
            expires: Optional time-to-live in hours; sinks without TTL support ignore it

        Raises:
            SinkError: If the backend rejects the write
        """

    @abstractmethod
    def read(self, key: str) -> AsyncIterator[bytes]:
        """
        Stream an object's bytes.

        Raises:
            ObjectNotFoundError: If key does not exist
            SinkError: On any other backend failure
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """
        Remove an object.

        Raises:
            ObjectNotFoundError: If key does not exist (where the backend reports it)
            SinkError: On any other backend failure
        """

    async def read_bytes(self, key: str) -> bytes:
        """Read a whole object into memory."""
        chunks = []
        async for chunk in self.read(key):
            chunks.append(chunk)
        return b''.join(chunks)

    async def prepare(self) -> None:
        """Startup check; raise if the backend is unusable."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.descriptor}>"
