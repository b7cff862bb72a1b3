"""
Byte-stream tee.

Duplicates one async byte stream into several branches, each fed through its
own bounded queue so the slowest consumer paces the source.
"""

import asyncio
from typing import List

from ..storage.base import ByteStream
from ..utils.exceptions import FanOutError


_EOF = object()


class _Failure:
    """Source error forwarded to a branch."""

    def __init__(self, error: BaseException):
        self.error = error


class TeeBranch:
    """
    One consumer side of a StreamTee; an async iterator of chunks.

    Consumers must call close() when they stop reading, successfully or not.
    """

    def __init__(self, index: int, maxsize: int):
        self.index = index
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self.closed = False
        self.finished = False

    def __aiter__(self) -> 'TeeBranch':
        return self

    async def __anext__(self) -> bytes:
        if self.closed or self.finished:
            raise StopAsyncIteration

        item = await self._queue.get()

        if item is _EOF:
            self.finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self.finished = True
            raise item.error
        return item

    def close(self) -> None:
        """Detach from the tee; queued and future chunks are dropped."""
        if self.closed:
            return
        self.closed = True
        # Emptying the queue wakes a producer blocked on put()
        while not self._queue.empty():
            self._queue.get_nowait()

    @property
    def broken(self) -> bool:
        """Closed before it saw the end of the stream."""
        return self.closed and not self.finished

    async def _put(self, item) -> None:
        if not self.closed:
            await self._queue.put(item)


class StreamTee:
    """
    Fan one source stream out to N consumers.

    Usage:
        tee = StreamTee(source, branches=2, maxsize=8)
        await asyncio.gather(tee.pump(), consume(tee.branches[0]), consume(tee.branches[1]))
    """

    def __init__(self, source: ByteStream, branches: int = 2, maxsize: int = 8):
        if branches < 1:
            raise ValueError("branches must be >= 1")
        self._source = source
        self.branches: List[TeeBranch] = [TeeBranch(i, maxsize) for i in range(branches)]

    async def pump(self) -> int:
        """
        Read the source once and push every chunk to each open branch.

        Returns:
            Number of bytes read from the source

        Raises:
            FanOutError: If a consumer detached before the source was exhausted
            Exception: Any error raised by the source, after forwarding it to
                every open branch
        """
        total = 0
        try:
            async for chunk in self._source:
                if all(branch.closed for branch in self.branches):
                    break
                total += len(chunk)
                for branch in self.branches:
                    await branch._put(chunk)
        except Exception as e:
            for branch in self.branches:
                await branch._put(_Failure(e))
            raise

        for branch in self.branches:
            await branch._put(_EOF)

        broken = [branch.index for branch in self.branches if branch.broken]
        if broken:
            raise FanOutError(broken)

        return total
