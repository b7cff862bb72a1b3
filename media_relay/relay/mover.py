"""
Move operator.

Relocates an object between partitions: read, write, then delete.
"""

import asyncio
from typing import List, Mapping

from ..state.models import Partition
from ..storage.base import ObjectSink
from ..utils.exceptions import MoveError, ObjectNotFoundError, RetryExhaustedError, SinkError
from ..utils.logger import get_logger


logger = get_logger(__name__)


class MoveOperator:
    """
    Moves objects from one partition's sinks to another's.

    The source copy is removed only after the destination write succeeded, so
    a failed move never loses data. A failed cleanup leaves a duplicate, which
    is logged but not treated as a failure.
    """

    def __init__(
        self,
        sinks: Mapping[Partition, List[ObjectSink]],
        attempts: int = 3,
        retry_delay: float = 1.0
    ):
        """
        Initialize move operator.

        Args:
            sinks: Sinks per partition; the source object is read from the first one
            attempts: Tries for the source download
            retry_delay: Fixed seconds between download tries
        """
        self.sinks = sinks
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay

    async def _download(self, sink: ObjectSink, key: str) -> bytes:
        """
        Read the whole object, retrying transient failures.

        Raises:
            ObjectNotFoundError: If the object does not exist (not retried)
            RetryExhaustedError: If every attempt failed
        """
        last_error = None

        for attempt in range(1, self.attempts + 1):
            try:
                return await sink.read_bytes(key)
            except ObjectNotFoundError:
                raise
            except (SinkError, OSError) as e:
                last_error = e
                logger.warning(f"Download attempt {attempt}/{self.attempts} of {key} from {sink.name} failed: {e}")
                if attempt < self.attempts:
                    await asyncio.sleep(self.retry_delay)

        raise RetryExhaustedError(f"Failed to download {key} from {sink.name}: {last_error}", self.attempts)

    async def move(self, source: Partition, destination: Partition, key: str) -> None:
        """
        Move key from the source partition to the destination partition.

        Args:
            source: Partition currently holding the object
            destination: Partition that receives the object
            key: Object key

        Raises:
            ObjectNotFoundError: If the source does not hold key
            RetryExhaustedError: If the source download kept failing
            MoveError: If a destination write failed; the source is untouched
        """
        if source is destination:
            raise MoveError(f"Source and destination partition are both '{source.value}'")

        source_sinks = self.sinks[source]
        logger.info(f"Moving {key} from '{source.value}' to '{destination.value}'")

        data = await self._download(source_sinks[0], key)

        async def body():
            yield data

        for sink in self.sinks[destination]:
            try:
                await sink.write(key, {}, body())
            except Exception as e:
                logger.error(f"Move of {key}: write to {sink.name} failed: {e}")
                raise MoveError(f"Failed to write {key} to {sink.name}: {e}") from e

        for sink in source_sinks:
            try:
                await sink.delete(key)
            except ObjectNotFoundError:
                logger.debug(f"Move of {key}: nothing to delete in {sink.name}")
            except Exception as e:
                logger.warning(f"Move of {key}: stray copy left in {sink.name}: {e}")

        logger.info(f"Moved {key} ({len(data)} bytes) to '{destination.value}'")


def create_move_operator(
    sinks: Mapping[Partition, List[ObjectSink]],
    config: dict
) -> MoveOperator:
    """
    Factory function to create a move operator.

    Args:
        sinks: Sinks per partition
        config: Move configuration section

    Returns:
        MoveOperator instance
    """
    return MoveOperator(
        sinks,
        attempts=config.get('attempts', 3),
        retry_delay=config.get('retry_delay', 1.0)
    )
