"""
Relay orchestrator.

Chooses the sinks for a request by partition, fans the source stream out to
them and aggregates the per-sink results.
"""

import asyncio
from collections import OrderedDict
from typing import Dict, List, Mapping, Optional

from ..state.models import Partition, RelayOutcome, RelayRequest, SinkDescriptor
from ..storage.base import ByteStream, ObjectSink
from ..utils.exceptions import ConfigurationError, FanOutError, RelayFailedError
from ..utils.logger import get_logger
from .tee import StreamTee, TeeBranch


logger = get_logger(__name__)


class RelayOrchestrator:
    """
    Writes one source stream to every sink of a partition.

    The general partition usually holds a primary sink and a mirror; the
    restricted partition holds the sinks for sensitive content only. All
    writes of one relay run concurrently and are always awaited to
    completion. A failed sink does not cancel the others and successful
    writes are never rolled back: a partial result is reported as
    RelayFailedError with the full outcome attached.
    """

    def __init__(self, sinks: Mapping[Partition, List[ObjectSink]], queue_size: int = 8):
        """
        Initialize orchestrator.

        Args:
            sinks: Sinks per partition; the first sink of each list is its primary
            queue_size: Bounded queue length (in chunks) per fan-out consumer

        Raises:
            ConfigurationError: If a partition has no sinks
        """
        for partition in Partition:
            if not sinks.get(partition):
                raise ConfigurationError(f"No sinks configured for partition '{partition.value}'")

        self.sinks: Dict[Partition, List[ObjectSink]] = {p: list(s) for p, s in sinks.items()}
        self.queue_size = queue_size

    def sinks_for(self, partition: Partition) -> List[ObjectSink]:
        return self.sinks[partition]

    def primary(self, partition: Partition) -> ObjectSink:
        return self.sinks[partition][0]

    async def relay(self, request: RelayRequest, stream: ByteStream) -> RelayOutcome:
        """
        Relay a video stream to the sinks selected by the request's partition.

        Raises:
            RelayFailedError: If any selected sink failed
        """
        return await self.fan_out(
            request.partition,
            request.object_key,
            request.metadata,
            stream
        )

    async def fan_out(
        self,
        partition: Partition,
        key: str,
        metadata: Mapping[str, str],
        stream: ByteStream,
        expires: Optional[int] = None
    ) -> RelayOutcome:
        """
        Write stream under key to every sink of partition.

        Args:
            partition: Partition whose sinks receive the object
            key: Object key
            metadata: Metadata stored with the object
            stream: Source chunks, consumed exactly once
            expires: Optional TTL in hours for sinks that support it

        Returns:
            RelayOutcome with every sink in succeeded

        Raises:
            RelayFailedError: If any sink failed; carries the outcome
        """
        sinks = self.sinks_for(partition)
        succeeded: List[SinkDescriptor] = []
        failed: "OrderedDict[SinkDescriptor, Exception]" = OrderedDict()

        async def write_one(sink: ObjectSink, body: ByteStream) -> None:
            try:
                await sink.write(key, metadata, body, expires=expires)
                if isinstance(body, TeeBranch) and not body.finished:
                    # The sink returned before the end of the stream
                    raise FanOutError([body.index])
            except Exception as e:
                # Failures are recorded in the order they happen
                logger.error(f"Write of {key} to {sink.name} failed: {e}")
                failed[sink.descriptor] = e
            else:
                succeeded.append(sink.descriptor)
            finally:
                if isinstance(body, TeeBranch):
                    body.close()

        if len(sinks) == 1:
            await write_one(sinks[0], stream)
        else:
            tee = StreamTee(stream, branches=len(sinks), maxsize=self.queue_size)
            results = await asyncio.gather(
                tee.pump(),
                *(write_one(sink, branch) for sink, branch in zip(sinks, tee.branches)),
                return_exceptions=True
            )
            pump_result = results[0]
            if isinstance(pump_result, FanOutError):
                logger.debug(f"Fan-out of {key}: {pump_result}")
            elif isinstance(pump_result, BaseException):
                logger.error(f"Source stream for {key} failed: {pump_result}")

        outcome = RelayOutcome(succeeded=frozenset(succeeded), failed=failed)

        if not outcome.ok:
            if outcome.partial:
                logger.warning(f"Partial relay of {key}, no rollback performed: {outcome.to_dict()}")
            raise RelayFailedError(outcome)

        logger.info(f"Relayed {key} to {len(sinks)} sink(s) in partition '{partition.value}'")
        return outcome


def create_orchestrator(
    sinks: Mapping[Partition, List[ObjectSink]],
    queue_size: int = 8
) -> RelayOrchestrator:
    """
    Factory function to create a relay orchestrator.

    Args:
        sinks: Sinks per partition
        queue_size: Bounded queue length per fan-out consumer

    Returns:
        RelayOrchestrator instance
    """
    return RelayOrchestrator(sinks, queue_size)
