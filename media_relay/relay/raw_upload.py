"""
Two-phase raw uploads.

Phase one stores a caller-supplied body as a pending object with a short TTL.
Phase two re-reads it and stores it again for good with the final metadata.
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Mapping, Optional

import aiofiles

from ..state.models import Partition, RelayOutcome, video_key
from ..storage.base import ByteStream
from ..utils.logger import get_logger
from .orchestrator import RelayOrchestrator


logger = get_logger(__name__)


PENDING_KEY = '_pending'
UPLOADED_AT_KEY = '_uploaded_at'


def pending_metadata(now: Optional[datetime] = None) -> dict:
    """Metadata carried by an object until it is finalized."""
    now = now or datetime.now(timezone.utc)
    return {PENDING_KEY: 'true', UPLOADED_AT_KEY: now.isoformat()}


class RawUploader:
    """
    Stages and finalizes raw video uploads.

    Finalize spools the pending object through a local temp file, which is
    removed when finalize returns, successfully or not.
    """

    def __init__(
        self,
        orchestrator: RelayOrchestrator,
        temp_dir: Path = Path('/tmp'),
        chunk_size: int = 64 * 1024,
        default_ttl_hours: int = 1
    ):
        self.orchestrator = orchestrator
        self.temp_dir = Path(temp_dir)
        self.chunk_size = chunk_size
        self.default_ttl_hours = default_ttl_hours

    async def stage(
        self,
        owner_id: str,
        video_id: str,
        sensitive: bool,
        stream: ByteStream,
        ttl_hours: Optional[int] = None
    ) -> RelayOutcome:
        """
        Store a raw body as a pending object in every partition sink.

        Args:
            owner_id: Publisher id (directory key)
            video_id: Video id (object key)
            sensitive: Selects the restricted partition
            stream: Raw body
            ttl_hours: Pending object lifetime on sinks that support TTLs

        Returns:
            RelayOutcome of the write

        Raises:
            RelayFailedError: If any sink failed
        """
        ttl = ttl_hours if ttl_hours is not None else self.default_ttl_hours
        key = video_key(owner_id, video_id)

        outcome = await self.orchestrator.fan_out(
            Partition.for_sensitive(sensitive),
            key,
            pending_metadata(),
            stream,
            expires=ttl
        )

        logger.info(f"Staged {key} as pending (expires in {ttl}h)")
        return outcome

    async def finalize(
        self,
        owner_id: str,
        video_id: str,
        sensitive: bool,
        metadata: Mapping[str, str]
    ) -> RelayOutcome:
        """
        Rewrite a pending object without TTL, replacing its metadata.

        Args:
            owner_id: Publisher id (directory key)
            video_id: Video id (object key)
            sensitive: Selects the restricted partition
            metadata: Final metadata; the only metadata the object keeps

        Returns:
            RelayOutcome of the rewrite

        Raises:
            ObjectNotFoundError: If no pending object exists
            SinkError: If reading the pending object fails
            RelayFailedError: If any sink rewrite failed
        """
        partition = Partition.for_sensitive(sensitive)
        key = video_key(owner_id, video_id)
        source = self.orchestrator.primary(partition)

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f"finalize-{owner_id}-{video_id}-",
            suffix='.mp4',
            dir=self.temp_dir
        )
        os.close(fd)
        temp_path = Path(temp_name)

        try:
            size = await self._spool(source.read(key), temp_path)
            logger.debug(f"Spooled pending {key} ({size} bytes) to {temp_path}")

            outcome = await self.orchestrator.fan_out(
                partition,
                key,
                dict(metadata),
                self._read_file(temp_path)
            )
        finally:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove temp file {temp_path}: {e}")

        logger.info(f"Finalized {key}")
        return outcome

    async def _spool(self, stream: AsyncIterator[bytes], path: Path) -> int:
        """Write a stream to path without blocking the event loop."""
        total = 0
        async with aiofiles.open(path, 'wb') as f:
            async for chunk in stream:
                await f.write(chunk)
                total += len(chunk)
        return total

    async def _read_file(self, path: Path) -> AsyncIterator[bytes]:
        async with aiofiles.open(path, 'rb') as f:
            while True:
                chunk = await f.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk


def create_raw_uploader(orchestrator: RelayOrchestrator, config) -> RawUploader:
    """
    Factory function to create a raw uploader.

    Args:
        orchestrator: Relay orchestrator the uploads go through
        config: Service configuration

    Returns:
        RawUploader instance
    """
    relay = config.get_relay_config()
    return RawUploader(
        orchestrator,
        temp_dir=config.get_temp_dir(),
        chunk_size=relay.get('chunk_size', 64 * 1024),
        default_ttl_hours=relay.get('pending_ttl_hours', 1)
    )
