"""
Content origin client.

Fetches video downloads from Cloudflare Stream.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiohttp

from ..utils.exceptions import OriginFetchError
from ..utils.logger import get_logger


logger = get_logger(__name__)


DEFAULT_URL_TEMPLATE = (
    'https://customer-2p3jflss4r4hmpnz.cloudflarestream.com/{video_id}/downloads/default.mp4'
)


class OriginClient:
    """Opens video download streams from the content origin."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url_template: str = DEFAULT_URL_TEMPLATE,
        chunk_size: int = 64 * 1024
    ):
        self.session = session
        self.url_template = url_template
        self.chunk_size = chunk_size

    def url_for(self, video_id: str) -> str:
        return self.url_template.format(video_id=video_id)

    @asynccontextmanager
    async def open(self, video_id: str) -> AsyncIterator[AsyncIterator[bytes]]:
        """
        Open the download of a video.

        The status is checked before anything is yielded, so a missing video
        never reaches a sink.

        Args:
            video_id: Origin video id

        Yields:
            Async iterator over body chunks

        Raises:
            OriginFetchError: If the origin does not answer 200
        """
        url = self.url_for(video_id)
        logger.info(f"Fetching {video_id} from origin")

        async with self.session.get(url) as response:
            if response.status != 200:
                raise OriginFetchError(response.status, url)

            if response.content_length is not None:
                logger.debug(f"Origin reports {response.content_length} bytes for {video_id}")

            yield response.content.iter_chunked(self.chunk_size)
