"""
Sia sink backed by the renterd worker HTTP API.

Requests carry a renterd_auth session cookie obtained through the shared
TokenCache.
"""

import json
from typing import AsyncIterator, Mapping, Optional
from urllib.parse import quote

import aiohttp

from ..state.models import SinkDescriptor, SinkKind
from ..utils.exceptions import AuthError, ObjectNotFoundError, SinkApiError
from ..utils.logger import get_logger
from .base import ByteStream, ObjectSink, content_type_for
from .token_cache import TokenCache


logger = get_logger(__name__)


class RenterdSink(ObjectSink):
    """
    HTTP-endpoint sink writing to <base_url>/api/worker/object/<key>?bucket=<bucket>.
    """

    def __init__(
        self,
        name: str,
        bucket: str,
        base_url: str,
        password: str,
        session: aiohttp.ClientSession,
        token_cache: TokenCache,
        token_validity_ms: int = 3600000,
        read_chunk_size: int = 64 * 1024
    ):
        """
        Initialize renterd sink.

        Args:
            name: Sink name; also the token cache key
            bucket: renterd bucket
            base_url: renterd base URL (e.g. http://localhost:9980)
            password: renterd API password
            session: Shared aiohttp client session
            token_cache: Cache the session token is kept in
            token_validity_ms: Validity requested from /api/auth
            read_chunk_size: Bytes per chunk when streaming reads
        """
        super().__init__(SinkDescriptor(
            name=name,
            kind=SinkKind.HTTP,
            destination_root=f"{base_url.rstrip('/')}/{bucket}",
            credential=password,
        ))
        self.bucket = bucket
        self.base_url = base_url.rstrip('/')
        self.password = password
        self.session = session
        self.token_cache = token_cache
        self.token_validity_ms = token_validity_ms
        self.read_chunk_size = read_chunk_size

        token_cache.register(name, self.authenticate)

    def _object_url(self, key: str) -> str:
        return f"{self.base_url}/api/worker/object/{quote(key, safe='')}"

    async def authenticate(self) -> str:
        """
        Exchange the API password for a session token.

        Raises:
            AuthError: If renterd rejects the request or is unreachable
        """
        url = f"{self.base_url}/api/auth"
        try:
            async with self.session.post(
                url,
                params={'validity': str(self.token_validity_ms)},
                headers={'Authorization': aiohttp.BasicAuth('', self.password).encode()}
            ) as response:
                if response.status >= 300:
                    raise AuthError(f"Failed to get auth token from {self.name}: HTTP {response.status}")
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise AuthError(f"Failed to get auth token from {self.name}: {e}")

        token = data.get('token') if isinstance(data, dict) else None
        if not token:
            raise AuthError(f"renterd {self.name} returned no token")
        return token

    async def _headers(self) -> dict:
        token = await self.token_cache.get_token(self.name)
        return {'Cookie': f"renterd_auth={token}"}

    async def _raise_for_status(self, response: aiohttp.ClientResponse, key: str) -> None:
        if response.status == 404:
            raise ObjectNotFoundError(key, self.name)
        if response.status >= 300:
            if response.status == 401:
                # Next request authenticates again
                await self.token_cache.invalidate(self.name)
            body = await response.text()
            raise SinkApiError(response.status, body)

    async def write(
        self,
        key: str,
        metadata: Mapping[str, str],
        stream: ByteStream,
        expires: Optional[int] = None
    ) -> None:
        headers = await self._headers()
        headers['Content-Type'] = content_type_for(key)
        headers['X-Metadata'] = json.dumps(dict(metadata), sort_keys=True)

        if expires is not None:
            logger.debug(f"{self.name}: TTL not supported, storing {key} without expiry")

        try:
            async with self.session.put(
                self._object_url(key),
                params={'bucket': self.bucket},
                headers=headers,
                data=stream
            ) as response:
                await self._raise_for_status(response, key)
        except aiohttp.ClientError as e:
            raise SinkApiError(None, f"renterd upload failed: {e}")

        logger.info(f"Uploaded {key} to renterd bucket {self.bucket}")

    async def read(self, key: str) -> AsyncIterator[bytes]:
        headers = await self._headers()
        try:
            async with self.session.get(
                self._object_url(key),
                params={'bucket': self.bucket},
                headers=headers
            ) as response:
                await self._raise_for_status(response, key)
                async for chunk in response.content.iter_chunked(self.read_chunk_size):
                    yield chunk
        except aiohttp.ClientError as e:
            raise SinkApiError(None, f"renterd download failed: {e}")

    async def delete(self, key: str) -> None:
        headers = await self._headers()
        try:
            async with self.session.delete(
                self._object_url(key),
                params={'bucket': self.bucket},
                headers=headers
            ) as response:
                await self._raise_for_status(response, key)
        except aiohttp.ClientError as e:
            raise SinkApiError(None, f"renterd delete failed: {e}")

        logger.info(f"Deleted {key} from renterd bucket {self.bucket}")

    async def prepare(self) -> None:
        """
        Create the bucket if it does not exist yet.

        Raises:
            SinkApiError: If the bucket can be neither found nor created
        """
        headers = await self._headers()
        check_url = f"{self.base_url}/api/bus/bucket/{quote(self.bucket, safe='')}"

        try:
            async with self.session.get(check_url, headers=headers) as response:
                if response.status == 200:
                    logger.info(f"Bucket '{self.bucket}' already exists on {self.name}")
                    return
                if response.status != 404:
                    raise SinkApiError(response.status, f"Failed to check bucket: {await response.text()}")

            logger.info(f"Creating bucket '{self.bucket}' on {self.name}...")
            payload = {'name': self.bucket, 'policy': {'publicReadAccess': False}}
            async with self.session.post(
                f"{self.base_url}/api/bus/buckets",
                headers=headers,
                json=payload
            ) as response:
                if response.status >= 300:
                    raise SinkApiError(response.status, f"Failed to create bucket: {await response.text()}")
        except aiohttp.ClientError as e:
            raise SinkApiError(None, f"renterd bucket check failed: {e}")

        logger.info(f"Bucket '{self.bucket}' created on {self.name}")
