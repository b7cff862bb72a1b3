"""
S3-compatible object sink.

Wraps a boto3 client; blocking SDK calls run in the default executor.
"""

import asyncio
import functools
from typing import AsyncIterator, Mapping, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..state.models import SinkDescriptor, SinkKind
from ..utils.exceptions import ObjectNotFoundError, SinkApiError
from ..utils.logger import get_logger
from .base import ByteStream, ObjectSink, content_type_for


logger = get_logger(__name__)


_NOT_FOUND_CODES = ('NoSuchKey', 'NotFound', '404')


class S3Sink(ObjectSink):
    """
    SDK-backed sink.

    Writes buffer the entire body in memory and issue a single put_object.
    """

    def __init__(
        self,
        name: str,
        bucket: str,
        access_key: str,
        secret_key: str,
        endpoint_url: Optional[str] = None,
        region: str = 'eu-central',
        read_chunk_size: int = 64 * 1024,
        client=None
    ):
        """
        Initialize S3 sink.

        Args:
            name: Sink name used in logs and outcomes
            bucket: Target bucket
            access_key: Access key id
            secret_key: Secret access key
            endpoint_url: Endpoint of an S3-compatible provider (None = AWS)
            region: Region name
            read_chunk_size: Bytes per chunk when streaming reads
            client: Pre-built boto3 S3 client (tests inject fakes here)
        """
        super().__init__(SinkDescriptor(
            name=name,
            kind=SinkKind.SDK,
            destination_root=f"s3://{bucket}",
            credential=access_key,
        ))
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region
        self.read_chunk_size = read_chunk_size

        if client is None:
            boto_config = BotoConfig(
                region_name=region,
                signature_version='s3v4',
                s3={'addressing_style': 'path'},
                retries={'max_attempts': 0}  # Sinks never retry
            )
            client = boto3.client(
                's3',
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                config=boto_config
            )
        self._client = client

    async def _call(self, func, *args, **kwargs):
        """Run a blocking SDK call in the default executor."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    def _translate(self, key: str, error: Exception) -> Exception:
        """Map botocore errors onto sink errors."""
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            error_msg = error.response.get('Error', {}).get('Message', str(error))
            status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')

            if error_code in _NOT_FOUND_CODES or status == 404:
                return ObjectNotFoundError(key, self.name)
            return SinkApiError(status, f"{error_code} - {error_msg}")

        return SinkApiError(None, str(error))

    async def write(
        self,
        key: str,
        metadata: Mapping[str, str],
        stream: ByteStream,
        expires: Optional[int] = None
    ) -> None:
        chunks = []
        async for chunk in stream:
            chunks.append(chunk)
        body = b''.join(chunks)

        if expires is not None:
            logger.debug(f"{self.name}: TTL not supported, storing {key} without expiry")

        try:
            await self._call(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type_for(key),
                Metadata=dict(metadata)
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(key, e)

        logger.info(f"Uploaded: {key} -> s3://{self.bucket}/{key} ({len(body)} bytes)")

    async def read(self, key: str) -> AsyncIterator[bytes]:
        try:
            response = await self._call(self._client.get_object, Bucket=self.bucket, Key=key)
            body = response['Body']
            while True:
                chunk = await self._call(body.read, self.read_chunk_size)
                if not chunk:
                    break
                yield chunk
        except (ClientError, BotoCoreError) as e:
            raise self._translate(key, e)

    async def delete(self, key: str) -> None:
        try:
            await self._call(self._client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(key, e)

        logger.info(f"Deleted s3://{self.bucket}/{key}")

    async def prepare(self) -> None:
        """
        Test S3 connection and permissions.

        Raises:
            SinkApiError: If connection fails
        """
        logger.info(f"Testing S3 connection to bucket: {self.bucket}")

        try:
            # List one object; head_bucket needs a different permission
            await self._call(self._client.list_objects_v2, Bucket=self.bucket, MaxKeys=1)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_msg = e.response.get('Error', {}).get('Message', str(e))

            if error_code == 'AccessDenied':
                raise SinkApiError(403, f"S3 access denied to bucket {self.bucket}")
            elif error_code == 'NoSuchBucket':
                raise SinkApiError(404, f"S3 bucket not found: {self.bucket}")
            else:
                raise SinkApiError(None, f"S3 connection failed: {error_code} - {error_msg}")
        except BotoCoreError as e:
            raise SinkApiError(None, f"S3 connection error: {e}")

        logger.info("S3 connection test successful")
